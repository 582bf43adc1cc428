from __future__ import annotations

from dataclasses import dataclass


@dataclass
class IntegrationResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class IntegrationMisconfiguredError(RuntimeError):
    pass


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a Kenyan mobile number to international form without "+".

    "0712345678" -> "254712345678", "+254712345678" -> "254712345678".
    Other values are returned stripped of spaces, dashes and a leading "+".
    """
    raw = (phone or "").strip().replace(" ", "").replace("-", "")
    if raw.startswith("+"):
        raw = raw[1:]
    if raw.startswith("0") and len(raw) == 10:
        raw = "254" + raw[1:]
    return raw
