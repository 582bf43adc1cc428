from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from trustchain.time_utils import parse_iso_datetime


# Maximum order amount: 999,999,999.99 (99,999,999,999 minor units)
# Keeps amounts inside a BIGINT and rejects nonsensical values
MAX_AMOUNT_CENTS = 99_999_999_999


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class TrustchainError(Exception):
    """Base for errors the API maps to a client-facing response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(TrustchainError, ValueError):
    """400-level input problem. No side effect has happened."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthorizationError(TrustchainError):
    """403: the (trusted) caller may not perform this operation."""

    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(TrustchainError, LookupError):
    """404: a referenced entity does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class StateConflict(TrustchainError):
    """
    409-level precondition failure on current state.

    Callers must re-read current state or supply new input; retrying the same
    request will not help.
    """

    status_code = 409
    code = "STATE_CONFLICT"


class UpstreamFailure(TrustchainError):
    """502: an external collaborator (gateway, SMS) failed or timed out."""

    status_code = 502
    code = "UPSTREAM_FAILURE"


# =============================================================================
# INPUT COERCION
# =============================================================================

def require_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_text(payload: dict, key: str, *, max_length: int = 255) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{key} is required")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return text


def optional_text(payload: dict, key: str, *, max_length: int = 255) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return text


def parse_int(value: Any, field: str) -> int:
    # bool is a subclass of int
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer")


def parse_amount_cents(value: Any, field: str = "amount") -> int:
    """
    Parse a positive decimal money amount into integer minor units.

    Accepts numbers or numeric strings ("1500", "1500.50"). Rejects zero,
    negatives, NaN/infinity and more than two decimal places.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a decimal number")
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    if amount.as_tuple().exponent < -2:
        raise ValidationError(f"{field} allows at most 2 decimal places")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds the maximum allowed amount")
    return cents


def parse_decimal(value: Any, field: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number")
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a decimal number")
    return parsed


def format_cents(cents: int | None) -> str | None:
    if cents is None:
        return None
    return str((Decimal(int(cents)) / 100).quantize(Decimal("0.01")))


def parse_coordinate(value: Any, kind: str, *, required: bool = False) -> float | None:
    """Validate a latitude ("lat") or longitude ("lng") value."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{kind} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{kind} must be a number")
    try:
        coord = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{kind} must be a number")
    limit = 90.0 if kind.endswith("lat") else 180.0
    if not (-limit <= coord <= limit):
        raise ValidationError(f"{kind} must be between -{limit:g} and {limit:g}")
    return coord


def parse_otp(value: Any) -> str:
    otp = str(value).strip() if value is not None else ""
    if len(otp) != 4 or not otp.isdigit():
        raise ValidationError("otp must be a 4-digit code")
    return otp


def parse_optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
        return value.strip().lower() in {"true", "1"}
    raise ValidationError(f"{field} must be a boolean")
