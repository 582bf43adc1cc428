from __future__ import annotations

import logging

import httpx
from flask import current_app

from trustchain.integrations.common import IntegrationMisconfiguredError, IntegrationResult, normalize_phone

logger = logging.getLogger(__name__)

EXTENSION_KEY = "trustchain.sms_transport"


class MessageResult(IntegrationResult):
    pass


class SmsTransport:
    """send(recipient, message, correlation_id). Fire-and-forget: never raises into callers."""
    name = "unknown"

    def send(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        raise NotImplementedError


class LogSmsTransport(SmsTransport):
    name = "log"

    def __init__(self):
        self.sent: list[dict] = []

    def send(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        self.sent.append({"to": to, "message": message, "reference": reference})
        logger.info("SMS to %s [%s]: %s", to, reference, message)
        return MessageResult(ok=True, code="OK", message="logged", raw={"to": to, "reference": reference})


class DisabledSmsTransport(SmsTransport):
    name = "disabled"

    def send(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        return MessageResult(ok=False, code="SMS_DISABLED", message="sms transport disabled")


def _map_http_error(status: int) -> str:
    if status in (401, 403):
        return "SMS_AUTH_FAILED"
    if status == 429:
        return "SMS_RATE_LIMITED"
    if status in (400, 422):
        return "SMS_INVALID_RECIPIENT"
    return "SMS_PROVIDER_DOWN"


class HttpSmsTransport(SmsTransport):
    name = "http"

    def __init__(self, *, base_url: str, api_key: str = "", timeout: float = 5.0, client: httpx.Client | None = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def send(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        payload = {"to": (to or "").strip(), "message": message}
        if reference:
            payload["reference"] = reference[:48]
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            if self._client is not None:
                r = self._client.post(self.base_url, json=payload, headers=headers, timeout=self.timeout)
            else:
                r = httpx.post(self.base_url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException:
            return MessageResult(ok=False, code="SMS_PROVIDER_DOWN", message="timeout")
        except httpx.HTTPError as e:
            return MessageResult(ok=False, code="SMS_PROVIDER_DOWN", message=str(e)[:200])

        if 200 <= r.status_code < 300:
            return MessageResult(ok=True, code="OK", message="sent")
        return MessageResult(ok=False, code=_map_http_error(r.status_code), message=f"http_{r.status_code}")


def build_sms_transport(config) -> SmsTransport:
    provider = (config.get("SMS_PROVIDER") or "log").strip().lower()
    if provider == "log":
        return LogSmsTransport()
    if provider == "disabled":
        return DisabledSmsTransport()
    if provider != "http":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:sms_provider={provider}")

    url = (config.get("SMS_GATEWAY_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing SMS_GATEWAY_URL")
    return HttpSmsTransport(
        base_url=url,
        api_key=(config.get("SMS_GATEWAY_API_KEY") or "").strip(),
        timeout=float(config.get("SMS_GATEWAY_TIMEOUT") or 5.0),
    )


def get_sms_transport() -> SmsTransport:
    transport = current_app.extensions.get(EXTENSION_KEY)
    if transport is None:
        transport = build_sms_transport(current_app.config)
        current_app.extensions[EXTENSION_KEY] = transport
    return transport


def forward_notification_sms(topic: str, payload: dict) -> None:
    """
    Event-bus subscriber for "notification.created".

    Looks up the recipient's phone and hands the message to the SMS
    transport. Recipients without a phone are skipped. Transport failures
    are logged only.

    The send is synchronous: it runs inside publish(), after the workflow
    transaction has committed, so a slow provider can hold the HTTP response
    for up to SMS_GATEWAY_TIMEOUT per recipient but never changes the
    committed outcome. Use SMS_PROVIDER=log or disabled where that latency
    is unacceptable.
    """
    from trustchain.extensions import db
    from trustchain.models import Profile

    user_id = payload.get("user_id")
    if not user_id:
        return
    profile = db.session.get(Profile, user_id)
    if profile is None or not profile.phone:
        return

    text = f"{payload.get('title', '')}: {payload.get('message', '')}".strip(": ")
    reference = f"notif-{payload.get('notification_id')}"
    result = get_sms_transport().send(to=normalize_phone(profile.phone), message=text, reference=reference)
    if not result.ok and result.code != "SMS_DISABLED":
        logger.warning("SMS delivery failed for %s (%s): %s", reference, result.code, result.message)
