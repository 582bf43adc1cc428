from __future__ import annotations

import hashlib
from dataclasses import dataclass

import httpx
from flask import current_app

from trustchain.integrations.common import IntegrationMisconfiguredError
from trustchain.validation import UpstreamFailure, format_cents


EXTENSION_KEY = "trustchain.payment_gateway"


@dataclass
class CaptureInitiation:
    accepted: bool
    transaction_ref: str | None
    provider: str
    message: str = ""
    raw: dict | None = None


class PaymentGateway:
    """
    Mobile-money style gateway: pushes a capture request to the payer's
    handset. Confirmation of the capture arrives out-of-band.
    """
    name = "unknown"

    def initiate_capture(self, *, order_id: int, phone: str, amount_cents: int, currency: str) -> CaptureInitiation:
        raise NotImplementedError


class MockPaymentGateway(PaymentGateway):
    name = "mock"

    def __init__(self, *, decline_accounts=None, unavailable: bool = False):
        self.decline_accounts = set(decline_accounts or ())
        self.unavailable = unavailable
        self.requests: list[dict] = []

    def initiate_capture(self, *, order_id: int, phone: str, amount_cents: int, currency: str) -> CaptureInitiation:
        self.requests.append({"order_id": order_id, "phone": phone, "amount_cents": amount_cents})
        if self.unavailable:
            raise UpstreamFailure("Payment gateway unavailable")
        if phone in self.decline_accounts:
            return CaptureInitiation(accepted=False, transaction_ref=None, provider=self.name, message="declined")

        digest = hashlib.sha256(f"{order_id}:{phone}:{amount_cents}".encode()).hexdigest()[:10].upper()
        ref = f"MOCK-{order_id}-{digest}"
        return CaptureInitiation(
            accepted=True,
            transaction_ref=ref,
            provider=self.name,
            message="capture_requested",
            raw={"order_id": order_id, "phone": phone, "amount": format_cents(amount_cents), "currency": currency},
        )


class HttpPaymentGateway(PaymentGateway):
    """
    JSON-over-HTTP gateway.

    POST {base_url} {"order_id", "account", "amount", "currency"}
      2xx {"transaction_ref": "...", "accepted": true}
      2xx {"accepted": false, "message": "..."}   explicit decline
      4xx                                        explicit decline
      5xx / timeout / connection error           UpstreamFailure
    """
    name = "http"

    def __init__(self, *, base_url: str, api_key: str = "", timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _post(self, payload: dict) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self._client is not None:
            return self._client.post(self.base_url, json=payload, headers=headers, timeout=self.timeout)
        return httpx.post(self.base_url, json=payload, headers=headers, timeout=self.timeout)

    def initiate_capture(self, *, order_id: int, phone: str, amount_cents: int, currency: str) -> CaptureInitiation:
        payload = {
            "order_id": order_id,
            "account": phone,
            "amount": format_cents(amount_cents),
            "currency": currency,
        }
        try:
            response = self._post(payload)
        except httpx.TimeoutException as exc:
            raise UpstreamFailure("Payment gateway timed out", details={"order_id": order_id}) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure("Payment gateway request failed", details={"order_id": order_id}) from exc

        if response.status_code >= 500:
            raise UpstreamFailure(
                "Payment gateway error",
                details={"order_id": order_id, "status": response.status_code},
            )

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"payload": data}

        if response.status_code >= 400 or data.get("accepted") is False:
            message = str(data.get("message") or data.get("error") or f"http_{response.status_code}")
            return CaptureInitiation(
                accepted=False,
                transaction_ref=None,
                provider=self.name,
                message=message[:200],
                raw=data,
            )

        ref = data.get("transaction_ref") or data.get("reference")
        if not ref:
            raise UpstreamFailure("Payment gateway response missing transaction_ref", details={"order_id": order_id})
        return CaptureInitiation(
            accepted=True,
            transaction_ref=str(ref)[:128],
            provider=self.name,
            message=str(data.get("message") or "capture_requested"),
            raw=data,
        )


def build_payment_gateway(config) -> PaymentGateway:
    provider = (config.get("PAYMENT_GATEWAY_PROVIDER") or "mock").strip().lower()
    if provider == "mock":
        return MockPaymentGateway()
    if provider != "http":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payment_gateway={provider}")

    url = (config.get("PAYMENT_GATEWAY_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYMENT_GATEWAY_URL")
    return HttpPaymentGateway(
        base_url=url,
        api_key=(config.get("PAYMENT_GATEWAY_API_KEY") or "").strip(),
        timeout=float(config.get("PAYMENT_GATEWAY_TIMEOUT") or 10.0),
    )


def get_payment_gateway() -> PaymentGateway:
    gateway = current_app.extensions.get(EXTENSION_KEY)
    if gateway is None:
        gateway = build_payment_gateway(current_app.config)
        current_app.extensions[EXTENSION_KEY] = gateway
    return gateway
