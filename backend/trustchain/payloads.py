# Overview: Structured "details" payloads for activity logs, fraud alerts and notifications.

"""
Details payloads are a closed set of known kinds plus one generic fallback.

Every payload serializes to a JSON object carrying a "kind" tag, so readers of
the stored JSON can dispatch on it without guessing from the keys present.
Plain dicts are stored as the generic kind.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import ClassVar


@dataclass(frozen=True)
class Payload:
    kind: ClassVar[str] = "generic"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass(frozen=True)
class GenericPayload(Payload):
    kind: ClassVar[str] = "generic"
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = dict(self.data)
        out["kind"] = self.kind
        return out


# =============================================================================
# FRAUD ALERT KINDS
# =============================================================================

@dataclass(frozen=True)
class RapidOrderCreation(Payload):
    kind: ClassVar[str] = "rapid_order_creation"
    order_count: int
    timeframe: str
    action: str


@dataclass(frozen=True)
class LowRating(Payload):
    kind: ClassVar[str] = "low_rating"
    rating: float
    total_deliveries: int
    action: str


@dataclass(frozen=True)
class ExcessiveCancellations(Payload):
    kind: ClassVar[str] = "excessive_cancellations"
    cancelled_count: int
    timeframe: str
    action: str


@dataclass(frozen=True)
class HighValueTransaction(Payload):
    kind: ClassVar[str] = "high_value_transaction"
    amount: str
    tracking_id: str
    action: str


@dataclass(frozen=True)
class SuspiciouslyFastDelivery(Payload):
    kind: ClassVar[str] = "suspiciously_fast_delivery"
    delivery_time_minutes: int
    tracking_id: str
    action: str


@dataclass(frozen=True)
class OtpVerifiedWithoutDelivery(Payload):
    kind: ClassVar[str] = "otp_verified_without_delivery"
    tracking_id: str
    action: str


# =============================================================================
# ACTIVITY KINDS
# =============================================================================

@dataclass(frozen=True)
class OrderTransition(Payload):
    kind: ClassVar[str] = "order_transition"
    tracking_id: str
    from_status: str | None
    to_status: str
    driver_id: str | None = None
    reason: str | None = None
    payment_status: str | None = None


@dataclass(frozen=True)
class PaymentEvent(Payload):
    kind: ClassVar[str] = "payment_event"
    amount: str
    status: str
    transaction_ref: str | None = None
    phone: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class InsuranceEvent(Payload):
    kind: ClassVar[str] = "insurance_event"
    policy_number: str
    status: str
    coverage: str
    premium: str


@dataclass(frozen=True)
class RatingSubmitted(Payload):
    kind: ClassVar[str] = "rating_submitted"
    driver_rating: int | None
    merchant_rating: int | None


@dataclass(frozen=True)
class AdminAction(Payload):
    kind: ClassVar[str] = "admin_action"
    target: str
    target_id: str
    note: str | None = None


def payload_to_dict(payload: Payload | dict | None) -> dict:
    """Serialize a payload; plain dicts are wrapped as the generic kind."""
    if payload is None:
        return {}
    if isinstance(payload, Payload):
        return payload.to_dict()
    if isinstance(payload, dict):
        return GenericPayload(data=payload).to_dict()
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")
