# Overview: Service-layer fraud heuristics; reads workflow state and emits alerts, never mutates it.

"""
Fraud Detection Engine

Stateless per invocation. Invoked with a user_id and/or an order_id plus an
action tag (what triggered the check). Each rule is evaluated independently
and every rule that fires produces its own alert.

USER RULES (user_id):
    rapid_order_creation      high    > 5 orders placed in the trailing hour
    low_rating                medium  rating < 2.0 with > 10 deliveries
    excessive_cancellations   high    > 3 cancelled orders created in 7 days

ORDER RULES (order_id):
    high_value_transaction         medium    amount > 50,000 (user = customer)
    suspiciously_fast_delivery     high      delivered < 5 min after assignment
                                             (user = driver)
    otp_verified_without_delivery  critical  otp_verified with no delivered_at
                                             (user = driver)

Thresholds come from config. All alerts of one invocation are inserted with a
single commit. Every high/critical alert is fanned out to all admins.

INVARIANT: this module never writes orders, deliveries or payments.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..events import publish
from ..models import FraudAlert, Order, Profile
from ..models.states import (
    ESCALATED_SEVERITIES,
    ORDER_CANCELLED,
    ROLE_ADMIN,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    VALID_SEVERITIES,
)
from ..payloads import (
    AdminAction,
    ExcessiveCancellations,
    HighValueTransaction,
    LowRating,
    OtpVerifiedWithoutDelivery,
    Payload,
    RapidOrderCreation,
    SuspiciouslyFastDelivery,
    payload_to_dict,
)
from ..validation import NotFoundError, StateConflict, ValidationError, format_cents
from . import notification_service, profile_service
from .activity_service import append_activity
from .concurrency import compare_and_set, run_with_retry
from .side_effects import run_best_effort
from trustchain.time_utils import utcnow

logger = logging.getLogger(__name__)

ALERT_RAPID_ORDER_CREATION = "rapid_order_creation"
ALERT_LOW_RATING = "low_rating"
ALERT_EXCESSIVE_CANCELLATIONS = "excessive_cancellations"
ALERT_HIGH_VALUE_TRANSACTION = "high_value_transaction"
ALERT_SUSPICIOUSLY_FAST_DELIVERY = "suspiciously_fast_delivery"
ALERT_OTP_VERIFIED_WITHOUT_DELIVERY = "otp_verified_without_delivery"

RAPID_ORDER_WINDOW = timedelta(hours=1)
CANCELLATION_WINDOW = timedelta(days=7)


class AlertAlreadyResolved(StateConflict):
    code = "ALERT_ALREADY_RESOLVED"


@dataclass(frozen=True)
class FraudThresholds:
    rapid_order_limit: int = 5
    cancellation_limit: int = 3
    high_value_cents: int = 5_000_000
    fast_delivery_minutes: int = 5
    low_rating: float = 2.0
    low_rating_min_deliveries: int = 10

    @classmethod
    def from_config(cls, config) -> "FraudThresholds":
        high_value = Decimal(str(config.get("FRAUD_HIGH_VALUE_THRESHOLD", "50000")))
        return cls(
            rapid_order_limit=int(config.get("FRAUD_RAPID_ORDER_LIMIT", 5)),
            cancellation_limit=int(config.get("FRAUD_CANCELLATION_LIMIT", 3)),
            high_value_cents=int(high_value * 100),
            fast_delivery_minutes=int(config.get("FRAUD_FAST_DELIVERY_MINUTES", 5)),
            low_rating=float(config.get("FRAUD_LOW_RATING_THRESHOLD", 2.0)),
            low_rating_min_deliveries=int(config.get("FRAUD_LOW_RATING_MIN_DELIVERIES", 10)),
        )


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: str
    severity: str
    user_id: str | None
    order_id: int | None
    details: Payload


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# =============================================================================
# RULES
# =============================================================================

def evaluate_user(profile: Profile, action: str, thresholds: FraudThresholds, now=None) -> list[AlertCandidate]:
    now = now or utcnow()
    found = []

    recent_orders = (
        db.session.query(func.count(Order.id))
        .filter(Order.customer_id == profile.id, Order.created_at >= now - RAPID_ORDER_WINDOW)
        .scalar()
    ) or 0
    if recent_orders > thresholds.rapid_order_limit:
        found.append(AlertCandidate(
            alert_type=ALERT_RAPID_ORDER_CREATION,
            severity=SEVERITY_HIGH,
            user_id=profile.id,
            order_id=None,
            details=RapidOrderCreation(order_count=recent_orders, timeframe="1 hour", action=action),
        ))

    if profile.rating < thresholds.low_rating and profile.total_deliveries > thresholds.low_rating_min_deliveries:
        found.append(AlertCandidate(
            alert_type=ALERT_LOW_RATING,
            severity=SEVERITY_MEDIUM,
            user_id=profile.id,
            order_id=None,
            details=LowRating(rating=profile.rating, total_deliveries=profile.total_deliveries, action=action),
        ))

    cancelled = (
        db.session.query(func.count(Order.id))
        .filter(
            Order.customer_id == profile.id,
            Order.status == ORDER_CANCELLED,
            Order.created_at >= now - CANCELLATION_WINDOW,
        )
        .scalar()
    ) or 0
    if cancelled > thresholds.cancellation_limit:
        found.append(AlertCandidate(
            alert_type=ALERT_EXCESSIVE_CANCELLATIONS,
            severity=SEVERITY_HIGH,
            user_id=profile.id,
            order_id=None,
            details=ExcessiveCancellations(cancelled_count=cancelled, timeframe="7 days", action=action),
        ))

    return found


def evaluate_order(order: Order, action: str, thresholds: FraudThresholds) -> list[AlertCandidate]:
    found = []

    if order.amount_cents > thresholds.high_value_cents:
        found.append(AlertCandidate(
            alert_type=ALERT_HIGH_VALUE_TRANSACTION,
            severity=SEVERITY_MEDIUM,
            user_id=order.customer_id,
            order_id=order.id,
            details=HighValueTransaction(
                amount=format_cents(order.amount_cents),
                tracking_id=order.tracking_id,
                action=action,
            ),
        ))

    delivery = order.delivery
    if delivery is None:
        return found

    if delivery.delivered_at is not None and delivery.assigned_at is not None:
        elapsed = delivery.delivered_at - delivery.assigned_at
        if elapsed < timedelta(minutes=thresholds.fast_delivery_minutes):
            found.append(AlertCandidate(
                alert_type=ALERT_SUSPICIOUSLY_FAST_DELIVERY,
                severity=SEVERITY_HIGH,
                user_id=delivery.driver_id,
                order_id=order.id,
                details=SuspiciouslyFastDelivery(
                    delivery_time_minutes=_round_half_up(elapsed.total_seconds() / 60),
                    tracking_id=order.tracking_id,
                    action=action,
                ),
            ))

    if delivery.otp_verified and delivery.delivered_at is None:
        found.append(AlertCandidate(
            alert_type=ALERT_OTP_VERIFIED_WITHOUT_DELIVERY,
            severity=SEVERITY_CRITICAL,
            user_id=delivery.driver_id,
            order_id=order.id,
            details=OtpVerifiedWithoutDelivery(tracking_id=order.tracking_id, action=action),
        ))

    return found


# =============================================================================
# ENTRY POINT
# =============================================================================

def run_fraud_check(*, user_id: str | None = None, order_id: int | None = None, action: str = "manual_check") -> list[FraudAlert]:
    """
    Evaluate every rule for the given user and/or order and persist alerts.

    Raises:
        ValidationError: neither user_id nor order_id given
        NotFoundError: a named user or order does not exist
    """
    if not user_id and order_id is None:
        raise ValidationError("user_id or order_id is required")
    action = (action or "manual_check").strip()[:64]
    thresholds = FraudThresholds.from_config(current_app.config)

    profile = None
    if user_id:
        profile = profile_service.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"User {user_id} not found")
    order = None
    if order_id is not None:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

    candidates = []
    if profile is not None:
        candidates.extend(evaluate_user(profile, action, thresholds))
    if order is not None:
        candidates.extend(evaluate_order(order, action, thresholds))

    if not candidates:
        return []

    def _op():
        now = utcnow()
        rows = [
            FraudAlert(
                user_id=c.user_id,
                order_id=c.order_id,
                alert_type=c.alert_type,
                severity=c.severity,
                details=payload_to_dict(c.details),
                resolved=False,
                created_at=now,
            )
            for c in candidates
        ]
        db.session.add_all(rows)
        db.session.commit()
        return rows

    alerts = run_with_retry(_op)
    logger.info(
        "Fraud check (%s) user=%s order=%s raised %s alert(s)",
        action, user_id, order_id, len(alerts),
    )

    for alert in alerts:
        run_best_effort(
            f"publish fraud_alert.created ({alert.id})",
            publish,
            "fraud_alert.created",
            {
                "alert_id": alert.id,
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                "user_id": alert.user_id,
                "order_id": alert.order_id,
            },
        )
        if alert.severity in ESCALATED_SEVERITIES:
            run_best_effort(f"notify admins ({alert.alert_type})", _notify_admins, alert)
    return alerts


def _notify_admins(alert: FraudAlert):
    return notification_service.notify_admins(
        type=notification_service.TYPE_FRAUD_ALERT,
        title=f"{alert.severity.upper()} Fraud Alert",
        message=f"{alert.alert_type.replace('_', ' ').upper()} detected",
        data=dict(alert.details or {}, alert_id=alert.id),
    )


# =============================================================================
# ADMIN REVIEW
# =============================================================================

def resolve_alert(alert_id: int, admin_id: str, note: str | None = None) -> FraudAlert:
    """Mark an alert resolved. Admin only; resolving twice is AlertAlreadyResolved."""
    profile_service.require_profile(admin_id, role=ROLE_ADMIN, label="Admin")
    note = (note or "").strip()[:500] or None

    def _op():
        alert = db.session.get(FraudAlert, alert_id)
        if alert is None:
            raise NotFoundError(f"Fraud alert {alert_id} not found")
        won = compare_and_set(
            FraudAlert,
            alert_id,
            expected={"resolved": False},
            values={"resolved": True, "resolved_at": utcnow(), "resolved_by": admin_id, "resolution_note": note},
        )
        if not won:
            raise AlertAlreadyResolved(f"Fraud alert {alert_id} is already resolved")
        append_activity(
            action="fraud_alert_resolved",
            order_id=alert.order_id,
            user_id=admin_id,
            details=AdminAction(target="fraud_alert", target_id=str(alert_id), note=note),
        )
        db.session.commit()

    run_with_retry(_op)
    return db.session.get(FraudAlert, alert_id, populate_existing=True)


def list_alerts(
    *,
    resolved: bool | None = None,
    severity: str | None = None,
    user_id: str | None = None,
    order_id: int | None = None,
    limit: int = 100,
) -> list[FraudAlert]:
    query = db.session.query(FraudAlert)
    if resolved is not None:
        query = query.filter(FraudAlert.resolved.is_(resolved))
    if severity:
        if severity not in VALID_SEVERITIES:
            raise ValidationError(f"severity must be one of {VALID_SEVERITIES}")
        query = query.filter(FraudAlert.severity == severity)
    if user_id:
        query = query.filter(FraudAlert.user_id == user_id)
    if order_id is not None:
        query = query.filter(FraudAlert.order_id == order_id)
    limit = max(1, min(int(limit), 500))
    return query.order_by(FraudAlert.created_at.desc(), FraudAlert.id.desc()).limit(limit).all()
