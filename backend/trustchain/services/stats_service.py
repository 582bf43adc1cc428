# Overview: Read-only aggregates for the admin dashboard.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import ActivityLog, FraudAlert, Order, Payment, Profile
from ..models.states import (
    ORDER_DELIVERED,
    PAYMENT_HELD_ESCROW,
    PAYMENT_RELEASED,
    VALID_ROLES,
)
from ..validation import format_cents


def _counts_by(column) -> dict:
    rows = db.session.query(column, func.count()).group_by(column).all()
    return {key: count for key, count in rows}


def system_stats(*, recent_activity: int = 10) -> dict:
    """
    Platform totals: users by role, orders by status, escrow balances,
    open fraud alerts by severity, and the latest activity entries.
    """
    users = _counts_by(Profile.role)
    orders = _counts_by(Order.status)

    held = (
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.status == PAYMENT_HELD_ESCROW)
        .scalar()
    )
    released = (
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.status == PAYMENT_RELEASED)
        .scalar()
    )
    open_alerts = dict(
        db.session.query(FraudAlert.severity, func.count())
        .filter(FraudAlert.resolved.is_(False))
        .group_by(FraudAlert.severity)
        .all()
    )
    activity = (
        db.session.query(ActivityLog)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(max(0, int(recent_activity)))
        .all()
    )

    total_orders = sum(orders.values())
    return {
        "users": {
            "total": sum(users.values()),
            "by_role": {role: users.get(role, 0) for role in sorted(VALID_ROLES)},
        },
        "orders": {
            "total": total_orders,
            "by_status": orders,
            "delivered": orders.get(ORDER_DELIVERED, 0),
        },
        "escrow": {
            "held_amount": format_cents(held),
            "released_amount": format_cents(released),
        },
        "fraud_alerts": {
            "open": sum(open_alerts.values()),
            "open_by_severity": open_alerts,
        },
        "recent_activity": [entry.to_dict() for entry in activity],
    }
