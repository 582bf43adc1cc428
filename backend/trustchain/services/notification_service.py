# Overview: Service-layer operations for in-app notifications (fan-out dispatcher).

"""
Notification Dispatcher

Pure fan-out: one Notification row per recipient, recorded for eventual read.
Push/SMS transport is an external collaborator that subscribes to the
"notification.created" event; the core guarantees only the row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import func

from ..extensions import db
from ..events import publish
from ..models import Notification, Profile
from ..models.states import ROLE_ADMIN
from ..validation import AuthorizationError, NotFoundError
from .concurrency import compare_and_set, run_with_retry
from trustchain.time_utils import utcnow


TYPE_ORDER = "order"
TYPE_DELIVERY = "delivery"
TYPE_PAYMENT = "payment"
TYPE_FRAUD_ALERT = "fraud_alert"


@dataclass(frozen=True)
class NotificationSpec:
    user_id: str | None
    type: str
    title: str
    message: str
    data: dict = field(default_factory=dict)


def dispatch(specs: Iterable[NotificationSpec]) -> list[Notification]:
    """
    Insert one Notification per recipient in a single transaction.

    Specs without a recipient (e.g. an order with no merchant) are skipped.
    Each stored row is published as "notification.created" after commit.
    """
    specs = [s for s in specs if s is not None and s.user_id]
    if not specs:
        return []

    def _op():
        now = utcnow()
        rows = [
            Notification(
                user_id=spec.user_id,
                type=spec.type,
                title=spec.title[:160],
                message=spec.message,
                data=dict(spec.data or {}),
                read=False,
                created_at=now,
            )
            for spec in specs
        ]
        db.session.add_all(rows)
        db.session.commit()
        return rows

    rows = run_with_retry(_op)

    for row in rows:
        publish("notification.created", {
            "notification_id": row.id,
            "user_id": row.user_id,
            "type": row.type,
            "title": row.title,
            "message": row.message,
        })
    return rows


def admin_ids() -> list[str]:
    rows = db.session.query(Profile.id).filter(Profile.role == ROLE_ADMIN).order_by(Profile.id).all()
    return [r[0] for r in rows]


def notify_admins(*, type: str, title: str, message: str, data: dict | None = None) -> list[Notification]:
    """Fan a notification out to every administrator account."""
    return dispatch(
        NotificationSpec(user_id=admin_id, type=type, title=title, message=message, data=dict(data or {}))
        for admin_id in admin_ids()
    )


def list_for_user(user_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = db.session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    limit = max(1, min(int(limit), 200))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user_id: str) -> int:
    return (
        db.session.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.read.is_(False))
        .scalar()
    ) or 0


def mark_read(notification_id: int, user_id: str) -> Notification:
    """
    Mark a notification read. Only the recipient may do this.

    Idempotent: marking an already-read notification keeps the original
    read_at.
    """
    def _op():
        row = db.session.get(Notification, notification_id)
        if row is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if row.user_id != user_id:
            raise AuthorizationError("Only the recipient can mark a notification read")

        compare_and_set(
            Notification,
            notification_id,
            expected={"read": False},
            values={"read": True, "read_at": utcnow()},
        )
        db.session.commit()
        return db.session.get(Notification, notification_id)

    return run_with_retry(_op)
