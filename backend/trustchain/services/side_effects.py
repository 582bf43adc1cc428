# Overview: Best-effort runner for post-commit side effects (fraud scoring, notifications, events).

"""
Secondary work triggered by a committed workflow transition.

None of it may fail or block the transition that triggered it: each step runs
after the primary commit, and any exception is rolled back, logged and
swallowed.
"""

from __future__ import annotations

import logging
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..events import publish

logger = logging.getLogger(__name__)


def run_best_effort(label: str, func, *args, **kwargs):
    """Call func; on any failure roll back, log with the label, and return None."""
    try:
        return func(*args, **kwargs)
    except Exception:
        db.session.rollback()
        logger.exception("Best-effort side effect failed: %s", label)
        return None


def after_commit(
    *,
    action: str,
    notifications: Iterable = (),
    events: Iterable[tuple[str, dict]] = (),
    fraud_user_id: str | None = None,
    fraud_order_id: int | None = None,
) -> None:
    """
    Fan out the side effects of one committed transition.

    Order: change events, then notifications, then the fraud check, so a
    slow or failing fraud query never delays the notifications.
    """
    from . import fraud_service, notification_service

    for topic, payload in events:
        run_best_effort(f"publish {topic} ({action})", publish, topic, payload)

    specs = [spec for spec in notifications if spec is not None]
    if specs:
        run_best_effort(f"notify ({action})", notification_service.dispatch, specs)

    if (fraud_user_id or fraud_order_id) and current_app.config.get("FRAUD_CHECKS_ON_TRANSITIONS", True):
        run_best_effort(
            f"fraud check ({action})",
            fraud_service.run_fraud_check,
            user_id=fraud_user_id,
            order_id=fraud_order_id,
            action=action,
        )
