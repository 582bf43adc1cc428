# Overview: Service-layer operations for the activity audit trail.

from __future__ import annotations

from flask import has_request_context, request

from ..extensions import db
from ..models import ActivityLog
from ..payloads import Payload, payload_to_dict
from trustchain.time_utils import utcnow
"""
Activity Log Invariants (authoritative)

- Append-only audit trail for workflow events.
- Every successful state-changing operation appends exactly one entry.
- Entries are written inside the same DB transaction as the change they
  record (flush, never commit, here).
- No updates or deletes of existing entries.
"""


def append_activity(
    *,
    action: str,
    order_id: int | None = None,
    user_id: str | None = None,
    details: Payload | dict | None = None,
) -> ActivityLog:
    """
    Append-only activity entry.

    - No domain logic here.
    - Caller owns the transaction; this only flushes.
    - Request metadata (IP, user agent) is captured when called inside a
      request.
    """
    if not action:
        raise ValueError("action is required for activity entries")

    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        ua = request.headers.get("User-Agent")
        user_agent = ua[:255] if ua else None

    entry = ActivityLog(
        order_id=order_id,
        user_id=user_id,
        action=action[:64],
        details=payload_to_dict(details),
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def list_activity(
    *,
    order_id: int | None = None,
    user_id: str | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[ActivityLog]:
    query = db.session.query(ActivityLog)
    if order_id is not None:
        query = query.filter(ActivityLog.order_id == order_id)
    if user_id is not None:
        query = query.filter(ActivityLog.user_id == user_id)
    if action:
        query = query.filter(ActivityLog.action == action)
    limit = max(1, min(int(limit), 500))
    return query.order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc()).limit(limit).all()
