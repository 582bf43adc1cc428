from __future__ import annotations

from ..extensions import db
from trustchain.time_utils import to_utc_z


class ActivityLog(db.Model):
    """
    Append-only audit trail.

    - One entry per successful state-changing operation, written inside the
      same DB transaction as the change it records.
    - No updates or deletes of existing entries.
    - details holds a tagged payload (see trustchain.payloads).
    """
    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("ix_activity_logs_order_created", "order_id", "created_at"),
        db.Index("ix_activity_logs_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=True)
    user_id = db.Column(db.String(64), nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    details = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "action": self.action,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }


class FraudAlert(db.Model):
    """
    Heuristic fraud finding.

    Created only by the fraud engine, resolved only by an administrator,
    never deleted.
    """
    __tablename__ = "fraud_alerts"
    __table_args__ = (
        db.Index("ix_fraud_alerts_resolved_severity", "resolved", "severity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    alert_type = db.Column(db.String(64), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default="low")  # low, medium, high, critical
    details = db.Column(db.JSON, nullable=True)

    resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolution_note = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "details": self.details or {},
            "resolved": self.resolved,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "created_at": to_utc_z(self.created_at),
        }
