from __future__ import annotations

from ..extensions import db
from trustchain.time_utils import to_utc_z
from trustchain.validation import format_cents


class Payment(db.Model):
    """
    Escrow payment for an order (1:1).

    STATE MACHINE:
        pending -> held_escrow -> released
                              -> refunded
        pending -> failed

    released_at is set if and only if status = released.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_payments_order_id"),
        db.Index("ix_payments_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    customer_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=False, index=True)
    driver_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=True, index=True)
    merchant_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=True, index=True)

    amount_cents = db.Column(db.BigInteger, nullable=False)
    payment_method = db.Column(db.String(16), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending")

    # Gateway reference (e.g., checkout request id) and capture account
    transaction_ref = db.Column(db.String(128), nullable=True, index=True)
    phone = db.Column(db.String(32), nullable=True)

    held_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "driver_id": self.driver_id,
            "merchant_id": self.merchant_id,
            "amount": format_cents(self.amount_cents),
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "transaction_ref": self.transaction_ref,
            "held_at": to_utc_z(self.held_at),
            "released_at": to_utc_z(self.released_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "failed_at": to_utc_z(self.failed_at),
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
