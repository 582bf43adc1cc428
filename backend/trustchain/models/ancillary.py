from __future__ import annotations

from ..extensions import db
from trustchain.time_utils import to_utc_z
from trustchain.validation import format_cents


class InsurancePolicy(db.Model):
    """
    Shipment insurance for an order. Independent of the order state machine.

    status: active -> claimed | expired | cancelled

    At most one active policy per order, enforced by a partial unique index.
    """
    __tablename__ = "insurance_policies"
    __table_args__ = (
        db.Index(
            "uq_insurance_policies_active_order",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    provider = db.Column(db.String(64), nullable=False)
    policy_number = db.Column(db.String(32), nullable=False, unique=True)
    coverage_cents = db.Column(db.BigInteger, nullable=False)
    premium_cents = db.Column(db.BigInteger, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider": self.provider,
            "policy_number": self.policy_number,
            "coverage_amount": format_cents(self.coverage_cents),
            "premium_amount": format_cents(self.premium_cents),
            "status": self.status,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }


class RatingReview(db.Model):
    """Customer rating of the driver and merchant after delivery (one per order)."""
    __tablename__ = "ratings_reviews"
    __table_args__ = (
        db.UniqueConstraint("order_id", "customer_id", name="uq_ratings_order_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=False)
    driver_id = db.Column(db.String(64), nullable=True, index=True)
    merchant_id = db.Column(db.String(64), nullable=True, index=True)
    driver_rating = db.Column(db.Integer, nullable=True)
    merchant_rating = db.Column(db.Integer, nullable=True)
    driver_review = db.Column(db.Text, nullable=True)
    merchant_review = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "driver_id": self.driver_id,
            "merchant_id": self.merchant_id,
            "driver_rating": self.driver_rating,
            "merchant_rating": self.merchant_rating,
            "driver_review": self.driver_review,
            "merchant_review": self.merchant_review,
            "created_at": to_utc_z(self.created_at),
        }
