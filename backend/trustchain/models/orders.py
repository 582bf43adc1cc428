from __future__ import annotations

from ..extensions import db
from trustchain.time_utils import to_utc_z
from trustchain.validation import format_cents


class Order(db.Model):
    """
    Delivery order (root aggregate).

    status:         pending -> assigned -> in_transit -> delivered
                    pending/assigned -> cancelled
    payment_status: mirrors payments.status for the owning Payment row.

    Status columns are only written through conditional updates in the
    service layer (see services/concurrency.compare_and_set).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.CheckConstraint("amount_cents > 0", name="ck_orders_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=False, index=True)
    merchant_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=True, index=True)

    # Human-readable identifier (e.g., "TRK-20261019-7KQ2MX")
    tracking_id = db.Column(db.String(32), nullable=False, unique=True)
    delivery_otp = db.Column(db.String(4), nullable=False)

    pickup_address = db.Column(db.String(500), nullable=False)
    delivery_address = db.Column(db.String(500), nullable=False)
    pickup_lat = db.Column(db.Float, nullable=True)
    pickup_lng = db.Column(db.Float, nullable=True)
    delivery_lat = db.Column(db.Float, nullable=True)
    delivery_lng = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_method = db.Column(db.String(16), nullable=False, default="prepay")
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    amount_cents = db.Column(db.BigInteger, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    delivery = db.relationship("Delivery", uselist=False, back_populates="order")
    items = db.relationship("OrderItem", lazy=True, order_by="OrderItem.id")

    def to_dict(self, *, include_otp: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "merchant_id": self.merchant_id,
            "tracking_id": self.tracking_id,
            "pickup_address": self.pickup_address,
            "delivery_address": self.delivery_address,
            "pickup_lat": self.pickup_lat,
            "pickup_lng": self.pickup_lng,
            "delivery_lat": self.delivery_lat,
            "delivery_lng": self.delivery_lng,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "amount": format_cents(self.amount_cents),
            "amount_cents": self.amount_cents,
            "notes": self.notes,
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "items": [item.to_dict() for item in self.items],
            "delivery": self.delivery.to_dict() if self.delivery else None,
        }
        # The code proves physical hand-off; only the customer (and admins) may see it
        if include_otp:
            data["delivery_otp"] = self.delivery_otp
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.BigInteger, nullable=False)
    subtotal_cents = db.Column(db.BigInteger, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": format_cents(self.unit_price_cents),
            "subtotal": format_cents(self.subtotal_cents),
        }


class Delivery(db.Model):
    """
    Driver assignment for an order.

    The unique constraint on order_id is the store-level guarantee that an
    order never gets a second Delivery, even if two acceptors race past the
    status compare-and-set.

    otp_verified only becomes true in the complete-delivery transaction,
    together with delivered_at. A Delivery belonging to a cancelled order is
    voided (voided_at set), never deleted.
    """
    __tablename__ = "deliveries"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_deliveries_order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    driver_id = db.Column(db.String(64), db.ForeignKey("profiles.id"), nullable=False, index=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False)
    picked_up_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    current_lat = db.Column(db.Float, nullable=True)
    current_lng = db.Column(db.Float, nullable=True)
    last_location_update = db.Column(db.DateTime(timezone=True), nullable=True)

    otp_verified = db.Column(db.Boolean, nullable=False, default=False)
    otp_failed_attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    order = db.relationship("Order", back_populates="delivery")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "driver_id": self.driver_id,
            "assigned_at": to_utc_z(self.assigned_at),
            "picked_up_at": to_utc_z(self.picked_up_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "voided_at": to_utc_z(self.voided_at),
            "current_lat": self.current_lat,
            "current_lng": self.current_lng,
            "last_location_update": to_utc_z(self.last_location_update),
            "otp_verified": self.otp_verified,
            "otp_failed_attempts": self.otp_failed_attempts,
        }
