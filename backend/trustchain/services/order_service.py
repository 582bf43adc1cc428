# Overview: Service-layer operations for the order lifecycle; encapsulates business logic and database work.

"""
Order Lifecycle Manager

================================================================================
STATE MACHINE:
    pending -> assigned -> in_transit -> delivered
    pending/assigned -> cancelled

    pending:    created by a customer, visible to drivers
    assigned:   exactly one driver accepted; one Delivery row exists
    in_transit: the assigned driver picked the parcel up
    delivered:  OTP verified at hand-off (see delivery_service)
    cancelled:  terminal; held escrow refunded, delivery voided
================================================================================

RULES (NON-NEGOTIABLE):
1. Every status write is a compare-and-set on the expected prior status.
   Two concurrent callers expecting the same state cannot both win.
2. Each successful transition appends exactly one activity entry
   (order_<new_status>) inside the same transaction.
3. Notifications, change events and fraud scoring run only after commit and
   never fail the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Delivery, Order, OrderItem, Payment, Profile
from ..models.states import (
    CANCELLABLE_ORDER_STATUSES,
    ORDER_ASSIGNED,
    ORDER_CANCELLED,
    ORDER_IN_TRANSIT,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_HELD_ESCROW,
    PAYMENT_METHOD_PREPAY,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    ROLE_DRIVER,
    ROLE_MERCHANT,
    VALID_PAYMENT_METHODS,
)
from ..payloads import OrderTransition
from ..validation import (
    AuthorizationError,
    NotFoundError,
    StateConflict,
    ValidationError,
    format_cents,
    parse_amount_cents,
    parse_coordinate,
    parse_int,
)
from . import identifier_service, profile_service
from .activity_service import append_activity
from .concurrency import compare_and_set, lock_for_update, run_with_retry, violates_constraint
from .notification_service import TYPE_DELIVERY, TYPE_ORDER, NotificationSpec
from .side_effects import after_commit
from trustchain.time_utils import utcnow

logger = logging.getLogger(__name__)

TRACKING_ID_ATTEMPTS = 5
TRACKING_ID_CONSTRAINT = ("orders.tracking_id", "orders_tracking_id_key")
MAX_ITEMS = 100


class InvalidTransition(StateConflict):
    """The order is not in a state that allows the requested transition."""

    code = "INVALID_TRANSITION"


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of an idempotent transition.

    replayed is True when the call found the transition already applied by
    the same actor and changed nothing.
    """
    entity: Any
    previous_status: str | None
    status: str
    replayed: bool = False


# =============================================================================
# HELPERS
# =============================================================================

def require_order(order_id: int, *, for_update: bool = False) -> Order:
    if for_update:
        order = lock_for_update(db.session.query(Order).filter(Order.id == order_id)).first()
    else:
        order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def reload_order(order_id: int) -> Order:
    """Re-read an order after conditional updates (which bypass the identity map)."""
    order = db.session.get(Order, order_id, populate_existing=True)
    if order is not None and order.delivery is not None:
        db.session.refresh(order.delivery)
    return order


def current_status(order_id: int) -> str | None:
    return db.session.query(Order.status).filter(Order.id == order_id).scalar()


def order_event(order: Order) -> tuple[str, dict]:
    return ("order.changed", {
        "order_id": order.id,
        "tracking_id": order.tracking_id,
        "status": order.status,
        "payment_status": order.payment_status,
    })


def delivery_event(delivery: Delivery) -> tuple[str, dict]:
    return ("delivery.changed", {
        "delivery_id": delivery.id,
        "order_id": delivery.order_id,
        "driver_id": delivery.driver_id,
        "otp_verified": delivery.otp_verified,
        "voided": delivery.voided_at is not None,
    })


def _parse_items(items) -> list[dict]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    if len(items) > MAX_ITEMS:
        raise ValidationError(f"items cannot exceed {MAX_ITEMS} entries")

    parsed = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        quantity = parse_int(raw.get("quantity", 1), f"items[{index}].quantity")
        if quantity <= 0:
            raise ValidationError(f"items[{index}].quantity must be greater than 0")
        unit_price_cents = parse_amount_cents(raw.get("unit_price"), f"items[{index}].unit_price")
        product_id = raw.get("product_id")
        description = raw.get("description")
        parsed.append({
            "product_id": str(product_id)[:64] if product_id is not None else None,
            "description": str(description).strip()[:255] if description else None,
            "quantity": quantity,
            "unit_price_cents": unit_price_cents,
            "subtotal_cents": unit_price_cents * quantity,
        })
    return parsed


def can_view_order(order: Order, profile: Profile) -> bool:
    if profile.role == ROLE_ADMIN:
        return True
    if profile.id in (order.customer_id, order.merchant_id):
        return True
    if order.delivery is not None and order.delivery.driver_id == profile.id:
        return True
    # Drivers browse unassigned orders before accepting one
    return profile.role == ROLE_DRIVER and order.status == ORDER_PENDING


def can_view_otp(order: Order, profile: Profile) -> bool:
    return profile.role == ROLE_ADMIN or profile.id == order.customer_id


def serialize_order(order: Order, viewer: Profile) -> dict:
    return order.to_dict(include_otp=can_view_otp(order, viewer))


def _currency() -> str:
    return current_app.config.get("CURRENCY", "KES")


def _notify(order: Order, recipients, *, type: str, title: str, message: str) -> list[NotificationSpec]:
    data = {"order_id": order.id, "tracking_id": order.tracking_id}
    return [
        NotificationSpec(user_id=user_id, type=type, title=title, message=message, data=data)
        for user_id in dict.fromkeys(recipients)
        if user_id
    ]


# =============================================================================
# CREATE
# =============================================================================

def create_order(
    *,
    customer_id: str,
    pickup_address: str,
    delivery_address: str,
    amount: Any,
    payment_method: str = PAYMENT_METHOD_PREPAY,
    merchant_id: str | None = None,
    pickup_lat: Any = None,
    pickup_lng: Any = None,
    delivery_lat: Any = None,
    delivery_lng: Any = None,
    notes: str | None = None,
    items: list | None = None,
) -> Order:
    """
    Create a pending order and its pending Payment in one transaction.

    Generates a unique tracking_id (retried on collision) and a 4-digit
    delivery OTP from a CSPRNG. Appends `order_pending`.

    Raises:
        ValidationError: missing/invalid input
        NotFoundError: customer or merchant does not exist
        AuthorizationError: customer/merchant profile has the wrong role
    """
    pickup_address = (pickup_address or "").strip()
    delivery_address = (delivery_address or "").strip()
    if not pickup_address:
        raise ValidationError("pickup_address is required")
    if not delivery_address:
        raise ValidationError("delivery_address is required")
    if len(pickup_address) > 500 or len(delivery_address) > 500:
        raise ValidationError("addresses cannot exceed 500 characters")

    amount_cents = parse_amount_cents(amount)
    payment_method = (payment_method or PAYMENT_METHOD_PREPAY).strip().lower()
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {VALID_PAYMENT_METHODS}")

    coords = {
        "pickup_lat": parse_coordinate(pickup_lat, "pickup_lat"),
        "pickup_lng": parse_coordinate(pickup_lng, "pickup_lng"),
        "delivery_lat": parse_coordinate(delivery_lat, "delivery_lat"),
        "delivery_lng": parse_coordinate(delivery_lng, "delivery_lng"),
    }
    line_items = _parse_items(items)

    if not customer_id:
        raise ValidationError("customer_id is required")
    profile_service.require_profile(customer_id, role=ROLE_CUSTOMER, label="Customer")
    if merchant_id:
        profile_service.require_profile(merchant_id, role=ROLE_MERCHANT, label="Merchant")

    order_id = None
    for attempt in range(TRACKING_ID_ATTEMPTS):
        def _op():
            now = utcnow()
            order = Order(
                customer_id=customer_id,
                merchant_id=merchant_id or None,
                tracking_id=identifier_service.generate_tracking_id(now),
                delivery_otp=identifier_service.generate_delivery_otp(),
                pickup_address=pickup_address,
                delivery_address=delivery_address,
                status=ORDER_PENDING,
                payment_method=payment_method,
                payment_status=PAYMENT_PENDING,
                amount_cents=amount_cents,
                notes=(notes or None),
                created_at=now,
                updated_at=now,
                **coords,
            )
            db.session.add(order)
            db.session.flush()

            for item in line_items:
                db.session.add(OrderItem(order_id=order.id, created_at=now, **item))

            db.session.add(Payment(
                order_id=order.id,
                customer_id=customer_id,
                merchant_id=merchant_id or None,
                amount_cents=amount_cents,
                payment_method=payment_method,
                status=PAYMENT_PENDING,
                created_at=now,
                updated_at=now,
            ))

            append_activity(
                action=f"order_{ORDER_PENDING}",
                order_id=order.id,
                user_id=customer_id,
                details=OrderTransition(
                    tracking_id=order.tracking_id,
                    from_status=None,
                    to_status=ORDER_PENDING,
                    payment_status=PAYMENT_PENDING,
                ),
            )
            db.session.commit()
            return order.id

        try:
            order_id = run_with_retry(_op)
            break
        except IntegrityError as exc:
            # run_with_retry already rolled back
            if not violates_constraint(exc, *TRACKING_ID_CONSTRAINT):
                raise
            logger.warning("Tracking id collision creating order (attempt %s)", attempt + 1)
    if order_id is None:
        raise StateConflict("Could not allocate a unique tracking id")

    order = reload_order(order_id)
    after_commit(
        action="order_created",
        events=[order_event(order)],
        notifications=_notify(
            order,
            [order.merchant_id],
            type=TYPE_ORDER,
            title="New Order",
            message=f"New order {order.tracking_id} for {_currency()} {format_cents(order.amount_cents)}",
        ),
        fraud_user_id=customer_id,
        fraud_order_id=order.id,
    )
    return order


# =============================================================================
# ACCEPT (pending -> assigned)
# =============================================================================

def accept_order(order_id: int, driver_id: str) -> Order:
    """
    Assign a pending order to a driver.

    The status compare-and-set plus the Delivery insert run in one
    transaction; the unique constraint on deliveries.order_id is a second
    guard. Exactly one concurrent acceptor wins; the others get
    InvalidTransition and leave no Delivery behind.
    """
    profile_service.require_profile(driver_id, role=ROLE_DRIVER, label="Driver")

    def _op():
        order = require_order(order_id)
        tracking_id = order.tracking_id
        now = utcnow()

        won = compare_and_set(
            Order,
            order_id,
            expected={"status": ORDER_PENDING},
            values={"status": ORDER_ASSIGNED, "updated_at": now},
        )
        if not won:
            status = current_status(order_id)
            raise InvalidTransition(
                f"Order {order_id} cannot be accepted (status: {status})",
                details={"order_id": order_id, "status": status},
            )

        db.session.add(Delivery(order_id=order_id, driver_id=driver_id, assigned_at=now))
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise InvalidTransition(
                f"Order {order_id} already has a driver",
                details={"order_id": order_id},
            )

        append_activity(
            action=f"order_{ORDER_ASSIGNED}",
            order_id=order_id,
            user_id=driver_id,
            details=OrderTransition(
                tracking_id=tracking_id,
                from_status=ORDER_PENDING,
                to_status=ORDER_ASSIGNED,
                driver_id=driver_id,
            ),
        )
        db.session.commit()

    run_with_retry(_op)

    order = reload_order(order_id)
    after_commit(
        action="order_assigned",
        events=[order_event(order), delivery_event(order.delivery)],
        notifications=_notify(
            order,
            [order.customer_id, order.merchant_id],
            type=TYPE_DELIVERY,
            title="Driver Assigned",
            message=f"A driver has accepted order {order.tracking_id}",
        ),
        fraud_user_id=driver_id,
    )
    return order


# =============================================================================
# START TRANSIT (assigned -> in_transit)
# =============================================================================

def start_transit(order_id: int, driver_id: str) -> TransitionResult:
    """
    Mark an assigned order picked up by its driver.

    picked_up_at is only set when unset. A repeat call by the same driver on
    an order already in transit changes nothing and appends no activity.
    """
    def _op():
        order = require_order(order_id)
        delivery = order.delivery
        if delivery is None or delivery.voided_at is not None:
            raise InvalidTransition(
                f"Order {order_id} has no active delivery",
                details={"order_id": order_id, "status": order.status},
            )
        if delivery.driver_id != driver_id:
            raise AuthorizationError("Only the assigned driver can pick up this order")

        if order.status == ORDER_IN_TRANSIT:
            return True
        if order.status != ORDER_ASSIGNED:
            raise InvalidTransition(
                f"Order {order_id} cannot move to in_transit (status: {order.status})",
                details={"order_id": order_id, "status": order.status},
            )

        now = utcnow()
        won = compare_and_set(
            Order,
            order_id,
            expected={"status": ORDER_ASSIGNED},
            values={"status": ORDER_IN_TRANSIT, "updated_at": now},
        )
        if not won:
            status = current_status(order_id)
            db.session.rollback()
            if status == ORDER_IN_TRANSIT:
                return True
            raise InvalidTransition(
                f"Order {order_id} cannot move to in_transit (status: {status})",
                details={"order_id": order_id, "status": status},
            )

        compare_and_set(
            Delivery,
            delivery.id,
            expected={"picked_up_at": None},
            values={"picked_up_at": now},
        )
        append_activity(
            action=f"order_{ORDER_IN_TRANSIT}",
            order_id=order_id,
            user_id=driver_id,
            details=OrderTransition(
                tracking_id=order.tracking_id,
                from_status=ORDER_ASSIGNED,
                to_status=ORDER_IN_TRANSIT,
                driver_id=driver_id,
            ),
        )
        db.session.commit()
        return False

    replayed = run_with_retry(_op)
    order = reload_order(order_id)
    if replayed:
        return TransitionResult(order, ORDER_IN_TRANSIT, ORDER_IN_TRANSIT, replayed=True)

    after_commit(
        action="order_in_transit",
        events=[order_event(order), delivery_event(order.delivery)],
        notifications=_notify(
            order,
            [order.customer_id],
            type=TYPE_DELIVERY,
            title="Order Picked Up",
            message=f"Your order {order.tracking_id} is on the way",
        ),
    )
    return TransitionResult(order, ORDER_ASSIGNED, ORDER_IN_TRANSIT)


# =============================================================================
# CANCEL (pending/assigned -> cancelled)
# =============================================================================

def cancel_order(order_id: int, actor_id: str, reason: str | None = None) -> Order:
    """
    Cancel a pending or assigned order.

    Allowed actors: the customer, the assigned driver (assigned state only),
    or an admin. In the same transaction: a held_escrow payment is refunded,
    a pending payment is failed, and any Delivery is voided. One
    `order_cancelled` activity entry records the payment outcome.
    """
    actor = profile_service.require_profile(actor_id)
    reason = (reason or "").strip()[:255] or None

    def _op():
        order = require_order(order_id)
        from_status = order.status
        delivery = order.delivery

        is_customer = actor.id == order.customer_id
        is_assigned_driver = (
            delivery is not None
            and delivery.driver_id == actor.id
            and from_status == ORDER_ASSIGNED
        )
        if not (is_customer or is_assigned_driver or actor.role == ROLE_ADMIN):
            raise AuthorizationError("Only the customer, the assigned driver or an admin can cancel this order")

        if from_status not in CANCELLABLE_ORDER_STATUSES:
            raise InvalidTransition(
                f"Order {order_id} cannot be cancelled (status: {from_status})",
                details={"order_id": order_id, "status": from_status},
            )

        now = utcnow()
        won = compare_and_set(
            Order,
            order_id,
            expected={"status": from_status},
            values={"status": ORDER_CANCELLED, "cancel_reason": reason, "updated_at": now},
        )
        if not won:
            status = current_status(order_id)
            raise InvalidTransition(
                f"Order {order_id} changed state before it could be cancelled (status: {status})",
                details={"order_id": order_id, "status": status},
            )

        payment = db.session.query(Payment).filter(Payment.order_id == order_id).first()
        payment_status = order.payment_status
        if payment is not None:
            if compare_and_set(
                Payment,
                payment.id,
                expected={"status": PAYMENT_HELD_ESCROW},
                values={"status": PAYMENT_REFUNDED, "refunded_at": now},
            ):
                payment_status = PAYMENT_REFUNDED
            elif compare_and_set(
                Payment,
                payment.id,
                expected={"status": PAYMENT_PENDING},
                values={"status": PAYMENT_FAILED, "failed_at": now, "failure_reason": "order_cancelled"},
            ):
                payment_status = PAYMENT_FAILED
            else:
                payment_status = db.session.query(Payment.status).filter(Payment.id == payment.id).scalar()

            compare_and_set(Order, order_id, expected={}, values={"payment_status": payment_status})

        if delivery is not None:
            compare_and_set(Delivery, delivery.id, expected={"voided_at": None}, values={"voided_at": now})

        append_activity(
            action=f"order_{ORDER_CANCELLED}",
            order_id=order_id,
            user_id=actor.id,
            details=OrderTransition(
                tracking_id=order.tracking_id,
                from_status=from_status,
                to_status=ORDER_CANCELLED,
                driver_id=delivery.driver_id if delivery is not None else None,
                reason=reason,
                payment_status=payment_status,
            ),
        )
        db.session.commit()

    run_with_retry(_op)

    order = reload_order(order_id)
    events = [order_event(order)]
    if order.delivery is not None:
        events.append(delivery_event(order.delivery))
    if order.payment_status in (PAYMENT_REFUNDED, PAYMENT_FAILED):
        payment = db.session.query(Payment).filter(Payment.order_id == order_id).first()
        if payment is not None:
            events.append(("payment.changed", {"payment_id": payment.id, "order_id": order_id, "status": payment.status}))

    recipients = [order.customer_id, order.merchant_id]
    if order.delivery is not None:
        recipients.append(order.delivery.driver_id)
    message = f"Order {order.tracking_id} has been cancelled"
    if order.payment_status == PAYMENT_REFUNDED:
        message += f"; {_currency()} {format_cents(order.amount_cents)} will be refunded"

    after_commit(
        action="order_cancelled",
        events=events,
        notifications=_notify(
            order,
            [r for r in recipients if r != actor.id],
            type=TYPE_ORDER,
            title="Order Cancelled",
            message=message,
        ),
        fraud_user_id=order.customer_id,
    )
    return order


# =============================================================================
# READS
# =============================================================================

def get_order_for_viewer(order_id: int, viewer: Profile) -> Order:
    order = require_order(order_id)
    if not can_view_order(order, viewer):
        raise AuthorizationError("You do not have access to this order")
    return order


def track_order(tracking_id: str) -> Order:
    tracking_id = (tracking_id or "").strip().upper()
    order = db.session.query(Order).filter(Order.tracking_id == tracking_id).first()
    if order is None:
        raise NotFoundError(f"Order {tracking_id} not found")
    return order


def list_available_orders(*, limit: int = 50) -> list[Order]:
    limit = max(1, min(int(limit), 200))
    return (
        db.session.query(Order)
        .filter(Order.status == ORDER_PENDING)
        .order_by(Order.created_at.asc(), Order.id.asc())
        .limit(limit)
        .all()
    )


def list_orders_for(profile: Profile, *, status: str | None = None, limit: int = 50) -> list[Order]:
    """Orders relevant to the caller: placed (customer), sold (merchant), delivered (driver), all (admin)."""
    query = db.session.query(Order)
    if profile.role == ROLE_CUSTOMER:
        query = query.filter(Order.customer_id == profile.id)
    elif profile.role == ROLE_MERCHANT:
        query = query.filter(Order.merchant_id == profile.id)
    elif profile.role == ROLE_DRIVER:
        query = query.join(Delivery, Delivery.order_id == Order.id).filter(Delivery.driver_id == profile.id)
    elif profile.role != ROLE_ADMIN:
        return []

    if status:
        query = query.filter(Order.status == status)
    limit = max(1, min(int(limit), 200))
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()
