# Overview: Service-layer operations for the OTP-gated delivery confirmation protocol and driver telemetry.

"""
Delivery Confirmation Protocol

The 4-digit delivery OTP is generated at order creation and shown only to the
customer. The driver proves physical hand-off by submitting it.

- A match sets Delivery.otp_verified, Delivery.delivered_at and
  Order.status = delivered in ONE transaction (compare-and-set on
  in_transit), and appends `order_delivered`.
- A mismatch atomically increments otp_failed_attempts and commits that
  increment before raising OtpMismatch.
- Once otp_failed_attempts reaches OTP_MAX_ATTEMPTS, submissions raise
  OtpAttemptsExceeded without comparing, until an admin resets the counter.
- Resubmission after success fails: the order is no longer in_transit.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import or_, update

from ..extensions import db
from ..models import Delivery, Order
from ..models.states import ORDER_DELIVERED, ORDER_IN_TRANSIT, ROLE_ADMIN
from ..payloads import AdminAction, OrderTransition
from ..validation import (
    AuthorizationError,
    NotFoundError,
    StateConflict,
    ValidationError,
    parse_coordinate,
    parse_otp,
)
from . import identifier_service, profile_service
from .activity_service import append_activity
from .concurrency import compare_and_set, run_with_retry
from .notification_service import TYPE_DELIVERY, NotificationSpec
from .order_service import InvalidTransition, current_status, delivery_event, order_event, reload_order, require_order
from .side_effects import after_commit
from trustchain.time_utils import as_naive_utc, to_utc_z, utcnow


class OtpMismatch(StateConflict):
    code = "OTP_MISMATCH"


class OtpAttemptsExceeded(StateConflict):
    code = "OTP_ATTEMPTS_EXCEEDED"


def _max_attempts() -> int:
    return int(current_app.config.get("OTP_MAX_ATTEMPTS", 5))


def complete_delivery(order_id: int, driver_id: str, submitted_otp: Any) -> Order:
    """
    Verify the delivery OTP and move the order in_transit -> delivered.

    Raises:
        ValidationError: OTP is not 4 digits
        NotFoundError: order does not exist
        AuthorizationError: caller is not the assigned driver
        InvalidTransition: order is not in_transit
        OtpAttemptsExceeded: lockout reached
        OtpMismatch: wrong code (the failed attempt is recorded)
    """
    otp = parse_otp(submitted_otp)
    max_attempts = _max_attempts()

    def _op():
        order = require_order(order_id)
        delivery = order.delivery
        if delivery is None or delivery.driver_id != driver_id:
            raise AuthorizationError("Only the assigned driver can complete this delivery")
        if order.status != ORDER_IN_TRANSIT:
            raise InvalidTransition(
                f"Order {order_id} cannot be delivered (status: {order.status})",
                details={"order_id": order_id, "status": order.status},
            )
        if delivery.otp_failed_attempts >= max_attempts:
            raise OtpAttemptsExceeded(
                "Too many incorrect delivery codes; ask support to reset",
                details={"order_id": order_id, "attempts": delivery.otp_failed_attempts},
            )

        if not identifier_service.otp_matches(order.delivery_otp, otp):
            # Counter never passes the cap, even under concurrent guesses
            stmt = (
                update(Delivery)
                .where(Delivery.id == delivery.id, Delivery.otp_failed_attempts < max_attempts)
                .values(otp_failed_attempts=Delivery.otp_failed_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            counted = db.session.execute(stmt).rowcount == 1
            db.session.commit()
            if not counted:
                return ("locked", max_attempts)
            attempts = db.session.query(Delivery.otp_failed_attempts).filter(Delivery.id == delivery.id).scalar()
            return ("mismatch", attempts)

        now = utcnow()
        won = compare_and_set(
            Order,
            order_id,
            expected={"status": ORDER_IN_TRANSIT},
            values={"status": ORDER_DELIVERED, "updated_at": now},
        )
        if not won:
            status = current_status(order_id)
            raise InvalidTransition(
                f"Order {order_id} cannot be delivered (status: {status})",
                details={"order_id": order_id, "status": status},
            )
        verified = compare_and_set(
            Delivery,
            delivery.id,
            expected={"otp_verified": False, "voided_at": None},
            values={"otp_verified": True, "delivered_at": now},
        )
        if not verified:
            # run_with_retry rolls back the status change above
            raise InvalidTransition(
                f"Delivery for order {order_id} was already confirmed or voided",
                details={"order_id": order_id, "delivery_id": delivery.id},
            )
        append_activity(
            action=f"order_{ORDER_DELIVERED}",
            order_id=order_id,
            user_id=driver_id,
            details=OrderTransition(
                tracking_id=order.tracking_id,
                from_status=ORDER_IN_TRANSIT,
                to_status=ORDER_DELIVERED,
                driver_id=driver_id,
            ),
        )
        db.session.commit()
        return ("delivered", None)

    outcome, attempts = run_with_retry(_op)
    if outcome == "locked":
        raise OtpAttemptsExceeded(
            "Too many incorrect delivery codes; ask support to reset",
            details={"order_id": order_id, "attempts": attempts},
        )
    if outcome == "mismatch":
        remaining = max(max_attempts - (attempts or 0), 0)
        raise OtpMismatch(
            "Incorrect delivery code",
            details={"order_id": order_id, "attempts": attempts, "remaining_attempts": remaining},
        )

    order = reload_order(order_id)
    data = {"order_id": order.id, "tracking_id": order.tracking_id}
    after_commit(
        action="order_delivered",
        events=[order_event(order), delivery_event(order.delivery)],
        notifications=[
            NotificationSpec(
                user_id=order.customer_id,
                type=TYPE_DELIVERY,
                title="Order Delivered",
                message=f"Your order {order.tracking_id} has been delivered",
                data=data,
            ),
            NotificationSpec(
                user_id=order.merchant_id,
                type=TYPE_DELIVERY,
                title="Order Delivered",
                message=f"Order {order.tracking_id} has been delivered",
                data=data,
            ),
        ],
        fraud_user_id=driver_id,
        fraud_order_id=order.id,
    )
    return order


def reset_otp_attempts(order_id: int, admin_id: str, note: str | None = None) -> Order:
    """Clear an OTP lockout. Admin only. Appends `otp_attempts_reset`."""
    profile_service.require_profile(admin_id, role=ROLE_ADMIN, label="Admin")

    def _op():
        order = require_order(order_id)
        delivery = order.delivery
        if delivery is None:
            raise NotFoundError(f"Order {order_id} has no delivery")
        if order.status != ORDER_IN_TRANSIT:
            raise InvalidTransition(
                f"OTP attempts can only be reset while in transit (status: {order.status})",
                details={"order_id": order_id, "status": order.status},
            )
        previous = delivery.otp_failed_attempts
        compare_and_set(Delivery, delivery.id, expected={}, values={"otp_failed_attempts": 0})
        append_activity(
            action="otp_attempts_reset",
            order_id=order_id,
            user_id=admin_id,
            details=AdminAction(
                target="delivery",
                target_id=str(delivery.id),
                note=(note or f"cleared {previous} failed attempts")[:255],
            ),
        )
        db.session.commit()

    run_with_retry(_op)
    return reload_order(order_id)


def update_location(
    delivery_id: int,
    driver_id: str,
    lat: Any,
    lng: Any,
    recorded_at: datetime | None = None,
) -> tuple[Delivery, bool]:
    """
    Record the driver's position while the order is in transit.

    Applied only when newer than the last stored fix:
        WHERE last_location_update IS NULL OR last_location_update < :recorded_at
    An older (out-of-order) ping is dropped; the second return value tells
    the caller whether it was applied. No activity entry is written.

    A ping dated more than LOCATION_MAX_CLOCK_SKEW_SECONDS ahead of server
    time raises ValidationError; stored, it would outrank every later ping.
    """
    lat = parse_coordinate(lat, "lat", required=True)
    lng = parse_coordinate(lng, "lng", required=True)
    now = utcnow()
    recorded_at = as_naive_utc(recorded_at) or now
    max_skew = timedelta(seconds=int(current_app.config.get("LOCATION_MAX_CLOCK_SKEW_SECONDS", 120)))
    if recorded_at > now + max_skew:
        raise ValidationError(
            "recorded_at is in the future",
            details={"recorded_at": to_utc_z(recorded_at), "server_time": to_utc_z(now)},
        )

    def _op():
        delivery = db.session.get(Delivery, delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        if delivery.driver_id != driver_id:
            raise AuthorizationError("Only the assigned driver can report location")
        status = current_status(delivery.order_id)
        if status != ORDER_IN_TRANSIT or delivery.voided_at is not None:
            raise InvalidTransition(
                f"Location updates are only accepted in transit (status: {status})",
                details={"delivery_id": delivery_id, "status": status},
            )

        stmt = (
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                or_(
                    Delivery.last_location_update.is_(None),
                    Delivery.last_location_update < recorded_at,
                ),
            )
            .values(current_lat=lat, current_lng=lng, last_location_update=recorded_at)
            .execution_options(synchronize_session=False)
        )
        applied = db.session.execute(stmt).rowcount == 1
        db.session.commit()
        return applied

    applied = run_with_retry(_op)
    delivery = db.session.get(Delivery, delivery_id, populate_existing=True)
    if applied:
        topic, payload = delivery_event(delivery)
        payload.update(lat=delivery.current_lat, lng=delivery.current_lng)
        after_commit(action="location_update", events=[(topic, payload)])
    return delivery, applied
