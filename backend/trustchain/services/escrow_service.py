# Overview: Service-layer operations for escrow payments; encapsulates business logic and database work.

"""
Escrow Payment Controller

================================================================================
STATE MACHINE:
    pending -> held_escrow -> released
                           -> refunded   (only via order cancellation)
    pending -> failed
================================================================================

CAPTURE:
    initiate_capture() asks the gateway to push a capture request to the
    payer and stores the returned transaction_ref. The gateway confirms
    out-of-band; confirm_capture() then moves pending -> held_escrow (or
    failed). Duplicate confirmations of the same outcome are no-ops.

RELEASE:
    release_escrow() pays the delivering driver once the order is delivered
    and the OTP verified. Preconditions are checked in order and each has a
    named error. The held_escrow compare-and-set makes retries safe: a retry
    after success returns the released payment flagged as a replay and
    increments nothing.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import current_app

from ..extensions import db
from ..models import Order, Payment, Profile
from ..models.states import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    PAYMENT_FAILED,
    PAYMENT_HELD_ESCROW,
    PAYMENT_PENDING,
    PAYMENT_RELEASED,
    ROLE_ADMIN,
)
from ..integrations.common import normalize_phone
from ..integrations.payments import get_payment_gateway
from ..payloads import PaymentEvent
from ..validation import (
    AuthorizationError,
    NotFoundError,
    StateConflict,
    ValidationError,
    format_cents,
)
from . import profile_service
from .activity_service import append_activity
from .concurrency import atomic_increment, compare_and_set, run_with_retry
from .notification_service import TYPE_ORDER, TYPE_PAYMENT, NotificationSpec
from .order_service import TransitionResult, order_event, require_order
from .side_effects import after_commit
from trustchain.time_utils import utcnow

logger = logging.getLogger(__name__)


class OrderNotDelivered(StateConflict):
    code = "ORDER_NOT_DELIVERED"


class OtpNotVerified(StateConflict):
    code = "OTP_NOT_VERIFIED"


class PaymentNotInEscrow(StateConflict):
    code = "PAYMENT_NOT_IN_ESCROW"


class DriverMismatch(StateConflict):
    code = "DRIVER_MISMATCH"


class PaymentStateConflict(StateConflict):
    code = "PAYMENT_STATE_CONFLICT"


def get_payment_for_order(order_id: int) -> Payment | None:
    return db.session.query(Payment).filter(Payment.order_id == order_id).first()


def require_payment_for_order(order_id: int) -> Payment:
    payment = get_payment_for_order(order_id)
    if payment is None:
        raise NotFoundError(f"Payment for order {order_id} not found")
    return payment


def reload_payment(payment_id: int) -> Payment:
    return db.session.get(Payment, payment_id, populate_existing=True)


def can_view_payment(order: Order, viewer: Profile) -> bool:
    if viewer.role == ROLE_ADMIN:
        return True
    if viewer.id in (order.customer_id, order.merchant_id):
        return True
    return order.delivery is not None and order.delivery.driver_id == viewer.id


def payment_event(payment: Payment) -> tuple[str, dict]:
    return ("payment.changed", {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "transaction_ref": payment.transaction_ref,
    })


def _currency() -> str:
    return current_app.config.get("CURRENCY", "KES")


# =============================================================================
# CAPTURE
# =============================================================================

def initiate_capture(order_id: int, actor_id: str, phone: Any) -> TransitionResult:
    """
    Request a capture from the gateway for a pending payment.

    The gateway is called before any write: a transport failure raises
    UpstreamFailure and leaves state untouched. An explicit decline moves the
    payment (and order.payment_status) to failed. Otherwise the returned
    transaction_ref is stored and `payment_initiated` appended.
    """
    actor = profile_service.require_profile(actor_id)
    order = require_order(order_id)
    if actor.role != ROLE_ADMIN and actor.id != order.customer_id:
        raise AuthorizationError("Only the customer or an admin can pay for this order")
    if order.status == ORDER_CANCELLED:
        raise PaymentStateConflict(f"Order {order_id} is cancelled")

    account = normalize_phone(str(phone) if phone is not None else "")
    if not account.isdigit() or not (9 <= len(account) <= 15):
        raise ValidationError("phone must be a valid mobile number")

    payment = require_payment_for_order(order_id)
    if payment.status != PAYMENT_PENDING:
        raise PaymentStateConflict(
            f"Payment for order {order_id} is {payment.status}",
            details={"order_id": order_id, "status": payment.status},
        )

    gateway = get_payment_gateway()
    initiation = gateway.initiate_capture(
        order_id=order_id,
        phone=account,
        amount_cents=payment.amount_cents,
        currency=_currency(),
    )
    payment_id = payment.id
    amount = format_cents(payment.amount_cents)

    def _op():
        now = utcnow()
        if initiation.accepted:
            values = {"transaction_ref": initiation.transaction_ref, "phone": account, "updated_at": now}
            action = "payment_initiated"
            status = PAYMENT_PENDING
        else:
            values = {
                "status": PAYMENT_FAILED,
                "phone": account,
                "failed_at": now,
                "failure_reason": (initiation.message or "declined")[:255],
                "updated_at": now,
            }
            action = "payment_failed"
            status = PAYMENT_FAILED

        won = compare_and_set(Payment, payment_id, expected={"status": PAYMENT_PENDING}, values=values)
        if not won:
            current = db.session.query(Payment.status).filter(Payment.id == payment_id).scalar()
            raise PaymentStateConflict(
                f"Payment for order {order_id} is {current}",
                details={"order_id": order_id, "status": current},
            )
        if status == PAYMENT_FAILED:
            compare_and_set(Order, order_id, expected={"payment_status": PAYMENT_PENDING}, values={"payment_status": PAYMENT_FAILED})

        append_activity(
            action=action,
            order_id=order_id,
            user_id=actor.id,
            details=PaymentEvent(
                amount=amount,
                status=status,
                transaction_ref=initiation.transaction_ref,
                phone=account,
                reason=None if initiation.accepted else initiation.message,
            ),
        )
        db.session.commit()

    run_with_retry(_op)
    payment = reload_payment(payment_id)

    if not initiation.accepted:
        order = db.session.get(Order, order_id, populate_existing=True)
        after_commit(
            action="payment_failed",
            events=[payment_event(payment), order_event(order)],
            notifications=[NotificationSpec(
                user_id=order.customer_id,
                type=TYPE_PAYMENT,
                title="Payment Failed",
                message=f"Payment for order {order.tracking_id} was declined",
                data={"order_id": order_id, "payment_id": payment.id},
            )],
        )
        return TransitionResult(payment, PAYMENT_PENDING, PAYMENT_FAILED)

    after_commit(action="payment_initiated", events=[payment_event(payment)])
    return TransitionResult(payment, PAYMENT_PENDING, PAYMENT_PENDING)


def confirm_capture(order_id: int, transaction_ref: str, success: bool, reason: str | None = None) -> TransitionResult:
    """
    Apply the gateway's out-of-band capture confirmation.

    pending -> held_escrow (success) or pending -> failed, with
    order.payment_status updated in the same transaction. A duplicate
    confirmation of the outcome already applied is a replay; a conflicting
    one is a PaymentStateConflict. A transaction_ref that does not match the
    stored one is a ValidationError.
    """
    transaction_ref = (transaction_ref or "").strip()
    if not transaction_ref:
        raise ValidationError("transaction_ref is required")
    target = PAYMENT_HELD_ESCROW if success else PAYMENT_FAILED
    reason = (reason or "").strip()[:255] or None

    payment = require_payment_for_order(order_id)
    if payment.transaction_ref != transaction_ref:
        raise ValidationError("transaction_ref does not match this order's payment")
    payment_id = payment.id

    def _op():
        status = db.session.query(Payment.status).filter(Payment.id == payment_id).scalar()
        if status == target:
            return True
        if status != PAYMENT_PENDING:
            raise PaymentStateConflict(
                f"Payment for order {order_id} is {status}",
                details={"order_id": order_id, "status": status},
            )

        now = utcnow()
        if success:
            values = {"status": PAYMENT_HELD_ESCROW, "held_at": now, "updated_at": now}
        else:
            values = {
                "status": PAYMENT_FAILED,
                "failed_at": now,
                "failure_reason": reason or "capture_failed",
                "updated_at": now,
            }
        won = compare_and_set(Payment, payment_id, expected={"status": PAYMENT_PENDING}, values=values)
        if not won:
            status = db.session.query(Payment.status).filter(Payment.id == payment_id).scalar()
            db.session.rollback()
            if status == target:
                return True
            raise PaymentStateConflict(
                f"Payment for order {order_id} is {status}",
                details={"order_id": order_id, "status": status},
            )
        compare_and_set(Order, order_id, expected={"payment_status": PAYMENT_PENDING}, values={"payment_status": target})

        amount_cents = db.session.query(Payment.amount_cents).filter(Payment.id == payment_id).scalar()
        append_activity(
            action=f"payment_{target}",
            order_id=order_id,
            details=PaymentEvent(
                amount=format_cents(amount_cents),
                status=target,
                transaction_ref=transaction_ref,
                reason=None if success else (reason or "capture_failed"),
            ),
        )
        db.session.commit()
        return False

    replayed = run_with_retry(_op)
    payment = reload_payment(payment_id)
    if replayed:
        return TransitionResult(payment, target, target, replayed=True)

    order = db.session.get(Order, order_id, populate_existing=True)
    data = {"order_id": order_id, "payment_id": payment_id}
    amount = format_cents(payment.amount_cents)
    if success:
        notifications = [
            NotificationSpec(
                user_id=order.customer_id,
                type=TYPE_PAYMENT,
                title="Payment Received",
                message=f"{_currency()} {amount} for order {order.tracking_id} is held in escrow until delivery",
                data=data,
            ),
            NotificationSpec(
                user_id=order.merchant_id,
                type=TYPE_PAYMENT,
                title="Payment Secured",
                message=f"Payment for order {order.tracking_id} is held in escrow",
                data=data,
            ),
        ]
    else:
        notifications = [NotificationSpec(
            user_id=order.customer_id,
            type=TYPE_PAYMENT,
            title="Payment Failed",
            message=f"Payment for order {order.tracking_id} could not be completed",
            data=data,
        )]

    after_commit(
        action=f"payment_{target}",
        events=[payment_event(payment), order_event(order)],
        notifications=notifications,
    )
    return TransitionResult(payment, PAYMENT_PENDING, target)


# =============================================================================
# RELEASE
# =============================================================================

def release_escrow(order_id: int, driver_id: str) -> TransitionResult:
    """
    Release held escrow to the delivering driver.

    Preconditions, checked in order:
        1. order delivered                 else OrderNotDelivered
        2. delivery OTP verified           else OtpNotVerified
        3. payment held_escrow             else PaymentNotInEscrow
        4. caller is the delivering driver else DriverMismatch

    On success, one transaction: payment released (released_at, driver_id),
    order.payment_status released, driver total_deliveries + 1 (SQL
    increment), `payment_released` activity.
    """
    def _replay(payment: Payment) -> bool:
        return payment.status == PAYMENT_RELEASED and payment.driver_id == driver_id

    def _op():
        order = require_order(order_id)
        payment = require_payment_for_order(order_id)
        delivery = order.delivery

        if order.status != ORDER_DELIVERED:
            raise OrderNotDelivered(
                f"Order {order_id} has not been delivered (status: {order.status})",
                details={"order_id": order_id, "status": order.status},
            )
        if delivery is None or not delivery.otp_verified:
            raise OtpNotVerified(
                f"Delivery OTP for order {order_id} has not been verified",
                details={"order_id": order_id},
            )
        if _replay(payment):
            return payment.id, True
        if payment.status != PAYMENT_HELD_ESCROW:
            raise PaymentNotInEscrow(
                f"Payment for order {order_id} is not in escrow (status: {payment.status})",
                details={"order_id": order_id, "status": payment.status},
            )
        if delivery.driver_id != driver_id:
            raise DriverMismatch(
                "Only the delivering driver can receive this payment",
                details={"order_id": order_id},
            )

        now = utcnow()
        won = compare_and_set(
            Payment,
            payment.id,
            expected={"status": PAYMENT_HELD_ESCROW},
            values={"status": PAYMENT_RELEASED, "released_at": now, "driver_id": driver_id, "updated_at": now},
        )
        if not won:
            db.session.rollback()
            current = reload_payment(payment.id)
            if _replay(current):
                return current.id, True
            raise PaymentNotInEscrow(
                f"Payment for order {order_id} is not in escrow (status: {current.status})",
                details={"order_id": order_id, "status": current.status},
            )

        compare_and_set(
            Order,
            order_id,
            expected={"payment_status": PAYMENT_HELD_ESCROW},
            values={"payment_status": PAYMENT_RELEASED, "updated_at": now},
        )
        atomic_increment(Profile, driver_id, "total_deliveries")
        append_activity(
            action="payment_released",
            order_id=order_id,
            user_id=driver_id,
            details=PaymentEvent(
                amount=format_cents(payment.amount_cents),
                status=PAYMENT_RELEASED,
                transaction_ref=payment.transaction_ref,
            ),
        )
        db.session.commit()
        return payment.id, False

    payment_id, replayed = run_with_retry(_op)
    payment = reload_payment(payment_id)
    if replayed:
        logger.info("Escrow release replay for order %s by %s", order_id, driver_id)
        return TransitionResult(payment, PAYMENT_RELEASED, PAYMENT_RELEASED, replayed=True)

    order = db.session.get(Order, order_id, populate_existing=True)
    amount = format_cents(payment.amount_cents)
    data = {"order_id": order_id, "payment_id": payment_id}
    after_commit(
        action="payment_released",
        events=[payment_event(payment), order_event(order)],
        notifications=[
            NotificationSpec(
                user_id=order.customer_id,
                type=TYPE_PAYMENT,
                title="Payment Released",
                message=f"Payment of {_currency()} {amount} has been released for order {order.tracking_id}",
                data=data,
            ),
            NotificationSpec(
                user_id=driver_id,
                type=TYPE_PAYMENT,
                title="Payment Received",
                message=f"You received {_currency()} {amount} for delivering order {order.tracking_id}",
                data=data,
            ),
            NotificationSpec(
                user_id=order.merchant_id,
                type=TYPE_ORDER,
                title="Order Completed",
                message=f"Order {order.tracking_id} has been successfully delivered and payment released",
                data={"order_id": order_id},
            ),
        ],
    )
    return TransitionResult(payment, PAYMENT_HELD_ESCROW, PAYMENT_RELEASED)
