# Overview: Pytest coverage for escrow capture, confirmation and release.

"""
Escrow Payment Tests

Verifies:
- initiate_capture stores the gateway reference, or fails the payment on decline
- a gateway outage changes nothing
- confirm_capture is idempotent for the same outcome and rejects conflicting ones
- release preconditions are checked in order with named errors
- release is idempotent: one released payment, one total_deliveries increment
"""

import pytest

from trustchain.extensions import db
from trustchain.models import ActivityLog, Payment, Profile
from trustchain.services import escrow_service, notification_service, order_service
from trustchain.services.escrow_service import (
    DriverMismatch,
    OrderNotDelivered,
    OtpNotVerified,
    PaymentNotInEscrow,
    PaymentStateConflict,
)
from trustchain.validation import AuthorizationError, UpstreamFailure, ValidationError


def _payment(order_id):
    return db.session.query(Payment).filter(Payment.order_id == order_id).populate_existing().one()


def _deliveries(profile_id):
    return db.session.query(Profile.total_deliveries).filter(Profile.id == profile_id).scalar()


# =============================================================================
# CAPTURE
# =============================================================================


class TestInitiateCapture:

    def test_stores_transaction_ref(self, make_order, customer, gateway):
        order = make_order()
        result = escrow_service.initiate_capture(order.id, customer.id, "0712 345 678")

        assert result.status == "pending"
        assert result.entity.transaction_ref.startswith(f"MOCK-{order.id}-")
        assert result.entity.phone == "254712345678"
        assert gateway.requests[0]["amount_cents"] == 150000
        assert db.session.query(ActivityLog).filter_by(order_id=order.id, action="payment_initiated").count() == 1

    def test_decline_fails_payment(self, make_order, customer, gateway):
        order = make_order()
        result = escrow_service.initiate_capture(order.id, customer.id, "0700000000")

        assert result.status == "failed"
        assert _payment(order.id).status == "failed"
        assert order_service.reload_order(order.id).payment_status == "failed"
        titles = [n.title for n in notification_service.list_for_user(customer.id)]
        assert "Payment Failed" in titles

    def test_gateway_outage_changes_nothing(self, make_order, customer, gateway):
        order = make_order()
        gateway.unavailable = True

        with pytest.raises(UpstreamFailure):
            escrow_service.initiate_capture(order.id, customer.id, "0712345678")

        payment = _payment(order.id)
        assert payment.status == "pending"
        assert payment.transaction_ref is None

    def test_invalid_phone(self, make_order, customer):
        order = make_order()
        with pytest.raises(ValidationError):
            escrow_service.initiate_capture(order.id, customer.id, "12ab")

    def test_only_customer_or_admin(self, make_order, other_customer, admin, gateway):
        order = make_order()
        with pytest.raises(AuthorizationError):
            escrow_service.initiate_capture(order.id, other_customer.id, "0712345678")
        assert escrow_service.initiate_capture(order.id, admin.id, "0712345678").status == "pending"

    def test_cancelled_order_cannot_be_paid(self, make_order, customer):
        order = make_order()
        order_service.cancel_order(order.id, customer.id)
        with pytest.raises(PaymentStateConflict):
            escrow_service.initiate_capture(order.id, customer.id, "0712345678")


class TestConfirmCapture:

    def test_success_holds_in_escrow(self, make_order, customer, gateway):
        order = make_order()
        ref = escrow_service.initiate_capture(order.id, customer.id, "0712345678").entity.transaction_ref

        result = escrow_service.confirm_capture(order.id, ref, True)

        assert result.replayed is False
        assert result.entity.status == "held_escrow"
        assert result.entity.held_at is not None
        assert order_service.reload_order(order.id).payment_status == "held_escrow"

    def test_duplicate_confirmation_is_replay(self, make_order, customer, gateway):
        order = make_order()
        ref = escrow_service.initiate_capture(order.id, customer.id, "0712345678").entity.transaction_ref
        escrow_service.confirm_capture(order.id, ref, True)

        again = escrow_service.confirm_capture(order.id, ref, True)

        assert again.replayed is True
        assert db.session.query(ActivityLog).filter_by(order_id=order.id, action="payment_held_escrow").count() == 1

    def test_conflicting_confirmation_rejected(self, make_order, customer, gateway):
        order = make_order()
        ref = escrow_service.initiate_capture(order.id, customer.id, "0712345678").entity.transaction_ref
        escrow_service.confirm_capture(order.id, ref, True)

        with pytest.raises(PaymentStateConflict):
            escrow_service.confirm_capture(order.id, ref, False, reason="insufficient funds")
        assert _payment(order.id).status == "held_escrow"

    def test_failure_marks_failed(self, make_order, customer, gateway):
        order = make_order()
        ref = escrow_service.initiate_capture(order.id, customer.id, "0712345678").entity.transaction_ref

        result = escrow_service.confirm_capture(order.id, ref, False, reason="insufficient funds")

        assert result.entity.status == "failed"
        assert result.entity.failure_reason == "insufficient funds"

    def test_wrong_reference(self, make_order, customer, gateway):
        order = make_order()
        escrow_service.initiate_capture(order.id, customer.id, "0712345678")
        with pytest.raises(ValidationError):
            escrow_service.confirm_capture(order.id, "MOCK-0-NOTREAL", True)


# =============================================================================
# RELEASE
# =============================================================================


class TestReleaseEscrow:

    def test_releases_to_delivering_driver(self, delivered_order, driver, customer, merchant):
        result = escrow_service.release_escrow(delivered_order.id, driver.id)

        assert result.replayed is False
        payment = result.entity
        assert payment.status == "released"
        assert payment.driver_id == driver.id
        assert payment.released_at is not None
        assert order_service.reload_order(delivered_order.id).payment_status == "released"
        assert _deliveries(driver.id) == 1
        assert db.session.query(ActivityLog).filter_by(order_id=delivered_order.id, action="payment_released").count() == 1

        assert "Payment Released" in [n.title for n in notification_service.list_for_user(customer.id)]
        assert "Payment Received" in [n.title for n in notification_service.list_for_user(driver.id)]
        assert "Order Completed" in [n.title for n in notification_service.list_for_user(merchant.id)]

    def test_release_twice_increments_once(self, delivered_order, driver):
        escrow_service.release_escrow(delivered_order.id, driver.id)
        again = escrow_service.release_escrow(delivered_order.id, driver.id)

        assert again.replayed is True
        assert again.entity.status == "released"
        assert _deliveries(driver.id) == 1
        assert db.session.query(ActivityLog).filter_by(order_id=delivered_order.id, action="payment_released").count() == 1

    def test_in_transit_order_not_delivered(self, make_order, driver, fund_order):
        order = make_order()
        fund_order(order.id)
        order_service.accept_order(order.id, driver.id)
        order_service.start_transit(order.id, driver.id)

        with pytest.raises(OrderNotDelivered) as exc:
            escrow_service.release_escrow(order.id, driver.id)

        assert exc.value.code == "ORDER_NOT_DELIVERED"
        payment = _payment(order.id)
        assert payment.status == "held_escrow"
        assert payment.released_at is None
        assert _deliveries(driver.id) == 0

    def test_unfunded_payment_not_in_escrow(self, make_order, driver, otp):
        from trustchain.services import delivery_service

        order = make_order()
        order_service.accept_order(order.id, driver.id)
        order_service.start_transit(order.id, driver.id)
        delivery_service.complete_delivery(order.id, driver.id, otp.right(order.id))

        with pytest.raises(PaymentNotInEscrow):
            escrow_service.release_escrow(order.id, driver.id)

    def test_other_driver_mismatch(self, delivered_order, other_driver):
        with pytest.raises(DriverMismatch):
            escrow_service.release_escrow(delivered_order.id, other_driver.id)
        assert _payment(delivered_order.id).status == "held_escrow"

    def test_delivered_without_verified_otp(self, delivered_order, driver):
        from sqlalchemy import update
        from trustchain.models import Delivery

        db.session.execute(
            update(Delivery).where(Delivery.order_id == delivered_order.id).values(otp_verified=False)
        )
        db.session.commit()

        with pytest.raises(OtpNotVerified):
            escrow_service.release_escrow(delivered_order.id, driver.id)

    def test_released_implies_delivered_and_verified(self, delivered_order, driver):
        escrow_service.release_escrow(delivered_order.id, driver.id)

        for payment in db.session.query(Payment).filter(Payment.status == "released").all():
            order = order_service.reload_order(payment.order_id)
            assert order.status == "delivered"
            assert order.delivery.otp_verified is True
