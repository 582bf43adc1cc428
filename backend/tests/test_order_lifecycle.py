# Overview: Pytest coverage for order creation, acceptance, transit and cancellation.

"""
Order Lifecycle Tests

Verifies:
- create_order writes the order, its items and a pending payment together
- tracking ids and OTPs have the expected shape
- accept / pickup / cancel follow the state machine and never regress
- each transition appends exactly one activity entry
- cancellation refunds held escrow, fails pending payments and voids the delivery
"""

import re

import pytest
from sqlalchemy.exc import IntegrityError

from trustchain.extensions import db
from trustchain.models import ActivityLog, Delivery, Order, OrderItem, Payment
from trustchain.services import identifier_service, order_service
from trustchain.services.order_service import InvalidTransition
from trustchain.validation import AuthorizationError, NotFoundError, ValidationError


def _actions(order_id):
    rows = (
        db.session.query(ActivityLog.action)
        .filter(ActivityLog.order_id == order_id)
        .order_by(ActivityLog.id)
        .all()
    )
    return [r[0] for r in rows]


# =============================================================================
# CREATE
# =============================================================================


class TestCreateOrder:

    def test_creates_pending_order_with_pending_payment(self, make_order, customer, merchant):
        order = make_order(amount="1500.50")

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.amount_cents == 150050
        assert order.merchant_id == merchant.id

        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "pending"
        assert payment.amount_cents == 150050
        assert payment.customer_id == customer.id

    def test_tracking_id_and_otp_format(self, make_order):
        order = make_order()
        assert re.fullmatch(r"TRK-\d{8}-[A-Z0-9]{6}", order.tracking_id)
        assert re.fullmatch(r"\d{4}", order.delivery_otp)

    def test_tracking_ids_are_unique(self, make_order):
        ids = {make_order().tracking_id for _ in range(10)}
        assert len(ids) == 10

    def test_items_are_stored_with_subtotals(self, make_order):
        order = make_order(items=[
            {"product_id": "p1", "quantity": 2, "unit_price": "250.00"},
            {"description": "Gift wrap", "unit_price": "50"},
        ])
        items = db.session.query(OrderItem).filter_by(order_id=order.id).order_by(OrderItem.id).all()
        assert [i.subtotal_cents for i in items] == [50000, 5000]
        assert items[1].quantity == 1

    def test_appends_order_pending_activity(self, make_order, customer):
        order = make_order()
        entries = db.session.query(ActivityLog).filter_by(order_id=order.id).all()
        assert len(entries) == 1
        assert entries[0].action == "order_pending"
        assert entries[0].user_id == customer.id
        assert entries[0].details["kind"] == "order_transition"
        assert entries[0].details["to_status"] == "pending"

    @pytest.mark.parametrize("amount", [None, "0", "-5", "abc", "10.123", True])
    def test_rejects_invalid_amount(self, make_order, amount):
        with pytest.raises(ValidationError):
            make_order(amount=amount)
        assert db.session.query(Order).count() == 0

    def test_rejects_missing_addresses(self, make_order):
        with pytest.raises(ValidationError):
            make_order(pickup_address="  ")
        with pytest.raises(ValidationError):
            make_order(delivery_address="")

    def test_rejects_out_of_range_coordinates(self, make_order):
        with pytest.raises(ValidationError):
            make_order(pickup_lat=91)

    def test_rejects_unknown_payment_method(self, make_order):
        with pytest.raises(ValidationError):
            make_order(payment_method="barter")

    def test_unknown_merchant_is_not_found(self, make_order):
        with pytest.raises(NotFoundError):
            make_order(merchant_id="nobody")

    def test_customer_role_required(self, make_order, driver):
        with pytest.raises(AuthorizationError):
            make_order(customer_id=driver.id)

    def test_notifies_merchant(self, make_order, merchant):
        from trustchain.services import notification_service

        order = make_order()
        rows = notification_service.list_for_user(merchant.id)
        assert len(rows) == 1
        assert rows[0].title == "New Order"
        assert order.tracking_id in rows[0].message
        assert "KES 1500.00" in rows[0].message

    def test_tracking_id_collision_is_retried(self, make_order, monkeypatch):
        first = make_order()
        real = identifier_service.generate_tracking_id
        issued = iter([first.tracking_id])
        monkeypatch.setattr(identifier_service, "generate_tracking_id", lambda now=None: next(issued, None) or real(now))

        second = make_order()

        assert second.tracking_id != first.tracking_id
        assert db.session.query(Order).count() == 2

    def test_other_integrity_errors_are_not_retried(self, make_order, monkeypatch):
        calls = []

        def _broken(**kwargs):
            calls.append(kwargs["action"])
            raise IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: activity_logs.action"))

        monkeypatch.setattr(order_service, "append_activity", _broken)

        with pytest.raises(IntegrityError):
            make_order()
        assert calls == ["order_pending"]
        assert db.session.query(Order).count() == 0


# =============================================================================
# ACCEPT
# =============================================================================


class TestAcceptOrder:

    def test_assigns_driver_and_creates_delivery(self, make_order, driver):
        order = make_order()
        accepted = order_service.accept_order(order.id, driver.id)

        assert accepted.status == "assigned"
        assert accepted.delivery.driver_id == driver.id
        assert accepted.delivery.assigned_at is not None
        assert accepted.delivery.otp_verified is False
        assert _actions(order.id) == ["order_pending", "order_assigned"]

    def test_second_acceptor_loses(self, make_order, driver, other_driver):
        order = make_order()
        order_service.accept_order(order.id, driver.id)

        with pytest.raises(InvalidTransition) as exc:
            order_service.accept_order(order.id, other_driver.id)

        assert exc.value.code == "INVALID_TRANSITION"
        assert db.session.query(Delivery).filter_by(order_id=order.id).count() == 1
        assert order_service.reload_order(order.id).delivery.driver_id == driver.id
        assert _actions(order.id).count("order_assigned") == 1

    def test_only_drivers_accept(self, make_order, customer):
        order = make_order()
        with pytest.raises(AuthorizationError):
            order_service.accept_order(order.id, customer.id)

    def test_missing_order(self, driver):
        with pytest.raises(NotFoundError):
            order_service.accept_order(99999, driver.id)

    def test_notifies_customer_and_merchant(self, make_order, driver, customer, merchant):
        from trustchain.services import notification_service

        order = make_order()
        order_service.accept_order(order.id, driver.id)

        titles = [n.title for n in notification_service.list_for_user(customer.id)]
        assert "Driver Assigned" in titles
        titles = [n.title for n in notification_service.list_for_user(merchant.id)]
        assert "Driver Assigned" in titles


# =============================================================================
# START TRANSIT
# =============================================================================


class TestStartTransit:

    def test_moves_to_in_transit(self, assigned_order, driver):
        result = order_service.start_transit(assigned_order.id, driver.id)

        assert result.replayed is False
        assert result.previous_status == "assigned"
        assert result.entity.status == "in_transit"
        assert result.entity.delivery.picked_up_at is not None

    def test_repeat_call_is_noop(self, in_transit_order, driver):
        picked_up_at = in_transit_order.delivery.picked_up_at
        result = order_service.start_transit(in_transit_order.id, driver.id)

        assert result.replayed is True
        assert result.entity.status == "in_transit"
        assert result.entity.delivery.picked_up_at == picked_up_at
        assert _actions(in_transit_order.id).count("order_in_transit") == 1

    def test_other_driver_rejected(self, assigned_order, other_driver):
        with pytest.raises(AuthorizationError):
            order_service.start_transit(assigned_order.id, other_driver.id)

    def test_pending_order_has_no_delivery(self, make_order, driver):
        order = make_order()
        with pytest.raises(InvalidTransition):
            order_service.start_transit(order.id, driver.id)


# =============================================================================
# CANCEL
# =============================================================================


class TestCancelOrder:

    def test_customer_cancels_pending_order(self, make_order, customer):
        order = make_order()
        cancelled = order_service.cancel_order(order.id, customer.id, reason="Changed my mind")

        assert cancelled.status == "cancelled"
        assert cancelled.cancel_reason == "Changed my mind"
        # Pending payment can never be captured afterwards
        assert cancelled.payment_status == "failed"
        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "failed"
        assert payment.failure_reason == "order_cancelled"
        assert _actions(order.id) == ["order_pending", "order_cancelled"]

    def test_cancel_refunds_held_escrow_and_voids_delivery(self, make_order, customer, driver, fund_order):
        order = make_order()
        fund_order(order.id)
        order_service.accept_order(order.id, driver.id)

        cancelled = order_service.cancel_order(order.id, customer.id)

        assert cancelled.payment_status == "refunded"
        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "refunded"
        assert payment.refunded_at is not None
        assert cancelled.delivery is not None
        assert cancelled.delivery.voided_at is not None

        entry = db.session.query(ActivityLog).filter_by(order_id=order.id, action="order_cancelled").one()
        assert entry.details["payment_status"] == "refunded"
        assert entry.details["driver_id"] == driver.id

    def test_assigned_driver_may_cancel(self, assigned_order, driver):
        cancelled = order_service.cancel_order(assigned_order.id, driver.id)
        assert cancelled.status == "cancelled"

    def test_stranger_may_not_cancel(self, make_order, other_customer):
        order = make_order()
        with pytest.raises(AuthorizationError):
            order_service.cancel_order(order.id, other_customer.id)
        assert order_service.reload_order(order.id).status == "pending"

    def test_admin_may_cancel(self, make_order, admin):
        order = make_order()
        assert order_service.cancel_order(order.id, admin.id).status == "cancelled"

    def test_in_transit_cannot_be_cancelled(self, in_transit_order, customer):
        with pytest.raises(InvalidTransition):
            order_service.cancel_order(in_transit_order.id, customer.id)
        assert order_service.reload_order(in_transit_order.id).status == "in_transit"

    def test_cancelled_is_terminal(self, make_order, customer, driver):
        order = make_order()
        order_service.cancel_order(order.id, customer.id)

        with pytest.raises(InvalidTransition):
            order_service.accept_order(order.id, driver.id)
        with pytest.raises(InvalidTransition):
            order_service.cancel_order(order.id, customer.id)
        assert _actions(order.id).count("order_cancelled") == 1

    def test_notifies_other_parties_not_actor(self, assigned_order, customer, driver, merchant):
        from trustchain.services import notification_service

        order_service.cancel_order(assigned_order.id, customer.id)

        assert "Order Cancelled" in [n.title for n in notification_service.list_for_user(driver.id)]
        assert "Order Cancelled" in [n.title for n in notification_service.list_for_user(merchant.id)]
        assert "Order Cancelled" not in [n.title for n in notification_service.list_for_user(customer.id)]


# =============================================================================
# READS
# =============================================================================


class TestOrderReads:

    def test_track_order_is_case_insensitive(self, make_order):
        order = make_order()
        assert order_service.track_order(order.tracking_id.lower()).id == order.id

    def test_track_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            order_service.track_order("TRK-00000000-XXXXXX")

    def test_available_orders_are_pending_only(self, make_order, driver):
        first = make_order()
        second = make_order()
        order_service.accept_order(first.id, driver.id)

        available = order_service.list_available_orders()
        assert [o.id for o in available] == [second.id]

    def test_list_orders_for_each_role(self, make_order, customer, other_customer, driver, merchant, admin):
        mine = make_order()
        make_order(customer_id=other_customer.id)
        order_service.accept_order(mine.id, driver.id)

        assert [o.id for o in order_service.list_orders_for(customer)] == [mine.id]
        assert [o.id for o in order_service.list_orders_for(driver)] == [mine.id]
        assert len(order_service.list_orders_for(merchant)) == 2
        assert len(order_service.list_orders_for(admin)) == 2

    def test_otp_visible_to_customer_only(self, assigned_order, customer, driver, merchant):
        assert "delivery_otp" in order_service.serialize_order(assigned_order, customer)
        assert "delivery_otp" not in order_service.serialize_order(assigned_order, driver)
        assert "delivery_otp" not in order_service.serialize_order(assigned_order, merchant)

    def test_viewer_access(self, make_order, other_customer, driver):
        order = make_order()
        # Drivers browse pending orders
        assert order_service.get_order_for_viewer(order.id, driver).id == order.id
        with pytest.raises(AuthorizationError):
            order_service.get_order_for_viewer(order.id, other_customer)
