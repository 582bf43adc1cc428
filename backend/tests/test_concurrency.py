# Overview: Race tests for the conditional-update transitions against a file-backed database.

"""
Concurrency Tests

The in-memory database shares one connection across threads, so these tests
build a second app on a temporary SQLite file. Each worker thread pushes its
own app context and therefore gets its own session and connection.
"""

import threading

import pytest

from trustchain import create_app
from trustchain.extensions import db
from trustchain.models import ActivityLog, Delivery, InsurancePolicy, Order, Payment, Profile
from trustchain.services import delivery_service, escrow_service, insurance_service, order_service, profile_service
from trustchain.validation import TrustchainError


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30, 'check_same_thread': False}},
        'FRAUD_CHECKS_ON_TRANSITIONS': False,
        'PAYMENT_GATEWAY_PROVIDER': 'mock',
        'SMS_PROVIDER': 'log',
    })
    with app.app_context():
        db.create_all()
        profile_service.upsert_profile(user_id="cust-1", role="customer", full_name="Race Customer", phone="0712345678")
        profile_service.upsert_profile(user_id="mer-1", role="merchant", full_name="Race Merchant")
        profile_service.upsert_profile(user_id="drv-1", role="driver", full_name="Driver One")
        profile_service.upsert_profile(user_id="drv-2", role="driver", full_name="Driver Two")
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _race(app, calls):
    """Run each (func, args) in its own thread, released together."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def _worker(index, func, args):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[index] = ("ok", func(*args))
            except TrustchainError as e:
                outcomes[index] = ("error", e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_worker, args=(i, f, a)) for i, (f, a) in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def _new_order(app):
    with app.app_context():
        order = order_service.create_order(
            customer_id="cust-1",
            merchant_id="mer-1",
            amount="900.00",
            pickup_address="CBD",
            delivery_address="Parklands",
        )
        return order.id


class TestAcceptRace:

    def test_exactly_one_driver_wins(self, file_app):
        order_id = _new_order(file_app)

        outcomes = _race(file_app, [
            (order_service.accept_order, (order_id, "drv-1")),
            (order_service.accept_order, (order_id, "drv-2")),
        ])

        kinds = sorted(kind for kind, _ in outcomes)
        assert kinds == ["error", "ok"]
        loser = next(value for kind, value in outcomes if kind == "error")
        assert loser.code == "INVALID_TRANSITION"

        with file_app.app_context():
            deliveries = db.session.query(Delivery).filter_by(order_id=order_id).all()
            assert len(deliveries) == 1
            assert db.session.get(Order, order_id).status == "assigned"
            assert db.session.query(ActivityLog).filter_by(order_id=order_id, action="order_assigned").count() == 1


class TestReleaseRace:

    def test_concurrent_release_pays_once(self, file_app):
        order_id = _new_order(file_app)
        with file_app.app_context():
            ref = escrow_service.initiate_capture(order_id, "cust-1", "0712345678").entity.transaction_ref
            escrow_service.confirm_capture(order_id, ref, True)
            order_service.accept_order(order_id, "drv-1")
            order_service.start_transit(order_id, "drv-1")
            code = db.session.query(Order.delivery_otp).filter(Order.id == order_id).scalar()
            delivery_service.complete_delivery(order_id, "drv-1", code)

        outcomes = _race(file_app, [
            (escrow_service.release_escrow, (order_id, "drv-1")),
            (escrow_service.release_escrow, (order_id, "drv-1")),
        ])

        assert all(kind == "ok" for kind, _ in outcomes)
        replays = sorted(result.replayed for _, result in outcomes)
        assert replays == [False, True]

        with file_app.app_context():
            assert db.session.get(Profile, "drv-1").total_deliveries == 1
            assert db.session.query(Payment).filter_by(order_id=order_id).one().status == "released"
            assert db.session.query(ActivityLog).filter_by(order_id=order_id, action="payment_released").count() == 1


class TestCompleteDeliveryRace:

    def test_right_code_delivers_once(self, file_app):
        order_id = _new_order(file_app)
        with file_app.app_context():
            order_service.accept_order(order_id, "drv-1")
            order_service.start_transit(order_id, "drv-1")
            code = db.session.query(Order.delivery_otp).filter(Order.id == order_id).scalar()

        outcomes = _race(file_app, [
            (delivery_service.complete_delivery, (order_id, "drv-1", code)),
            (delivery_service.complete_delivery, (order_id, "drv-1", code)),
        ])

        kinds = sorted(kind for kind, _ in outcomes)
        assert kinds == ["error", "ok"]
        loser = next(value for kind, value in outcomes if kind == "error")
        assert loser.code == "INVALID_TRANSITION"

        with file_app.app_context():
            delivery = db.session.query(Delivery).filter_by(order_id=order_id).one()
            assert delivery.otp_verified is True
            assert delivery.delivered_at is not None
            assert delivery.otp_failed_attempts == 0
            assert db.session.get(Order, order_id).status == "delivered"
            assert db.session.query(ActivityLog).filter_by(order_id=order_id, action="order_delivered").count() == 1


class TestCancelPickupRace:

    def test_one_of_cancel_or_pickup_wins(self, file_app):
        order_id = _new_order(file_app)
        with file_app.app_context():
            order_service.accept_order(order_id, "drv-1")

        outcomes = _race(file_app, [
            (order_service.cancel_order, (order_id, "cust-1")),
            (order_service.start_transit, (order_id, "drv-1")),
        ])

        kinds = [kind for kind, _ in outcomes]
        assert sorted(kinds) == ["error", "ok"]
        loser = next(value for kind, value in outcomes if kind == "error")
        assert loser.code == "INVALID_TRANSITION"
        cancel_won = kinds[0] == "ok"

        with file_app.app_context():
            status = db.session.get(Order, order_id).status
            delivery = db.session.query(Delivery).filter_by(order_id=order_id).one()
            actions = [
                a.action for a in db.session.query(ActivityLog).filter_by(order_id=order_id).all()
            ]
            if cancel_won:
                assert status == "cancelled"
                assert delivery.voided_at is not None
                assert delivery.picked_up_at is None
                assert "order_in_transit" not in actions
            else:
                assert status == "in_transit"
                assert delivery.voided_at is None
                assert "order_cancelled" not in actions
            assert actions.count("order_cancelled") + actions.count("order_in_transit") == 1


class TestInsurancePurchaseRace:

    def test_one_active_policy_per_order(self, file_app):
        order_id = _new_order(file_app)

        outcomes = _race(file_app, [
            (insurance_service.purchase_policy, (order_id, "cust-1")) for _ in range(4)
        ])

        kinds = [kind for kind, _ in outcomes]
        assert kinds.count("ok") == 1
        for kind, value in outcomes:
            if kind == "error":
                assert value.code == "POLICY_STATE_CONFLICT"

        with file_app.app_context():
            active = db.session.query(InsurancePolicy).filter_by(order_id=order_id, status="active").count()
            assert active == 1
            assert db.session.query(ActivityLog).filter_by(order_id=order_id, action="insurance_purchased").count() == 1
