"""
Pytest fixtures for TrustChain backend tests.

Provides the app with an in-memory database, per-test table wipe, mirrored
profiles for every role, identity headers for the test client, and factories
that walk an order through its lifecycle.
"""

import pytest
from sqlalchemy import update

from trustchain import create_app
from trustchain.events import EXTENSION_KEY as EVENTS_KEY
from trustchain.extensions import db
from trustchain.integrations import messaging, payments
from trustchain.models import Delivery, Order
from trustchain.services import delivery_service, escrow_service, order_service, profile_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        # Direct-call tests count alerts themselves
        'FRAUD_CHECKS_ON_TRANSITIONS': False,
        'PAYMENT_GATEWAY_PROVIDER': 'mock',
        'SMS_PROVIDER': 'log',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def gateway(app):
    """Fresh mock payment gateway per test."""
    previous = app.extensions.get(payments.EXTENSION_KEY)
    mock = payments.MockPaymentGateway(decline_accounts={"254700000000"})
    app.extensions[payments.EXTENSION_KEY] = mock
    yield mock
    app.extensions[payments.EXTENSION_KEY] = previous


@pytest.fixture(scope='function')
def sms(app):
    """Fresh log transport per test; .sent records every message."""
    previous = app.extensions.get(messaging.EXTENSION_KEY)
    transport = messaging.LogSmsTransport()
    app.extensions[messaging.EXTENSION_KEY] = transport
    yield transport
    app.extensions[messaging.EXTENSION_KEY] = previous


@pytest.fixture(scope='function')
def events(app):
    """Record every event published on the bus as (topic, payload)."""
    received = []

    def _record(topic, payload):
        received.append((topic, payload))

    bus = app.extensions[EVENTS_KEY]
    bus.subscribe("*", _record)
    yield received
    bus.unsubscribe("*", _record)


@pytest.fixture(scope='function')
def fraud_on_transitions(app, monkeypatch):
    monkeypatch.setitem(app.config, 'FRAUD_CHECKS_ON_TRANSITIONS', True)


# =============================================================================
# PROFILES
# =============================================================================

@pytest.fixture(scope='function')
def customer(db_session):
    return profile_service.upsert_profile(user_id="cust-1", role="customer", full_name="Amina Customer", phone="0712345678")


@pytest.fixture(scope='function')
def other_customer(db_session):
    return profile_service.upsert_profile(user_id="cust-2", role="customer", full_name="Brian Customer")


@pytest.fixture(scope='function')
def driver(db_session):
    return profile_service.upsert_profile(user_id="drv-1", role="driver", full_name="Chege Driver", phone="0722000111")


@pytest.fixture(scope='function')
def other_driver(db_session):
    return profile_service.upsert_profile(user_id="drv-2", role="driver", full_name="Dana Driver")


@pytest.fixture(scope='function')
def merchant(db_session):
    return profile_service.upsert_profile(user_id="mer-1", role="merchant", full_name="Eastleigh Traders")


@pytest.fixture(scope='function')
def admin(db_session):
    return profile_service.upsert_profile(user_id="adm-1", role="admin", full_name="Faith Admin")


def _headers(profile) -> dict:
    return {"X-User-Id": profile.id, "X-User-Role": profile.role}


@pytest.fixture(scope='function')
def headers():
    """Identity headers the upstream gateway would set for a profile."""
    return _headers


# =============================================================================
# LIFECYCLE FACTORIES
# =============================================================================

@pytest.fixture(scope='function')
def make_order(customer, merchant):
    def _make(amount="1500.00", **kwargs):
        kwargs.setdefault("customer_id", customer.id)
        kwargs.setdefault("merchant_id", merchant.id)
        kwargs.setdefault("pickup_address", "Westlands, Nairobi")
        kwargs.setdefault("delivery_address", "Kilimani, Nairobi")
        return order_service.create_order(amount=amount, **kwargs)
    return _make


@pytest.fixture(scope='function')
def assigned_order(make_order, driver):
    order = make_order()
    return order_service.accept_order(order.id, driver.id)


@pytest.fixture(scope='function')
def in_transit_order(assigned_order, driver):
    return order_service.start_transit(assigned_order.id, driver.id).entity


@pytest.fixture(scope='function')
def fund_order(gateway, customer):
    """initiate + confirm capture: payment ends in held_escrow."""
    def _fund(order_id):
        initiated = escrow_service.initiate_capture(order_id, customer.id, "0712345678")
        return escrow_service.confirm_capture(order_id, initiated.entity.transaction_ref, True).entity
    return _fund


@pytest.fixture(scope='function')
def delivered_order(make_order, driver, fund_order):
    """Funded order taken all the way to delivered with the right OTP."""
    order = make_order()
    fund_order(order.id)
    order_service.accept_order(order.id, driver.id)
    order_service.start_transit(order.id, driver.id)
    return delivery_service.complete_delivery(order.id, driver.id, order.delivery_otp)


def otp_for(order_id) -> str:
    return db.session.query(Order.delivery_otp).filter(Order.id == order_id).scalar()


def wrong_otp(order_id) -> str:
    return "%04d" % ((int(otp_for(order_id)) + 1) % 10000)


@pytest.fixture(scope='function')
def otp():
    """Read the stored OTP for an order, or a code guaranteed to differ from it."""
    class _Otp:
        right = staticmethod(otp_for)
        wrong = staticmethod(wrong_otp)
    return _Otp


@pytest.fixture(scope='function')
def backdate_assignment():
    """Move Delivery.assigned_at so delivered_at - assigned_at equals the given delta."""
    def _backdate(order_id, delta):
        delivery = db.session.query(Delivery).filter(Delivery.order_id == order_id).one()
        db.session.execute(
            update(Delivery)
            .where(Delivery.id == delivery.id)
            .values(assigned_at=delivery.delivered_at - delta)
        )
        db.session.commit()
    return _backdate
