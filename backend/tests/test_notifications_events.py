# Overview: Pytest coverage for the notification dispatcher, read receipts and the event bus.

"""
Notification & Event Tests

Verifies:
- dispatch stores one row per recipient and skips missing recipients
- mark_read is recipient-only and idempotent
- the SMS forwarder subscribes to notification.created
- a failing subscriber never breaks publishing
"""

import httpx
import pytest

from trustchain.events import EventBus
from trustchain.extensions import db
from trustchain.integrations import messaging
from trustchain.integrations.messaging import HttpSmsTransport
from trustchain.models import Notification
from trustchain.services import notification_service
from trustchain.services.notification_service import NotificationSpec
from trustchain.validation import AuthorizationError, NotFoundError


def _spec(user_id, title="Hello", message="World", **data):
    return NotificationSpec(user_id=user_id, type=notification_service.TYPE_ORDER, title=title, message=message, data=data)


# =============================================================================
# DISPATCH
# =============================================================================


class TestDispatch:

    def test_one_row_per_recipient(self, customer, driver):
        rows = notification_service.dispatch([_spec(customer.id), _spec(driver.id, order_id=7)])

        assert [r.user_id for r in rows] == [customer.id, driver.id]
        assert all(r.read is False for r in rows)
        assert rows[1].data == {"order_id": 7}
        assert db.session.query(Notification).count() == 2

    def test_skips_missing_recipients(self, customer):
        rows = notification_service.dispatch([_spec(None), None, _spec(customer.id)])
        assert len(rows) == 1

    def test_nothing_to_send(self, db_session):
        assert notification_service.dispatch([]) == []

    def test_publishes_notification_created(self, customer, events):
        row = notification_service.dispatch([_spec(customer.id, title="Order Delivered")])[0]

        published = [p for t, p in events if t == "notification.created"]
        assert published == [{
            "notification_id": row.id,
            "user_id": customer.id,
            "type": "order",
            "title": "Order Delivered",
            "message": "World",
        }]

    def test_notify_admins_fans_out(self, admin, customer):
        rows = notification_service.notify_admins(type="fraud_alert", title="HIGH Fraud Alert", message="x")
        assert [r.user_id for r in rows] == [admin.id]


# =============================================================================
# READ RECEIPTS
# =============================================================================


class TestMarkRead:

    def test_marks_read_once(self, customer):
        row = notification_service.dispatch([_spec(customer.id)])[0]

        first = notification_service.mark_read(row.id, customer.id)
        read_at = first.read_at
        second = notification_service.mark_read(row.id, customer.id)

        assert first.read is True
        assert read_at is not None
        assert second.read_at == read_at

    def test_only_recipient(self, customer, driver):
        row = notification_service.dispatch([_spec(customer.id)])[0]
        with pytest.raises(AuthorizationError):
            notification_service.mark_read(row.id, driver.id)

    def test_missing(self, customer):
        with pytest.raises(NotFoundError):
            notification_service.mark_read(424242, customer.id)

    def test_unread_count_and_filter(self, customer):
        rows = notification_service.dispatch([_spec(customer.id), _spec(customer.id), _spec(customer.id)])
        notification_service.mark_read(rows[0].id, customer.id)

        assert notification_service.unread_count(customer.id) == 2
        assert len(notification_service.list_for_user(customer.id, unread_only=True)) == 2
        assert len(notification_service.list_for_user(customer.id)) == 3


# =============================================================================
# SMS FORWARDING
# =============================================================================


class TestSmsForwarding:

    def test_sends_to_normalized_phone(self, customer, sms):
        row = notification_service.dispatch([_spec(customer.id, title="Payment Released", message="Done")])[0]

        assert sms.sent == [{
            "to": "254712345678",
            "message": "Payment Released: Done",
            "reference": f"notif-{row.id}",
        }]

    def test_skips_recipient_without_phone(self, merchant, sms):
        notification_service.dispatch([_spec(merchant.id)])
        assert sms.sent == []

    def test_order_creation_texts_nobody_without_phone(self, make_order, sms):
        make_order()
        # Only the merchant is notified and has no phone on file
        assert sms.sent == []

    def test_provider_timeout_leaves_notification_stored(self, app, customer):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        transport = HttpSmsTransport(
            base_url="https://sms.test/send",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        previous = app.extensions[messaging.EXTENSION_KEY]
        app.extensions[messaging.EXTENSION_KEY] = transport
        try:
            rows = notification_service.dispatch([_spec(customer.id)])
        finally:
            app.extensions[messaging.EXTENSION_KEY] = previous

        assert len(rows) == 1
        assert db.session.query(Notification).filter_by(user_id=customer.id).count() == 1


# =============================================================================
# EVENT BUS
# =============================================================================


class TestEventBus:

    def test_topic_and_wildcard_subscribers(self):
        bus = EventBus()
        seen = []
        bus.subscribe("order.changed", lambda t, p: seen.append(("topic", t, p)))
        bus.subscribe("*", lambda t, p: seen.append(("any", t, p)))

        delivered = bus.publish("order.changed", {"order_id": 1})

        assert delivered == 2
        assert seen == [("topic", "order.changed", {"order_id": 1}), ("any", "order.changed", {"order_id": 1})]

    def test_failing_subscriber_is_skipped(self):
        bus = EventBus()
        seen = []

        def _broken(topic, payload):
            raise RuntimeError("subscriber down")

        bus.subscribe("payment.changed", _broken)
        bus.subscribe("payment.changed", lambda t, p: seen.append(p))

        assert bus.publish("payment.changed", {"status": "released"}) == 1
        assert seen == [{"status": "released"}]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        handler = lambda t, p: seen.append(p)  # noqa: E731
        bus.subscribe("order.changed", handler)
        bus.unsubscribe("order.changed", handler)
        bus.unsubscribe("order.changed", handler)

        assert bus.publish("order.changed", {}) == 0
        assert seen == []

    def test_subscriber_gets_a_copy(self):
        bus = EventBus()
        original = {"order_id": 1}
        bus.subscribe("order.changed", lambda t, p: p.update(order_id=2))
        bus.publish("order.changed", original)
        assert original == {"order_id": 1}

    def test_transitions_publish_order_changed(self, make_order, driver, events):
        from trustchain.services import order_service

        order = make_order()
        order_service.accept_order(order.id, driver.id)

        statuses = [p["status"] for t, p in events if t == "order.changed"]
        assert statuses == ["pending", "assigned"]
