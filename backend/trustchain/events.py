# Overview: In-process event bus that committed workflow changes are published to.

"""
Replaces a database change feed with message passing.

Services publish after their transaction commits; independent subscribers
(the SMS forwarder, dashboards, tests) receive a copy of the event. The bus
holds only the subscriber registry, which is configured once in create_app()
and never mutated by request handlers.

Topics:
    order.changed          {"order_id", "status", "payment_status"}
    delivery.changed       {"delivery_id", "order_id", ...}
    payment.changed        {"payment_id", "order_id", "status"}
    fraud_alert.created    {"alert_id", "alert_type", "severity", ...}
    notification.created   {"notification_id", "user_id", "title", "message", ...}
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

WILDCARD = "*"

EXTENSION_KEY = "trustchain.events"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[str, dict], None]]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Callable[[str, dict], None]) -> None:
        """Register handler(topic, payload) for a topic, or "*" for all topics."""
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Callable[[str, dict], None]) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, topic: str, payload: dict) -> int:
        """
        Deliver an event to every subscriber of the topic (and wildcards).

        A failing subscriber is logged and skipped; publishing never raises.
        Returns the number of handlers that completed.
        """
        delivered = 0
        handlers = list(self._subscribers.get(topic, [])) + list(self._subscribers.get(WILDCARD, []))
        for handler in handlers:
            try:
                handler(topic, dict(payload))
                delivered += 1
            except Exception:
                logger.exception("Event subscriber failed for topic %s", topic)
        return delivered


def get_event_bus(app=None) -> EventBus | None:
    app = app or (current_app if has_app_context() else None)
    if app is None:
        return None
    return app.extensions.get(EXTENSION_KEY)


def publish(topic: str, payload: dict) -> int:
    """Publish on the current app's bus; a no-op outside an app context."""
    bus = get_event_bus()
    if bus is None:
        return 0
    return bus.publish(topic, payload)
