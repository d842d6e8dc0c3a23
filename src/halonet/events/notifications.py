"""Notification and audit sinks.

Sinks are attached to the emitter as ordinary handlers, which makes them
fire-and-forget: a failing sink is logged by the emitter and never rolls
back the state change that produced the event.
"""

from __future__ import annotations

import logging
from typing import Protocol

from halonet.events.emitter import EventEmitter
from halonet.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

ALERT_CATEGORIES = [EventCategory.RISK, EventCategory.APPROVAL]


class NotificationSink(Protocol):
    """Receives events that operators should be alerted about."""

    def notify(self, event: DomainEvent) -> None:
        ...


class LoggingNotificationSink:
    """Writes alert events to the ``halonet.audit`` logger."""

    def __init__(self, logger_name: str = "halonet.audit") -> None:
        self._log = logging.getLogger(logger_name)

    def notify(self, event: DomainEvent) -> None:
        self._log.info(
            "%s company=%s payload=%s",
            event.event_type,
            event.company_id,
            event.to_json(),
        )


class CollectingNotificationSink:
    """Keeps notified events in memory, for local runs and inspection."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def notify(self, event: DomainEvent) -> None:
        self.events.append(event)


def attach_notification_sink(
    emitter: EventEmitter,
    sink: NotificationSink,
    categories: list[EventCategory] | None = None,
) -> None:
    """Forward risk and approval events (by default) to a sink."""
    emitter.on_category(categories or ALERT_CATEGORIES, sink.notify)
    logger.debug("Attached notification sink %s", type(sink).__name__)
