"""Domain events, the emitter, and notification sinks."""

from halonet.events.emitter import EventBatch, EventEmitter, EventHandler, Subscription
from halonet.events.notifications import (
    CollectingNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    attach_notification_sink,
)
from halonet.events.types import (
    EVENT_TYPES,
    ApprovalDecided,
    ApprovalRequested,
    BatchCreated,
    BatchStatusChanged,
    DomainEvent,
    EntryStatusChanged,
    EventCategory,
    EventMetadata,
    RiskEventRecorded,
    RiskEventResolved,
)

__all__ = [
    "EVENT_TYPES",
    "ApprovalDecided",
    "ApprovalRequested",
    "BatchCreated",
    "BatchStatusChanged",
    "CollectingNotificationSink",
    "DomainEvent",
    "EntryStatusChanged",
    "EventBatch",
    "EventCategory",
    "EventEmitter",
    "EventHandler",
    "EventMetadata",
    "LoggingNotificationSink",
    "NotificationSink",
    "RiskEventRecorded",
    "RiskEventResolved",
    "Subscription",
    "attach_notification_sink",
]
