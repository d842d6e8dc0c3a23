"""Event emitter for publishing domain events.

The emitter provides:
- Handler registration with type and category filtering
- Per-company subscriptions for live dashboards
- Error isolation (handler failures don't break other handlers or
  the state change that produced the event)
- Event batching for transactions
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable
from uuid import UUID

from halonet.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)


@runtime_checkable
class EventHandler(Protocol):
    """Protocol for event handlers."""

    def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event."""
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler | Callable[[DomainEvent], None]
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories
    company_id: UUID | None = None  # None = all companies


class Subscription:
    """Handle returned by ``EventEmitter.subscribe``.

    Call ``unsubscribe()`` on teardown; it is safe to call more than once.
    """

    def __init__(self, emitter: EventEmitter, registration: HandlerRegistration) -> None:
        self._emitter = emitter
        self._registration = registration
        self.active = True

    @property
    def company_id(self) -> UUID | None:
        return self._registration.company_id

    def unsubscribe(self) -> None:
        if self.active:
            self._emitter._remove(self._registration)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.unsubscribe()


class EventEmitter:
    """Synchronous event emitter.

    Usage:
        emitter = EventEmitter()

        # Register handler for specific event type
        emitter.on(BatchStatusChanged, handle_status)

        # Live updates for one company
        sub = emitter.subscribe(company_id, push_to_dashboard)
        ...
        sub.unsubscribe()

        # Batch events (for transactions)
        with emitter.batch() as batch:
            batch.add(event1)
            batch.add(event2)
        # All events emitted when context exits
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []
        self._lock = threading.Lock()
        # Batches belong to the thread that opened them; one emitter
        # serves every request thread of the API.
        self._local = threading.local()

    @property
    def _batch_depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @property
    def _batch(self) -> list[DomainEvent]:
        if not hasattr(self._local, "events"):
            self._local.events = []
        return self._local.events

    def _register(self, registration: HandlerRegistration) -> None:
        with self._lock:
            self._handlers = [*self._handlers, registration]

    def on(
        self,
        event_type: type[T] | list[type[T]],
        handler: EventHandler,
    ) -> None:
        """Register handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}

        self._register(
            HandlerRegistration(handler=handler, event_types=types, categories=None)
        )

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Register handler for event category(ies)."""
        if isinstance(category, list):
            cats = set(category)
        else:
            cats = {category}

        self._register(
            HandlerRegistration(handler=handler, event_types=None, categories=cats)
        )

    def on_all(self, handler: EventHandler) -> None:
        """Register handler for all events."""
        self._register(
            HandlerRegistration(handler=handler, event_types=None, categories=None)
        )

    def subscribe(
        self,
        company_id: UUID,
        handler: EventHandler,
        categories: list[EventCategory] | None = None,
    ) -> Subscription:
        """Subscribe to every event for one company."""
        registration = HandlerRegistration(
            handler=handler,
            event_types=None,
            categories=set(categories) if categories else None,
            company_id=company_id,
        )
        self._register(registration)
        return Subscription(self, registration)

    def off(self, handler: EventHandler) -> None:
        """Unregister a handler."""
        with self._lock:
            self._handlers = [
                reg for reg in self._handlers if reg.handler is not handler
            ]

    def _remove(self, registration: HandlerRegistration) -> None:
        with self._lock:
            self._handlers = [reg for reg in self._handlers if reg is not registration]

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        Handlers are isolated - failures don't stop other handlers.
        Inside a batch opened by the calling thread the event is held
        until that batch exits.
        """
        if self._batch_depth > 0:
            self._batch.append(event)
            return []

        return self._dispatch(event)

    def _dispatch(self, event: DomainEvent) -> list[Exception]:
        """Dispatch event to matching handlers."""
        errors: list[Exception] = []
        event_type = event.event_type
        event_category = event.category

        # The list is replaced, never mutated, so this snapshot is stable
        # while handlers (un)subscribe from this or another thread
        for reg in self._handlers:
            if reg.event_types and event_type not in reg.event_types:
                continue

            if reg.categories and event_category not in reg.categories:
                continue

            if reg.company_id is not None and reg.company_id != event.company_id:
                continue

            try:
                reg.handler(event)
            except Exception as e:
                logger.exception(
                    "Handler %s failed for event %s",
                    reg.handler,
                    event_type,
                )
                errors.append(e)

        return errors

    def batch(self) -> EventBatch:
        """Create a batch context for collecting events.

        Events are held until the context exits, then emitted together.
        """
        return EventBatch(self)

    def _start_batch(self) -> None:
        """Start batching mode. Nested batches join the outermost one."""
        if self._batch_depth == 0:
            self._local.events = []
        self._local.depth = self._batch_depth + 1

    def _end_batch(self) -> list[Exception]:
        """End batching and emit all collected events."""
        self._local.depth = self._batch_depth - 1
        if self._batch_depth > 0:
            return []
        events = self._batch
        self._local.events = []

        errors: list[Exception] = []
        for event in events:
            errors.extend(self._dispatch(event))
        return errors

    def _discard_batch(self) -> None:
        """Drop collected events once the outermost batch fails."""
        self._local.depth = self._batch_depth - 1
        if self._batch_depth == 0:
            self._local.events = []


class EventBatch:
    """Context manager for batching events."""

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self._errors: list[Exception] = []

    def __enter__(self) -> EventBatch:
        self._emitter._start_batch()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self._errors = self._emitter._end_batch()
        else:
            # Exception occurred - discard batch
            self._emitter._discard_batch()

    def add(self, event: DomainEvent) -> None:
        """Add event to batch."""
        self._emitter.emit(event)

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (available after context exits)."""
        return self._errors
