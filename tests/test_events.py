"""Tests for the event emitter and notification sinks."""

import json
import logging
import threading
from decimal import Decimal
from uuid import uuid4

import pytest

from halonet.events import (
    ApprovalDecided,
    BatchCreated,
    BatchStatusChanged,
    CollectingNotificationSink,
    EventCategory,
    EventEmitter,
    EventMetadata,
    LoggingNotificationSink,
    RiskEventResolved,
    attach_notification_sink,
)
from halonet.exceptions import InvalidStateError


def _created(company_id=None) -> BatchCreated:
    return BatchCreated(
        metadata=EventMetadata.create(company_id or uuid4(), actor="alice"),
        batch_id=uuid4(),
        batch_number="B-20260304-0001",
        batch_type="payroll",
        total_amount=Decimal("1200.00"),
        total_count=2,
        requires_approval=False,
    )


def _decided(company_id=None) -> ApprovalDecided:
    return ApprovalDecided(
        metadata=EventMetadata.create(company_id or uuid4()),
        request_id=uuid4(),
        batch_id=uuid4(),
        approver="bob",
        decision="approved",
        approved_count=1,
        request_status="approved",
    )


class TestEventEmitter:
    """Test event emitter functionality."""

    def test_emit_by_type(self):
        emitter = EventEmitter()
        received = []
        emitter.on(BatchCreated, received.append)

        emitter.emit(_created())
        emitter.emit(_decided())

        assert [type(e) for e in received] == [BatchCreated]

    def test_emit_by_category(self):
        emitter = EventEmitter()
        received = []
        emitter.on_category(EventCategory.APPROVAL, received.append)

        emitter.emit(_created())
        emitter.emit(_decided())

        assert [type(e) for e in received] == [ApprovalDecided]

    def test_handler_failure_is_isolated(self, caplog):
        emitter = EventEmitter()
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        emitter.on_all(broken)
        emitter.on_all(received.append)

        with caplog.at_level(logging.ERROR, logger="halonet.events.emitter"):
            errors = emitter.emit(_created())

        assert len(received) == 1
        assert [str(e) for e in errors] == ["sink down"]
        assert "Handler" in caplog.text

    def test_off_removes_handler(self):
        emitter = EventEmitter()
        received = []

        def handler(event):
            received.append(event)

        emitter.on_all(handler)
        emitter.off(handler)
        emitter.emit(_created())

        assert received == []
        assert emitter.handler_count == 0


class TestSubscriptions:
    """Per-company live subscriptions."""

    def test_only_own_company(self):
        emitter = EventEmitter()
        company = uuid4()
        received = []
        emitter.subscribe(company, received.append)

        emitter.emit(_created(company))
        emitter.emit(_created())

        assert len(received) == 1
        assert received[0].company_id == company

    def test_unsubscribe(self):
        emitter = EventEmitter()
        company = uuid4()
        received = []
        subscription = emitter.subscribe(company, received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        emitter.emit(_created(company))

        assert received == []
        assert emitter.handler_count == 0
        assert subscription.active is False

    def test_context_manager_unsubscribes(self):
        emitter = EventEmitter()
        company = uuid4()

        with emitter.subscribe(company, lambda event: None):
            assert emitter.handler_count == 1

        assert emitter.handler_count == 0

    def test_category_filter(self):
        emitter = EventEmitter()
        company = uuid4()
        received = []
        emitter.subscribe(company, received.append, categories=[EventCategory.APPROVAL])

        emitter.emit(_created(company))
        emitter.emit(_decided(company))

        assert [type(e) for e in received] == [ApprovalDecided]


class TestEventBatch:
    """Events collected inside a transaction."""

    def test_held_until_exit(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with emitter.batch():
            emitter.emit(_created())
            emitter.emit(_decided())
            assert received == []

        assert len(received) == 2

    def test_nested_batches_join_outermost(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with emitter.batch():
            with emitter.batch():
                emitter.emit(_created())
            assert received == []

        assert len(received) == 1

    def test_discarded_on_error(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with pytest.raises(ValueError):
            with emitter.batch():
                emitter.emit(_created())
                raise ValueError("rolled back")

        assert received == []
        emitter.emit(_created())
        assert len(received) == 1

    def test_batches_are_per_thread(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        committed, rolled_back = _created(), _created()
        a_open, b_open, a_closed = threading.Event(), threading.Event(), threading.Event()
        failures = []

        def commits():
            with emitter.batch():
                emitter.emit(committed)
                a_open.set()
                b_open.wait(5)
            a_closed.set()

        def rolls_back():
            a_open.wait(5)
            try:
                with emitter.batch():
                    emitter.emit(rolled_back)
                    b_open.set()
                    a_closed.wait(5)
                    raise ValueError("rolled back")
            except ValueError as e:
                failures.append(e)

        threads = [threading.Thread(target=commits), threading.Thread(target=rolls_back)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len(failures) == 1
        assert received == [committed]

    def test_unbatched_thread_not_held(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        event = _decided()

        with emitter.batch():
            emitter.emit(_created())
            worker = threading.Thread(target=emitter.emit, args=(event,))
            worker.start()
            worker.join(5)
            assert received == [event]

        assert len(received) == 2

    def test_failed_service_call_emits_nothing(self, manager, draft_batch, events):
        manager.cancel_batch(draft_batch.id, "first")

        with pytest.raises(InvalidStateError):
            manager.cancel_batch(draft_batch.id, "second")

        assert [type(e) for e in events] == [BatchStatusChanged]


class TestSerialization:
    def test_to_dict(self):
        event = _created()

        data = event.to_dict()

        assert data["event_type"] == "BatchCreated"
        assert data["category"] == "batch"
        assert data["total_amount"] == "1200.00"
        assert data["metadata"]["actor"] == "alice"

    def test_to_json(self):
        payload = json.loads(_decided().to_json())

        assert payload["decision"] == "approved"
        assert payload["category"] == "approval"


class TestNotificationSinks:
    def test_alert_categories_only(self):
        emitter = EventEmitter()
        sink = CollectingNotificationSink()
        attach_notification_sink(emitter, sink)

        emitter.emit(_created())
        emitter.emit(_decided())
        emitter.emit(
            RiskEventResolved(
                metadata=EventMetadata.create(uuid4()),
                risk_event_id=uuid4(),
                resolution_status="resolved",
                resolved_by="carol",
            )
        )

        assert [e.event_type for e in sink.events] == ["ApprovalDecided", "RiskEventResolved"]

    def test_logging_sink(self, caplog):
        emitter = EventEmitter()
        attach_notification_sink(emitter, LoggingNotificationSink(), [EventCategory.BATCH])

        with caplog.at_level(logging.INFO, logger="halonet.audit"):
            emitter.emit(_created())

        assert "BatchCreated" in caplog.text
