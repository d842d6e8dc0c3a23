"""Risk event recorder.

Append-only log of risk control firings. Detection fields are frozen once
written; only the resolution fields move, and only out of ``active``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from halonet.events import EventEmitter, EventMetadata, RiskEventRecorded, RiskEventResolved
from halonet.exceptions import InvalidStateError, NotFoundError, ValidationError
from halonet.models import PaymentBatch, PaymentEntry, RiskControl, RiskEvent, utcnow
from halonet.risk_rules import parse_action_config
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

RESOLUTION_STATUSES = ("resolved", "false_positive", "suppressed")


def clamp_score(score: float) -> int:
    """Round a raw score into the stored 0..100 range."""
    return max(0, min(100, int(round(score))))


class RiskEventRecorder:
    """Writes and resolves RiskEvent rows."""

    def __init__(
        self,
        db: Session,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.emitter = emitter or EventEmitter()
        self.clock = clock

    def record(
        self,
        control: RiskControl,
        batch: PaymentBatch | None = None,
        entry: PaymentEntry | None = None,
        *,
        score: float,
        factors: list[dict[str, Any]],
        severity: str | None = None,
        action_taken: str | None = None,
    ) -> RiskEvent:
        """Append a risk event for a fired control.

        Participates in the caller's transaction: the row is flushed, not
        committed.
        """
        if severity is None:
            severity = parse_action_config(
                control.action_type, control.action_config
            ).effective_severity

        event = RiskEvent(
            company_id=control.company_id,
            batch_id=batch.id if batch is not None else None,
            entry_id=entry.id if entry is not None else None,
            control_id=control.id,
            event_type=f"{control.control_type}_violation",
            severity=severity,
            risk_score=clamp_score(score),
            risk_factors=list(factors),
            action_taken=action_taken or control.action_type,
            status="active",
        )
        self.db.add(event)
        self.db.flush()

        logger.info(
            "Risk event %s: control=%s severity=%s score=%d action=%s",
            event.event_type,
            control.name,
            event.severity,
            event.risk_score,
            event.action_taken,
        )
        self.emitter.emit(
            RiskEventRecorded(
                metadata=EventMetadata.create(control.company_id, source_service="risk_events"),
                risk_event_id=event.id,
                control_id=control.id,
                batch_id=event.batch_id,
                event_type_name=event.event_type,
                severity=event.severity,
                risk_score=event.risk_score,
                action_taken=event.action_taken,
            )
        )
        return event

    def get_event(self, event_id: UUID) -> RiskEvent | None:
        return self.db.get(RiskEvent, event_id)

    def resolve(
        self,
        event_id: UUID,
        resolver: str,
        notes: str | None = None,
        status: str = "resolved",
    ) -> RiskEvent:
        """Close an active risk event.

        Raises:
            ValidationError: unknown resolution status or missing resolver.
            NotFoundError: no such event.
            InvalidStateError: the event is no longer active.
        """
        if status not in RESOLUTION_STATUSES:
            raise ValidationError(
                f"Resolution status must be one of {', '.join(RESOLUTION_STATUSES)}"
            )
        if not resolver:
            raise ValidationError("resolver is required")

        with self.emitter.batch(), unit_of_work(self.db):
            event = self.get_event(event_id)
            if event is None:
                raise NotFoundError("RiskEvent", event_id)
            if event.status != "active":
                raise InvalidStateError(
                    f"Risk event {event_id} is already {event.status}",
                    current_status=event.status,
                )

            event.status = status
            event.resolved_by = resolver
            event.resolved_at = self.clock()
            event.resolution_notes = notes
            self.db.flush()

            self.emitter.emit(
                RiskEventResolved(
                    metadata=EventMetadata.create(
                        event.company_id, actor=resolver, source_service="risk_events"
                    ),
                    risk_event_id=event.id,
                    resolution_status=status,
                    resolved_by=resolver,
                )
            )
        return event

    def list_active(self, company_id: UUID, limit: int = 100) -> list[RiskEvent]:
        """Active events for a company, most recent first."""
        return self.list_events(company_id, status="active", limit=limit)

    def list_events(
        self,
        company_id: UUID,
        status: str | None = None,
        batch_id: UUID | None = None,
        limit: int = 100,
    ) -> list[RiskEvent]:
        stmt = select(RiskEvent).where(RiskEvent.company_id == company_id)
        if status is not None:
            stmt = stmt.where(RiskEvent.status == status)
        if batch_id is not None:
            stmt = stmt.where(RiskEvent.batch_id == batch_id)
        stmt = stmt.order_by(RiskEvent.created_at.desc(), RiskEvent.id).limit(limit)
        return list(self.db.scalars(stmt))
