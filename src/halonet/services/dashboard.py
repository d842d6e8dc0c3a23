"""Dashboard metrics for a company's payment operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from halonet.models import ApprovalRequest, PaymentBatch, PaymentEntry, RiskEvent, ensure_utc, utcnow
from halonet.services.state_machine import ApprovalStatus, BatchStatus, EntryStatus

# Batches whose money has left, or is leaving, the originator
SUBMITTED_STATUSES = (BatchStatus.SUBMITTED, BatchStatus.PROCESSING, BatchStatus.COMPLETED)


@dataclass(frozen=True)
class DashboardMetrics:
    """Point-in-time summary of a company's batches, approvals and risk."""

    company_id: UUID
    batches_by_status: dict[str, int] = field(default_factory=dict)
    total_batches: int = 0
    pending_approvals: int = 0
    active_risk_events: int = 0
    critical_risk_events: int = 0
    submitted_volume: Decimal = Decimal("0")
    returned_entries: int = 0
    failed_entries: int = 0
    voided_entries: int = 0


class DashboardService:
    """Aggregates the counters shown on the payments dashboard.

    Entry outcomes (returns, failures, voids) are counted separately from
    batch status, since a completed batch can still carry returned entries.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def get_metrics(self, company_id: UUID) -> DashboardMetrics:
        rows = self.db.execute(
            select(PaymentBatch.status, func.count(PaymentBatch.id))
            .where(PaymentBatch.company_id == company_id)
            .group_by(PaymentBatch.status)
        ).all()
        by_status = {status: int(count) for status, count in rows}

        submitted_volume = self.db.scalar(
            select(func.coalesce(func.sum(PaymentBatch.total_amount), 0)).where(
                PaymentBatch.company_id == company_id,
                PaymentBatch.status.in_([s.value for s in SUBMITTED_STATUSES]),
            )
        )

        now = self.clock()
        pending_expiries = self.db.scalars(
            select(ApprovalRequest.expires_at).where(
                ApprovalRequest.company_id == company_id,
                ApprovalRequest.status == ApprovalStatus.PENDING.value,
            )
        )
        # Lapsed requests still marked pending are not counted
        pending_approvals = sum(1 for expires_at in pending_expiries if ensure_utc(expires_at) > now)

        risk_rows = self.db.execute(
            select(RiskEvent.severity, func.count(RiskEvent.id))
            .where(RiskEvent.company_id == company_id, RiskEvent.status == "active")
            .group_by(RiskEvent.severity)
        ).all()
        risk_by_severity = {severity: int(count) for severity, count in risk_rows}

        entry_rows = self.db.execute(
            select(PaymentEntry.status, func.count(PaymentEntry.id))
            .join(PaymentBatch, PaymentEntry.batch_id == PaymentBatch.id)
            .where(
                PaymentBatch.company_id == company_id,
                PaymentEntry.status.in_(
                    [EntryStatus.RETURNED.value, EntryStatus.FAILED.value, EntryStatus.VOIDED.value]
                ),
            )
            .group_by(PaymentEntry.status)
        ).all()
        entry_counts = {status: int(count) for status, count in entry_rows}

        return DashboardMetrics(
            company_id=company_id,
            batches_by_status=by_status,
            total_batches=sum(by_status.values()),
            pending_approvals=pending_approvals,
            active_risk_events=sum(risk_by_severity.values()),
            critical_risk_events=risk_by_severity.get("critical", 0),
            submitted_volume=Decimal(str(submitted_volume)).quantize(Decimal("0.01")),
            returned_entries=entry_counts.get(EntryStatus.RETURNED.value, 0),
            failed_entries=entry_counts.get(EntryStatus.FAILED.value, 0),
            voided_entries=entry_counts.get(EntryStatus.VOIDED.value, 0),
        )
