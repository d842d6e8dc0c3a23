"""Batch manager - builds and maintains payment batches.

Operations:
- create_batch: validate entries and persist a draft batch
- create_batch_from_calculation_source: expand payroll results into entries
- add_entry / remove_entry: draft-only mutation with aggregate recompute
- cancel_batch: withdraw a batch that has not been submitted

Aggregates (total, credit, debit, count) are recomputed from the entries in
the same flush as every mutation. Concurrent writers on one batch are
detected through the batch ``version`` column.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from halonet.events import BatchCreated, BatchStatusChanged, EventEmitter, EventMetadata
from halonet.exceptions import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from halonet.models import (
    GARNISHMENT_PAYMENT_TYPES,
    ApprovalRequest,
    PaymentBatch,
    PaymentEntry,
    utcnow,
)
from halonet.services.company_settings import get_company_settings
from halonet.services.garnishment import GarnishmentInput, allocate
from halonet.services.risk_evaluator import RiskControlEvaluator
from halonet.services.state_machine import (
    ApprovalStatus,
    BatchApprovalStatus,
    BatchStateMachine,
    BatchStatus,
)
from halonet.services.unit_of_work import unit_of_work
from halonet.validation import is_valid_account_number, routing_number_errors

logger = logging.getLogger(__name__)

BATCH_TYPES = ("payroll", "garnishment", "bonus", "correction")
ACCOUNT_TYPES = ("checking", "savings")
TRANSACTION_TYPES = ("credit", "debit")
PAYMENT_TYPES = ("salary", "bonus", "garnishment", "child_support", "tax_levy")


@dataclass(frozen=True)
class EntryInput:
    """Caller-supplied payment instruction."""

    recipient_name: str
    routing_number: str
    account_number: str
    amount: Decimal
    transaction_type: str = "credit"
    payment_type: str = "salary"
    account_type: str = "checking"
    employee_id: str | None = None
    garnishment_priority: int | None = None
    court_order_number: str | None = None
    currency: str = "USD"


@dataclass(frozen=True)
class BankAccount:
    routing_number: str
    account_number: str
    account_type: str = "checking"


@dataclass(frozen=True)
class CalculationLine:
    """One employee's result from the payroll calculation engine."""

    employee_id: str
    employee_name: str
    net_pay: Decimal
    bank_account: BankAccount
    garnishments: tuple[GarnishmentInput, ...] = ()


@dataclass(frozen=True)
class CalculationResult:
    """Output of a payroll calculation run."""

    lines: tuple[CalculationLine, ...]
    pay_date: date | None = None
    pay_run_id: str | None = None


def validate_entry(entry: EntryInput) -> list[str]:
    """Return every problem with an entry (empty if valid)."""
    errors: list[str] = []
    if not entry.recipient_name or not entry.recipient_name.strip():
        errors.append("recipient_name is required")
    if not isinstance(entry.amount, Decimal):
        errors.append("amount must be a Decimal")
    elif not entry.amount.is_finite() or entry.amount <= 0:
        errors.append("amount must be positive")
    elif entry.amount != entry.amount.quantize(Decimal("0.01")):
        errors.append("amount cannot have fractional cents")
    errors.extend(routing_number_errors(entry.routing_number))
    if not is_valid_account_number(entry.account_number):
        errors.append("account number must be 4 to 17 digits")
    if entry.account_type not in ACCOUNT_TYPES:
        errors.append(f"unknown account_type {entry.account_type!r}")
    if entry.transaction_type not in TRANSACTION_TYPES:
        errors.append(f"unknown transaction_type {entry.transaction_type!r}")
    if entry.payment_type not in PAYMENT_TYPES:
        errors.append(f"unknown payment_type {entry.payment_type!r}")
    elif entry.payment_type in GARNISHMENT_PAYMENT_TYPES and entry.garnishment_priority is None:
        errors.append(f"{entry.payment_type} entries require garnishment_priority")
    if entry.currency != "USD":
        errors.append("only USD is supported")
    return errors


def validate_entries(entries: Sequence[EntryInput]) -> None:
    """Validate a list of entries, reporting every offending index."""
    indices: list[int] = []
    messages: list[str] = []
    for index, entry in enumerate(entries):
        errors = validate_entry(entry)
        if errors:
            indices.append(index)
            messages.extend(f"entry {index}: {e}" for e in errors)
    if indices:
        raise ValidationError(
            f"{len(indices)} invalid entr{'y' if len(indices) == 1 else 'ies'}",
            entry_indices=indices,
            errors=messages,
        )


def _to_row(entry: EntryInput, sequence: int) -> PaymentEntry:
    return PaymentEntry(
        sequence=sequence,
        employee_id=entry.employee_id,
        recipient_name=entry.recipient_name.strip(),
        routing_number=entry.routing_number,
        account_number=entry.account_number,
        account_type=entry.account_type,
        amount=entry.amount,
        currency=entry.currency,
        transaction_type=entry.transaction_type,
        payment_type=entry.payment_type,
        garnishment_priority=entry.garnishment_priority,
        court_order_number=entry.court_order_number,
        status="pending",
    )


class BatchManager:
    """Service for building and maintaining payment batches."""

    def __init__(
        self,
        db: Session,
        evaluator: RiskControlEvaluator | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.emitter = emitter or EventEmitter()
        self.evaluator = evaluator or RiskControlEvaluator(db, clock=clock)
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_batch(
        self,
        company_id: UUID,
        batch_type: str,
        effective_date: date,
        entries: Sequence[EntryInput],
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> PaymentBatch:
        """Validate entries and persist a new draft batch.

        Raises:
            ValidationError: bad batch type, or one or more bad entries
                (``entry_indices`` lists every offender).
        """
        if batch_type not in BATCH_TYPES:
            raise ValidationError(f"unknown batch_type {batch_type!r}")
        validate_entries(entries)

        with self.emitter.batch(), unit_of_work(self.db):
            batch_id = uuid4()
            batch = PaymentBatch(
                id=batch_id,
                company_id=company_id,
                batch_number=self._next_batch_number(company_id),
                batch_type=batch_type,
                effective_date=effective_date,
                status=BatchStatus.DRAFT.value,
                approval_status=BatchApprovalStatus.NOT_REQUIRED.value,
                idempotency_key=f"{company_id}:{batch_id}",
                metadata_json=dict(metadata or {}),
                created_by=created_by,
            )
            batch.entries = [_to_row(e, seq) for seq, e in enumerate(entries, start=1)]
            batch.recompute_totals()
            batch.requires_approval = self.evaluator.approval_required(
                company_id,
                batch.total_amount,
                batch.total_count,
                max((e.amount for e in entries), default=None),
            )
            self.db.add(batch)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise ConcurrencyError(
                    f"Batch number {batch.batch_number} was taken concurrently; retry"
                ) from exc

            self.emitter.emit(
                BatchCreated(
                    metadata=EventMetadata.create(
                        company_id, actor=created_by, source_service="batch_manager"
                    ),
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    batch_type=batch.batch_type,
                    total_amount=batch.total_amount,
                    total_count=batch.total_count,
                    requires_approval=batch.requires_approval,
                )
            )

        logger.info(
            "Created batch %s for company %s: %d entries, total %s, requires_approval=%s",
            batch.batch_number,
            company_id,
            batch.total_count,
            batch.total_amount,
            batch.requires_approval,
        )
        return batch

    def create_batch_from_calculation_source(
        self,
        company_id: UUID,
        calc_result: CalculationResult,
        effective_date: date | None = None,
        created_by: str | None = None,
    ) -> PaymentBatch:
        """Build a payroll batch from calculation output.

        Each employee becomes garnishment debits in ascending priority,
        then one salary credit for whatever net pay remains. Garnishments
        that exceed net pay are cut down by the company's garnishment policy.
        """
        effective_date = effective_date or calc_result.pay_date
        if effective_date is None:
            raise ValidationError("effective_date is required when the result has no pay_date")

        settings = get_company_settings(self.db, company_id)
        policy = settings.garnishment_policy if settings is not None else "priority"

        entries: list[EntryInput] = []
        for line in calc_result.lines:
            if line.net_pay < 0:
                raise ValidationError(f"Employee {line.employee_id} has negative net pay")

            allocations = allocate(line.net_pay, line.garnishments, policy)
            withheld = Decimal("0")
            for alloc in allocations:
                if alloc.amount <= 0:
                    continue
                withheld += alloc.amount
                order = alloc.order
                entries.append(
                    EntryInput(
                        recipient_name=order.recipient_name,
                        routing_number=order.routing_number,
                        account_number=order.account_number,
                        account_type=order.account_type,
                        amount=alloc.amount,
                        transaction_type="debit",
                        payment_type=order.payment_type,
                        employee_id=line.employee_id,
                        garnishment_priority=order.priority,
                        court_order_number=order.court_order_number,
                    )
                )

            salary = line.net_pay - withheld
            if salary > 0:
                account = line.bank_account
                entries.append(
                    EntryInput(
                        recipient_name=line.employee_name,
                        routing_number=account.routing_number,
                        account_number=account.account_number,
                        account_type=account.account_type,
                        amount=salary,
                        transaction_type="credit",
                        payment_type="salary",
                        employee_id=line.employee_id,
                    )
                )

        metadata: dict[str, Any] = {"source": "calculation", "garnishment_policy": policy}
        if calc_result.pay_run_id:
            metadata["pay_run_id"] = calc_result.pay_run_id
        return self.create_batch(
            company_id,
            "payroll",
            effective_date,
            entries,
            metadata=metadata,
            created_by=created_by,
        )

    # ------------------------------------------------------------------
    # Entry mutation (draft only)
    # ------------------------------------------------------------------

    def add_entry(self, batch_id: UUID, entry: EntryInput) -> PaymentEntry:
        """Append an entry to a draft batch."""
        errors = validate_entry(entry)
        if errors:
            raise ValidationError("Invalid entry", errors=errors)

        with unit_of_work(self.db):
            batch = self._require_draft(batch_id)
            next_seq = max((e.sequence for e in batch.entries), default=0) + 1
            row = _to_row(entry, next_seq)
            batch.entries.append(row)
            batch.recompute_totals()
            self.db.flush()

        logger.info(
            "Added entry %d to batch %s (total now %s)",
            row.sequence,
            batch.batch_number,
            batch.total_amount,
        )
        return row

    def remove_entry(self, batch_id: UUID, entry_id: UUID) -> None:
        """Remove an entry from a draft batch."""
        with unit_of_work(self.db):
            batch = self._require_draft(batch_id)
            row = next((e for e in batch.entries if e.id == entry_id), None)
            if row is None:
                raise NotFoundError("PaymentEntry", entry_id)
            batch.entries.remove(row)
            batch.recompute_totals()
            self.db.flush()

        logger.info(
            "Removed entry %s from batch %s (total now %s)",
            entry_id,
            batch.batch_number,
            batch.total_amount,
        )

    def _require_draft(self, batch_id: UUID) -> PaymentBatch:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("PaymentBatch", batch_id)
        if not BatchStateMachine.can_modify_entries(batch.status):
            raise InvalidStateError(
                f"Entries can only change while a batch is draft (batch is {batch.status})",
                current_status=batch.status,
            )
        return batch

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel_batch(self, batch_id: UUID, reason: str, actor: str | None = None) -> PaymentBatch:
        """Withdraw a batch before submission.

        Pending approval requests for the batch are closed as expired.
        """
        if not reason:
            raise ValidationError("A cancellation reason is required")

        with self.emitter.batch(), unit_of_work(self.db):
            batch = self.get_batch(batch_id)
            if batch is None:
                raise NotFoundError("PaymentBatch", batch_id)
            previous = BatchStateMachine.transition(batch, BatchStatus.CANCELLED)
            batch.cancel_reason = reason

            now = self.clock()
            pending = self.db.scalars(
                select(ApprovalRequest).where(
                    ApprovalRequest.batch_id == batch.id,
                    ApprovalRequest.status == ApprovalStatus.PENDING.value,
                )
            )
            for request in pending:
                request.status = ApprovalStatus.EXPIRED.value
                request.decided_at = now
            self.db.flush()

            self.emitter.emit(
                BatchStatusChanged(
                    metadata=EventMetadata.create(
                        batch.company_id, actor=actor, source_service="batch_manager"
                    ),
                    batch_id=batch.id,
                    from_status=previous,
                    to_status=batch.status,
                    submission_status=batch.submission_status,
                    reason=reason,
                )
            )

        logger.info("Cancelled batch %s: %s", batch.batch_number, reason)
        return batch

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_batch(self, batch_id: UUID) -> PaymentBatch | None:
        """Load a batch; returns None when it does not exist."""
        return self.db.get(PaymentBatch, batch_id)

    def get_entries(self, batch_id: UUID) -> list[PaymentEntry]:
        return list(
            self.db.scalars(
                select(PaymentEntry)
                .where(PaymentEntry.batch_id == batch_id)
                .order_by(PaymentEntry.sequence)
            )
        )

    def list_batches(
        self,
        company_id: UUID,
        status: str | None = None,
        limit: int = 50,
    ) -> list[PaymentBatch]:
        """Company batches, most recent first."""
        stmt = select(PaymentBatch).where(PaymentBatch.company_id == company_id)
        if status is not None:
            stmt = stmt.where(PaymentBatch.status == status)
        stmt = stmt.order_by(PaymentBatch.created_at.desc(), PaymentBatch.batch_number.desc())
        return list(self.db.scalars(stmt.limit(limit)))

    def _next_batch_number(self, company_id: UUID) -> str:
        prefix = f"B-{self.clock():%Y%m%d}-"
        count = self.db.scalar(
            select(func.count(PaymentBatch.id)).where(
                PaymentBatch.company_id == company_id,
                PaymentBatch.batch_number.like(f"{prefix}%"),
            )
        )
        return f"{prefix}{(count or 0) + 1:04d}"
