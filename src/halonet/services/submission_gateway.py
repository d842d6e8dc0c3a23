"""Provider submission gateway.

Moves an approved, risk-clear batch onto a payment rail:

1. Preconditions (approval, lifecycle, pending submissions, holds)
2. Fresh risk evaluation, committed before the provider is called
3. NACHA file generated and stored with its hashes
4. Provider call with the batch idempotency key, retrying transport
   failures with exponential backoff
5. Outcome applied atomically to the batch and its entries

Timeouts leave the batch ``submission_status='pending'`` because the
provider may have accepted it; ``reconcile`` resolves the outcome by
polling with the same idempotency key. Entry-level voids and returns are
handled here too, after submission.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from halonet.engine_config import EngineConfig
from halonet.events import BatchStatusChanged, EntryStatusChanged, EventEmitter, EventMetadata
from halonet.exceptions import (
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ProviderError,
    ProviderTimeoutError,
    ProviderTransportError,
    ValidationError,
)
from halonet.models import PaymentBatch, PaymentEntry, ensure_utc, utcnow
from halonet.nacha import NachaFile, generate_nacha_file, trace_number, transmittable_entries
from halonet.providers import (
    BatchPaymentProvider,
    BatchSubmission,
    EntryUpdate,
    ProviderResponse,
    SubmissionEntry,
)
from halonet.services.company_settings import get_company_settings
from halonet.services.risk_evaluator import RiskControlEvaluator
from halonet.services.state_machine import (
    BatchApprovalStatus,
    BatchStateMachine,
    BatchStatus,
    EntryStateMachine,
    EntryStatus,
    SubmissionStatus,
)
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

RETURN_CODE_RE = re.compile(r"^R\d{2}$")

# Returns that carry a non-sufficient-funds fee
NSF_RETURN_CODES = frozenset({"R01", "R09"})

# Provider batch status -> batch status
PROVIDER_BATCH_STATUS = {
    "processing": BatchStatus.PROCESSING,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
}


@dataclass(frozen=True)
class SubmissionOutcome:
    """Result of a submission attempt."""

    success: bool
    batch_id: UUID
    submission_status: str
    provider_batch_id: str | None = None
    confirmation_number: str | None = None
    estimated_settlement_date: date | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    rejected_entries: dict[str, str] = field(default_factory=dict)


class SubmissionGateway:
    """Service for provider submission, reconciliation, voids and returns."""

    def __init__(
        self,
        db: Session,
        providers: Mapping[str, BatchPaymentProvider],
        evaluator: RiskControlEvaluator | None = None,
        config: EngineConfig | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        default_provider_id: str | None = None,
    ):
        self.db = db
        self.providers = dict(providers)
        self.config = config or EngineConfig()
        self.emitter = emitter or EventEmitter()
        self.clock = clock
        self.evaluator = evaluator or RiskControlEvaluator(db, clock=clock)
        self.sleep = sleep
        self.default_provider_id = default_provider_id

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_to_provider(
        self,
        batch_id: UUID,
        provider_id: str | None = None,
        actor: str | None = None,
    ) -> SubmissionOutcome:
        """Submit a batch to a payment rail.

        Returns:
            SubmissionOutcome. ``success`` is False for provider rejections
            and for timeouts (``submission_status='pending'``).

        Raises:
            NotFoundError: unknown batch or provider.
            PreconditionError: approval missing, batch not submittable,
                submission pending, active hold, or risk controls block it.
            ProviderError: transport failures outlasted the retries
                (``retryable=True``) or the provider failed terminally.
        """
        batch = self._require_batch(batch_id)
        provider_id, provider = self._resolve_provider(provider_id or batch.provider_id)

        reasons = self._precondition_failures(batch)
        if reasons:
            raise PreconditionError(
                f"Batch {batch.batch_number} cannot be submitted: {'; '.join(reasons)}",
                reasons=reasons,
            )

        with self.emitter.batch(), unit_of_work(self.db):
            result = self.evaluator.evaluate(batch)
            reasons = []
            if result.blocked:
                reasons.append(f"risk evaluation returned {result.action}")
                reasons.extend(result.hard_stop_reasons)
            reasons.extend(self._precondition_failures(batch))
            if not reasons:
                nacha = self.generate_nacha_file(batch)
                batch.nacha_content = nacha.content
                batch.nacha_content_hash = nacha.content_hash
                batch.nacha_entry_hash = nacha.entry_hash
                batch.provider_id = provider_id
                submission = self._build_submission(batch, nacha)
            self.db.flush()

        if reasons:
            logger.warning("Submission of batch %s refused: %s", batch.batch_number, reasons)
            raise PreconditionError(
                f"Batch {batch.batch_number} cannot be submitted: {'; '.join(reasons)}",
                reasons=reasons,
            )

        try:
            response = self._call_with_retries(provider, batch, submission)
        except ProviderTimeoutError as exc:
            return self._mark_pending(batch, exc, actor)
        except ProviderError as exc:
            self._mark_submission_failed(batch, exc)
            raise

        return self._apply_response(batch, provider, response, actor)

    def _precondition_failures(self, batch: PaymentBatch) -> list[str]:
        reasons: list[str] = []
        if batch.submission_status == SubmissionStatus.PENDING:
            reasons.append("a previous submission is pending reconciliation")
        if batch.status not in BatchStateMachine.SUBMITTABLE:
            reasons.append(f"batch is {batch.status}")
        if batch.requires_approval and batch.approval_status != BatchApprovalStatus.APPROVED:
            reasons.append(f"approval not satisfied (approval_status={batch.approval_status})")
        if batch.total_count == 0:
            reasons.append("batch has no entries")
        hold_until = ensure_utc(batch.hold_until)
        if hold_until is not None and self.clock() < hold_until:
            reasons.append(f"batch is held until {hold_until.isoformat()}")
        return reasons

    def _build_submission(self, batch: PaymentBatch, nacha: NachaFile) -> BatchSubmission:
        entries = []
        for entry in transmittable_entries(batch):
            entry.trace_number = trace_number(self.config.nacha, entry)
            entries.append(
                SubmissionEntry(
                    entry_id=str(entry.id),
                    sequence=entry.sequence,
                    amount=entry.amount,
                    transaction_type=entry.transaction_type,
                    routing_number=entry.routing_number,
                    account_number=entry.account_number,
                    account_type=entry.account_type,
                    recipient_name=entry.recipient_name,
                    trace_number=entry.trace_number,
                )
            )
        settings = get_company_settings(self.db, batch.company_id)
        return BatchSubmission(
            idempotency_key=batch.idempotency_key,
            batch_id=str(batch.id),
            company_id=str(batch.company_id),
            effective_date=batch.effective_date,
            total_amount=batch.total_amount,
            nacha_content=nacha.content,
            nacha_content_hash=nacha.content_hash,
            entries=tuple(entries),
            metadata={
                "batch_number": batch.batch_number,
                "allow_partial_acceptance": bool(
                    settings is not None and settings.allow_partial_acceptance
                ),
            },
        )

    def _call_with_retries(
        self,
        provider: BatchPaymentProvider,
        batch: PaymentBatch,
        submission: BatchSubmission,
    ) -> ProviderResponse:
        cfg = self.config.submission
        attempts = cfg.retry_count + 1
        attempt = 0

        while True:
            if attempt:
                delay = cfg.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Retrying batch %s in %.1fs (attempt %d of %d)",
                    batch.batch_number,
                    delay,
                    attempt + 1,
                    attempts,
                )
                self.sleep(delay)
            batch.submission_attempts += 1
            try:
                return provider.submit_batch(submission, timeout=cfg.timeout_seconds)
            except ProviderTransportError as exc:
                logger.warning("Transport failure submitting batch %s: %s", batch.batch_number, exc)
                if attempt + 1 >= attempts:
                    raise ProviderError(
                        f"Provider unreachable after {attempts} attempts: {exc.message}",
                        retryable=True,
                        provider=provider.provider_name,
                    ) from exc
            attempt += 1

    def _mark_pending(
        self, batch: PaymentBatch, exc: ProviderTimeoutError, actor: str | None
    ) -> SubmissionOutcome:
        with self.emitter.batch(), unit_of_work(self.db):
            batch.submission_status = SubmissionStatus.PENDING.value
            batch.last_submission_error = exc.message
            self.db.flush()
            self._emit_batch_status(batch, batch.status, actor, "provider timeout")

        logger.warning("Submission of batch %s timed out; outcome pending", batch.batch_number)
        return SubmissionOutcome(
            success=False,
            batch_id=batch.id,
            submission_status=batch.submission_status,
            errors=(exc.message,),
            warnings=("Provider did not answer in time; reconcile before resubmitting",),
        )

    def _mark_submission_failed(self, batch: PaymentBatch, exc: ProviderError) -> None:
        with unit_of_work(self.db):
            batch.submission_status = SubmissionStatus.FAILED.value
            batch.last_submission_error = exc.message
            self.db.flush()
        logger.error("Submission of batch %s failed: %s", batch.batch_number, exc.message)

    def _partial_acceptance_allowed(
        self, batch: PaymentBatch, provider: BatchPaymentProvider
    ) -> bool:
        if not provider.capabilities().partial_acceptance:
            return False
        settings = get_company_settings(self.db, batch.company_id)
        return settings is not None and settings.allow_partial_acceptance

    def _apply_response(
        self,
        batch: PaymentBatch,
        provider: BatchPaymentProvider,
        response: ProviderResponse,
        actor: str | None,
    ) -> SubmissionOutcome:
        accepted = response.success
        errors = response.errors
        if accepted and response.rejected_entries:
            if not self._partial_acceptance_allowed(batch, provider):
                # Rejected entries fail the whole batch unless both the
                # provider and the company accept partial batches
                accepted = False
                errors = errors + tuple(
                    f"entry {eid}: {reason}" for eid, reason in response.rejected_entries.items()
                )

        with self.emitter.batch(), unit_of_work(self.db):
            if accepted:
                self._mark_submitted(batch, response, actor)
            else:
                self._fail_batch(batch, "; ".join(errors) or "rejected by provider", actor)
            self.db.flush()

        if accepted:
            logger.info(
                "Batch %s submitted: provider_batch_id=%s rejected=%d",
                batch.batch_number,
                response.provider_batch_id,
                len(response.rejected_entries),
            )
        else:
            logger.warning("Batch %s rejected by provider: %s", batch.batch_number, errors)

        return SubmissionOutcome(
            success=accepted,
            batch_id=batch.id,
            submission_status=batch.submission_status,
            provider_batch_id=response.provider_batch_id,
            confirmation_number=response.confirmation_number,
            estimated_settlement_date=response.estimated_settlement_date,
            errors=errors,
            warnings=response.warnings,
            rejected_entries=dict(response.rejected_entries),
        )

    def _mark_submitted(
        self,
        batch: PaymentBatch,
        response: ProviderResponse | None,
        actor: str | None,
    ) -> None:
        previous = BatchStateMachine.transition(batch, BatchStatus.SUBMITTED)
        batch.submission_status = SubmissionStatus.SUBMITTED.value
        batch.submitted_at = self.clock()
        batch.last_submission_error = None
        if response is not None:
            batch.provider_batch_id = response.provider_batch_id
            batch.confirmation_number = response.confirmation_number
            batch.estimated_settlement_date = response.estimated_settlement_date

        rejected = response.rejected_entries if response is not None else {}
        accepted = response.accepted_entries if response is not None else {}
        for entry in transmittable_entries(batch):
            key = str(entry.id)
            if key in rejected:
                self._move_entry(entry, EntryStatus.FAILED, actor, reason=rejected[key])
                entry.failure_reason = rejected[key]
            elif entry.status == EntryStatus.PENDING:
                entry.status = EntryStatus.SUBMITTED.value
                entry.provider_entry_id = accepted.get(key)

        self._emit_batch_status(batch, previous, actor, "submitted to provider")

    def _fail_batch(self, batch: PaymentBatch, reason: str, actor: str | None) -> None:
        """Fail the batch and every entry still in flight, together."""
        previous = BatchStateMachine.transition(batch, BatchStatus.FAILED)
        batch.submission_status = SubmissionStatus.FAILED.value
        batch.last_submission_error = reason
        batch.completed_at = self.clock()
        for entry in batch.entries:
            if EntryStateMachine.can_transition(entry.status, EntryStatus.FAILED):
                self._move_entry(entry, EntryStatus.FAILED, actor, reason=reason)
                entry.failure_reason = reason
        self._emit_batch_status(batch, previous, actor, reason)

    # ------------------------------------------------------------------
    # Reconciliation and provider callbacks
    # ------------------------------------------------------------------

    def reconcile(self, batch_id: UUID) -> PaymentBatch:
        """Poll the provider for a pending or submitted batch and apply what it reports."""
        batch = self._require_batch(batch_id)
        if batch.submission_status not in (SubmissionStatus.PENDING, SubmissionStatus.SUBMITTED):
            raise InvalidStateError(
                f"Batch {batch.batch_number} has nothing to reconcile "
                f"(submission_status={batch.submission_status})",
                current_status=batch.status,
            )
        _, provider = self._resolve_provider(batch.provider_id)
        result = provider.get_batch_status(
            batch.idempotency_key, timeout=self.config.submission.timeout_seconds
        )

        with self.emitter.batch(), unit_of_work(self.db):
            if batch.submission_status == SubmissionStatus.PENDING:
                if result.status == "unknown":
                    # Provider never received it; a new submission is safe
                    batch.submission_status = SubmissionStatus.FAILED.value
                    batch.last_submission_error = result.message or "not found at provider"
                else:
                    self._mark_submitted(batch, None, "reconciliation")
                    batch.provider_batch_id = result.provider_batch_id
                    batch.confirmation_number = result.confirmation_number
                    batch.estimated_settlement_date = result.estimated_settlement_date
            if batch.submission_status == SubmissionStatus.SUBMITTED:
                self._apply_status(batch, result.status, result.entry_updates, "reconciliation")
            self.db.flush()

        logger.info(
            "Reconciled batch %s: provider=%s status=%s submission_status=%s",
            batch.batch_number,
            result.status,
            batch.status,
            batch.submission_status,
        )
        return batch

    def apply_provider_update(
        self,
        batch_id: UUID,
        status: str,
        entry_updates: Sequence[EntryUpdate] = (),
    ) -> PaymentBatch:
        """Apply an asynchronous status callback from the provider."""
        batch = self._require_batch(batch_id)
        if batch.submission_status != SubmissionStatus.SUBMITTED:
            raise InvalidStateError(
                f"Batch {batch.batch_number} has not been submitted",
                current_status=batch.status,
            )
        with self.emitter.batch(), unit_of_work(self.db):
            self._apply_status(batch, status, entry_updates, "provider")
            self.db.flush()
        return batch

    def _apply_status(
        self,
        batch: PaymentBatch,
        status: str,
        entry_updates: Sequence[EntryUpdate],
        actor: str,
    ) -> None:
        target = PROVIDER_BATCH_STATUS.get(status)
        if target is not None and batch.status != target:
            if BatchStateMachine.can_transition(batch.status, target):
                previous = BatchStateMachine.transition(batch, target)
                if target in BatchStateMachine.TERMINAL:
                    batch.completed_at = self.clock()
                self._settle_entries(batch, target, actor)
                self._emit_batch_status(batch, previous, actor, f"provider reported {status}")
            else:
                # Late or out-of-order callbacks never move a batch backwards
                logger.warning(
                    "Ignoring provider status %s for batch %s in %s",
                    status,
                    batch.batch_number,
                    batch.status,
                )

        entries = {str(e.id): e for e in batch.entries}
        for update in entry_updates:
            entry = entries.get(update.entry_id)
            if entry is None:
                logger.warning(
                    "Provider update for unknown entry %s in batch %s",
                    update.entry_id,
                    batch.batch_number,
                )
                continue
            if update.status == EntryStatus.RETURNED:
                if entry.status != EntryStatus.RETURNED:
                    self._return_entry(entry, update.return_code or "R99", update.reason, None, actor)
            elif EntryStateMachine.can_transition(entry.status, update.status):
                self._move_entry(entry, update.status, actor, reason=update.reason)
                if update.status == EntryStatus.FAILED:
                    entry.failure_reason = update.reason

    def _settle_entries(self, batch: PaymentBatch, target: str, actor: str) -> None:
        entry_target = {
            BatchStatus.PROCESSING: EntryStatus.PROCESSING,
            BatchStatus.COMPLETED: EntryStatus.COMPLETED,
            BatchStatus.FAILED: EntryStatus.FAILED,
        }[target]
        for entry in batch.entries:
            if entry.status in (EntryStatus.SUBMITTED, EntryStatus.PROCESSING) and (
                EntryStateMachine.can_transition(entry.status, entry_target)
            ):
                entry.status = EntryStatus(entry_target).value

    # ------------------------------------------------------------------
    # NACHA
    # ------------------------------------------------------------------

    def generate_nacha_file(self, batch: PaymentBatch) -> NachaFile:
        """Render the batch as a NACHA file (pure, deterministic)."""
        return generate_nacha_file(batch, self.config.nacha)

    # ------------------------------------------------------------------
    # Entry-level operations
    # ------------------------------------------------------------------

    def void_payment(
        self,
        entry_id: UUID,
        reason: str,
        actor: str | None = None,
    ) -> PaymentEntry:
        """Void a single entry that has not settled.

        Raises:
            ValidationError: no reason given.
            InvalidStateError: entry is completed, returned, failed or voided.
        """
        if not reason:
            raise ValidationError("A void reason is required")

        with self.emitter.batch(), unit_of_work(self.db):
            entry = self._require_entry(entry_id)
            if not EntryStateMachine.can_void(entry.status):
                raise InvalidStateError(
                    f"Entry {entry_id} is {entry.status} and can no longer be voided",
                    current_status=entry.status,
                )
            self._move_entry(entry, EntryStatus.VOIDED, actor, reason=reason)
            entry.void_reason = reason
            entry.voided_at = self.clock()
            entry.voided_by = actor
            self.db.flush()

        logger.info("Voided entry %s: %s", entry_id, reason)
        return entry

    def process_return(
        self,
        entry_id: UUID,
        return_code: str,
        reason: str | None = None,
        nsf_fee: Decimal | None = None,
    ) -> PaymentEntry:
        """Record an ACH return against one entry.

        Batch aggregates are not touched; the return is an entry-level
        outcome.
        """
        if not RETURN_CODE_RE.match(return_code or ""):
            raise ValidationError(f"Invalid ACH return code {return_code!r}")

        with self.emitter.batch(), unit_of_work(self.db):
            entry = self._require_entry(entry_id)
            self._return_entry(entry, return_code, reason, nsf_fee, None)
            self.db.flush()

        logger.info("Entry %s returned with %s", entry_id, return_code)
        return entry

    def _return_entry(
        self,
        entry: PaymentEntry,
        return_code: str,
        reason: str | None,
        nsf_fee: Decimal | None,
        actor: str | None,
    ) -> None:
        EntryStateMachine.validate_transition(entry.status, EntryStatus.RETURNED)
        if nsf_fee is None and return_code in NSF_RETURN_CODES:
            nsf_fee = self.config.submission.nsf_fee
        self._move_entry(entry, EntryStatus.RETURNED, actor, reason=reason, return_code=return_code)
        entry.return_code = return_code
        entry.return_reason = reason
        entry.returned_at = self.clock()
        entry.nsf_fee = nsf_fee

    def _move_entry(
        self,
        entry: PaymentEntry,
        to_status: str,
        actor: str | None,
        reason: str | None = None,
        return_code: str | None = None,
    ) -> None:
        previous = entry.status
        entry.status = EntryStatus(to_status).value
        batch = entry.batch
        self.emitter.emit(
            EntryStatusChanged(
                metadata=EventMetadata.create(
                    batch.company_id, actor=actor, source_service="submission_gateway"
                ),
                batch_id=batch.id,
                entry_id=entry.id,
                from_status=previous,
                to_status=entry.status,
                reason=reason,
                return_code=return_code,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_batch(self, batch_id: UUID) -> PaymentBatch:
        batch = self.db.get(PaymentBatch, batch_id)
        if batch is None:
            raise NotFoundError("PaymentBatch", batch_id)
        return batch

    def _require_entry(self, entry_id: UUID) -> PaymentEntry:
        entry = self.db.get(PaymentEntry, entry_id)
        if entry is None:
            raise NotFoundError("PaymentEntry", entry_id)
        return entry

    def _resolve_provider(self, provider_id: str | None) -> tuple[str, BatchPaymentProvider]:
        provider_id = provider_id or self.default_provider_id
        if provider_id is None and len(self.providers) == 1:
            provider_id = next(iter(self.providers))
        if provider_id is None or provider_id not in self.providers:
            raise NotFoundError("Provider", provider_id)
        return provider_id, self.providers[provider_id]

    def _emit_batch_status(
        self, batch: PaymentBatch, previous: str, actor: str | None, reason: str
    ) -> None:
        self.emitter.emit(
            BatchStatusChanged(
                metadata=EventMetadata.create(
                    batch.company_id, actor=actor, source_service="submission_gateway"
                ),
                batch_id=batch.id,
                from_status=previous,
                to_status=batch.status,
                submission_status=batch.submission_status,
                reason=reason,
            )
        )
