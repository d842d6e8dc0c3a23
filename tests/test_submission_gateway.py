"""Tests for provider submission, reconciliation, voids and returns."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from halonet.events import BatchStatusChanged, EntryStatusChanged
from halonet.exceptions import (
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ProviderError,
    ValidationError,
)
from halonet.providers import AchStubProvider, EntryUpdate
from halonet.services import SubmissionGateway

from .conftest import ROUTING_B


class AlwaysPartialProvider(AchStubProvider):
    """Accepts every batch minus one entry, whatever the originator asked for."""

    def __init__(self, rejected_entry_id, partial_acceptance=False):
        super().__init__(partial_acceptance=partial_acceptance)
        self.rejected_entry_id = rejected_entry_id

    def submit_batch(self, submission, *, timeout):
        self.submit_calls += 1
        return self._accept(submission, {self.rejected_entry_id: "account closed"})


def _credit(batch):
    return next(e for e in batch.entries if e.transaction_type == "credit")


def _debit(batch):
    return next(e for e in batch.entries if e.transaction_type == "debit")


@pytest.fixture
def submitted_batch(gateway, draft_batch):
    outcome = gateway.submit_to_provider(draft_batch.id, actor="alice")
    assert outcome.success
    return draft_batch


@pytest.fixture
def completed_batch(gateway, provider, submitted_batch):
    provider.simulate_status(submitted_batch.idempotency_key, "completed")
    return gateway.reconcile(submitted_batch.id)


class TestPreconditions:
    """Nothing reaches the provider until the batch is cleared."""

    def test_pending_approval_is_refused(self, gateway, provider, workflow, gated_batch):
        workflow.request_approval(gated_batch.id, required_approvers=["bob"])

        with pytest.raises(PreconditionError) as exc_info:
            gateway.submit_to_provider(gated_batch.id)

        assert any("approval not satisfied" in r for r in exc_info.value.reasons)
        assert gated_batch.submission_status == "not_submitted"
        assert gated_batch.nacha_content is None
        assert provider.submit_calls == 0

    def test_approval_never_requested(self, gateway, provider, gated_batch):
        with pytest.raises(PreconditionError):
            gateway.submit_to_provider(gated_batch.id)

        assert provider.submit_calls == 0

    def test_blocking_control(self, gateway, provider, recorder, controls, draft_batch, company_id):
        controls.create(
            company_id, "amount_threshold", "Hard cap", {"max_batch_amount": "100.00"}, "block"
        )

        with pytest.raises(PreconditionError) as exc_info:
            gateway.submit_to_provider(draft_batch.id)

        assert exc_info.value.reasons == ["risk evaluation returned block"]
        assert provider.submit_calls == 0
        # The evaluation itself is kept
        assert len(recorder.list_active(company_id)) == 1
        assert draft_batch.risk_action == "block"

    def test_account_validation_stops_a_flag(self, gateway, provider, controls, draft_batch, company_id):
        controls.create(
            company_id,
            "account_validation",
            "Sanctioned banks",
            {"blocked_routing_numbers": [ROUTING_B]},
            "flag",
        )

        with pytest.raises(PreconditionError) as exc_info:
            gateway.submit_to_provider(draft_batch.id)

        assert "Sanctioned banks: entry 2: routing number is blocked" in exc_info.value.reasons
        assert provider.submit_calls == 0

    def test_delay_hold(self, gateway, provider, controls, draft_batch, company_id, clock):
        controls.create(
            company_id,
            "amount_threshold",
            "Cool off",
            {"max_batch_amount": "100.00"},
            "delay",
            {"delay_hours": 24},
        )

        with pytest.raises(PreconditionError):
            gateway.submit_to_provider(draft_batch.id)
        clock.advance(hours=23)
        with pytest.raises(PreconditionError):
            gateway.submit_to_provider(draft_batch.id)
        clock.advance(hours=2)

        assert gateway.submit_to_provider(draft_batch.id).success is True
        assert provider.submit_calls == 1

    def test_unknown_provider(self, gateway, draft_batch):
        with pytest.raises(NotFoundError):
            gateway.submit_to_provider(draft_batch.id, provider_id="wire")

    def test_unknown_batch(self, gateway):
        with pytest.raises(NotFoundError):
            gateway.submit_to_provider(uuid4())


class TestSubmission:
    """Test successful submission."""

    def test_approved_batch(self, gateway, approved_batch, events):
        outcome = gateway.submit_to_provider(approved_batch.id, actor="bob")

        assert outcome.success is True
        assert outcome.submission_status == "submitted"
        assert outcome.confirmation_number.startswith("CONF")
        assert outcome.estimated_settlement_date == approved_batch.effective_date + timedelta(days=1)
        assert approved_batch.status == "submitted"
        assert approved_batch.provider_id == "ach_stub"
        assert approved_batch.provider_batch_id == outcome.provider_batch_id
        changed = [e for e in events if isinstance(e, BatchStatusChanged)]
        assert (changed[-1].from_status, changed[-1].to_status) == ("approved", "submitted")

    def test_entries_are_submitted(self, submitted_batch):
        for entry in submitted_batch.entries:
            assert entry.status == "submitted"
            assert entry.trace_number is not None
            assert entry.provider_entry_id.startswith(submitted_batch.provider_batch_id)

    def test_nacha_file_is_stored(self, gateway, submitted_batch):
        nacha = gateway.generate_nacha_file(submitted_batch)

        assert submitted_batch.nacha_content == nacha.content
        assert submitted_batch.nacha_content_hash == nacha.content_hash
        assert submitted_batch.nacha_entry_hash == nacha.entry_hash

    def test_cannot_submit_twice(self, gateway, provider, submitted_batch):
        with pytest.raises(PreconditionError):
            gateway.submit_to_provider(submitted_batch.id)

        assert provider.submit_calls == 1


class TestRetries:
    """Transport failures are retried with exponential backoff."""

    def test_recovers_within_retry_budget(self, gateway, provider, draft_batch, sleeps):
        provider.simulate_transport_failures(2)

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is True
        assert sleeps == [1.0, 2.0]
        assert provider.submit_calls == 3
        assert draft_batch.submission_attempts == 3

    def test_exhausted_retries(self, gateway, provider, draft_batch, sleeps):
        provider.simulate_transport_failures(3)

        with pytest.raises(ProviderError) as exc_info:
            gateway.submit_to_provider(draft_batch.id)

        assert exc_info.value.retryable is True
        assert sleeps == [1.0, 2.0]
        assert draft_batch.submission_status == "failed"
        assert draft_batch.status == "draft"

    def test_resubmit_after_transport_failure(self, gateway, provider, draft_batch):
        provider.simulate_transport_failures(3)
        with pytest.raises(ProviderError):
            gateway.submit_to_provider(draft_batch.id)

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is True
        assert draft_batch.submission_status == "submitted"


class TestTimeouts:
    """A timeout leaves the outcome pending until reconciled."""

    def test_timeout_marks_pending(self, gateway, provider, draft_batch, sleeps):
        provider.simulate_timeout(accepted=True)

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is False
        assert outcome.submission_status == "pending"
        assert draft_batch.status == "draft"
        assert sleeps == []

    def test_pending_blocks_resubmission(self, gateway, provider, draft_batch):
        provider.simulate_timeout(accepted=True)
        gateway.submit_to_provider(draft_batch.id)

        with pytest.raises(PreconditionError):
            gateway.submit_to_provider(draft_batch.id)

        assert provider.submit_calls == 1

    def test_reconcile_finds_accepted_batch(self, gateway, provider, draft_batch):
        provider.simulate_timeout(accepted=True)
        gateway.submit_to_provider(draft_batch.id)

        batch = gateway.reconcile(draft_batch.id)

        assert batch.submission_status == "submitted"
        assert batch.status == "submitted"
        assert batch.provider_batch_id.startswith("ACHSTUB-")
        assert all(e.status == "submitted" for e in batch.entries)

    def test_reconcile_unknown_allows_resubmission(self, gateway, provider, draft_batch):
        provider.simulate_timeout(accepted=False)
        gateway.submit_to_provider(draft_batch.id)

        batch = gateway.reconcile(draft_batch.id)

        assert batch.submission_status == "failed"
        assert batch.status == "draft"
        assert gateway.submit_to_provider(draft_batch.id).success is True

    def test_nothing_to_reconcile(self, gateway, draft_batch):
        with pytest.raises(InvalidStateError):
            gateway.reconcile(draft_batch.id)


class TestRejections:
    def test_entry_rejection_fails_whole_batch(self, gateway, provider, draft_batch):
        provider.simulate_rejection(str(_debit(draft_batch).id), "account closed")

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is False
        assert draft_batch.status == "failed"
        assert draft_batch.submission_status == "failed"
        assert {e.status for e in draft_batch.entries} == {"failed"}

    def test_partial_acceptance(
        self, session, evaluator, engine_config, emitter, clock, company_settings, draft_batch, company_id
    ):
        provider = AchStubProvider(partial_acceptance=True)
        gateway = SubmissionGateway(
            session,
            {"ach_stub": provider},
            evaluator=evaluator,
            config=engine_config,
            emitter=emitter,
            clock=clock,
            sleep=lambda seconds: None,
        )
        company_settings.upsert(company_id, allow_partial_acceptance=True)
        debit = _debit(draft_batch)
        provider.simulate_rejection(str(debit.id), "account closed")

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is True
        assert outcome.rejected_entries == {str(debit.id): "account closed"}
        assert debit.status == "failed"
        assert debit.failure_reason == "account closed"
        assert _credit(draft_batch).status == "submitted"
        assert draft_batch.status == "submitted"

    def test_partial_acceptance_needs_company_opt_in(
        self, session, evaluator, engine_config, emitter, clock, draft_batch
    ):
        provider = AchStubProvider(partial_acceptance=True)
        gateway = SubmissionGateway(
            session, {"ach_stub": provider}, evaluator=evaluator, config=engine_config,
            emitter=emitter, clock=clock,
        )
        provider.simulate_rejection(str(_debit(draft_batch).id))

        assert gateway.submit_to_provider(draft_batch.id).success is False
        assert draft_batch.status == "failed"

    @pytest.mark.parametrize(
        "provider_partial, company_partial",
        [(False, True), (True, False), (False, False)],
    )
    def test_partial_response_fails_without_both_opt_ins(
        self,
        session,
        evaluator,
        engine_config,
        emitter,
        clock,
        company_settings,
        draft_batch,
        company_id,
        provider_partial,
        company_partial,
    ):
        debit = _debit(draft_batch)
        provider = AlwaysPartialProvider(str(debit.id), partial_acceptance=provider_partial)
        gateway = SubmissionGateway(
            session, {"ach_stub": provider}, evaluator=evaluator, config=engine_config,
            emitter=emitter, clock=clock,
        )
        company_settings.upsert(company_id, allow_partial_acceptance=company_partial)

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is False
        assert outcome.errors == (f"entry {debit.id}: account closed",)
        assert draft_batch.status == "failed"
        assert draft_batch.submission_status == "failed"
        assert {e.status for e in draft_batch.entries} == {"failed"}

    def test_batch_rejection(self, gateway, provider, draft_batch):
        provider.simulate_batch_rejection("file rejected")

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.errors == ("file rejected",)
        assert draft_batch.last_submission_error == "file rejected"
        assert draft_batch.completed_at is not None


class TestProviderUpdates:
    """Status moves reported by the provider."""

    def test_completed(self, completed_batch):
        assert completed_batch.status == "completed"
        assert {e.status for e in completed_batch.entries} == {"completed"}

    def test_never_moves_backwards(self, gateway, completed_batch):
        gateway.apply_provider_update(completed_batch.id, "processing")

        assert completed_batch.status == "completed"

    def test_entry_failure_update(self, gateway, submitted_batch):
        credit = _credit(submitted_batch)

        gateway.apply_provider_update(
            submitted_batch.id,
            "processing",
            [EntryUpdate(entry_id=str(credit.id), status="failed", reason="account frozen")],
        )

        assert submitted_batch.status == "processing"
        assert credit.status == "failed"
        assert credit.failure_reason == "account frozen"
        assert _debit(submitted_batch).status == "processing"

    def test_unknown_entry_is_ignored(self, gateway, submitted_batch):
        gateway.apply_provider_update(
            submitted_batch.id, "processing", [EntryUpdate(entry_id=str(uuid4()), status="failed")]
        )

        assert submitted_batch.status == "processing"

    def test_requires_submission(self, gateway, draft_batch):
        with pytest.raises(InvalidStateError):
            gateway.apply_provider_update(draft_batch.id, "completed")

    def test_return_through_reconcile(self, gateway, provider, submitted_batch):
        credit = _credit(submitted_batch)
        provider.simulate_return(submitted_batch.idempotency_key, str(credit.id), "R01")

        gateway.reconcile(submitted_batch.id)

        assert credit.status == "returned"
        assert credit.return_code == "R01"
        assert credit.nsf_fee == Decimal("25.00")


class TestVoid:
    """Entry-level voids."""

    def test_void_submitted_entry(self, gateway, submitted_batch, events):
        credit = _credit(submitted_batch)

        entry = gateway.void_payment(credit.id, "employee terminated", actor="alice")

        assert entry.status == "voided"
        assert entry.void_reason == "employee terminated"
        assert entry.voided_by == "alice"
        assert isinstance(events[-1], EntryStatusChanged)
        assert events[-1].to_status == "voided"
        # Aggregates are not recomputed after submission
        assert submitted_batch.total_amount == Decimal("1200.00")
        assert submitted_batch.status == "submitted"

    def test_void_pending_entry(self, gateway, draft_batch):
        assert gateway.void_payment(_credit(draft_batch).id, "duplicate").status == "voided"

    def test_completed_entry_cannot_be_voided(self, gateway, completed_batch):
        with pytest.raises(InvalidStateError):
            gateway.void_payment(_credit(completed_batch).id, "too late")

        assert _credit(completed_batch).status == "completed"

    def test_reason_required(self, gateway, submitted_batch):
        with pytest.raises(ValidationError):
            gateway.void_payment(_credit(submitted_batch).id, "")

    def test_unknown_entry(self, gateway):
        with pytest.raises(NotFoundError):
            gateway.void_payment(uuid4(), "gone")

    def test_voided_entry_leaves_the_file(self, gateway, draft_batch):
        gateway.void_payment(_debit(draft_batch).id, "order lifted")

        outcome = gateway.submit_to_provider(draft_batch.id)

        assert outcome.success is True
        assert _debit(draft_batch).status == "voided"
        assert "order lifted" not in draft_batch.nacha_content
        assert gateway.generate_nacha_file(draft_batch).entry_count == 1


class TestReturns:
    """ACH returns against settled or in-flight entries."""

    def test_nsf_return_gets_default_fee(self, gateway, completed_batch):
        entry = gateway.process_return(_credit(completed_batch).id, "R01", "Insufficient Funds")

        assert entry.status == "returned"
        assert entry.return_reason == "Insufficient Funds"
        assert entry.nsf_fee == Decimal("25.00")
        assert entry.returned_at is not None
        assert completed_batch.total_amount == Decimal("1200.00")

    def test_non_nsf_return_has_no_fee(self, gateway, completed_batch):
        assert gateway.process_return(_credit(completed_batch).id, "R02").nsf_fee is None

    def test_explicit_fee(self, gateway, submitted_batch):
        entry = gateway.process_return(_credit(submitted_batch).id, "R09", nsf_fee=Decimal("30.00"))

        assert entry.nsf_fee == Decimal("30.00")

    def test_invalid_code(self, gateway, submitted_batch):
        with pytest.raises(ValidationError):
            gateway.process_return(_credit(submitted_batch).id, "X1")

    def test_voided_entry_cannot_be_returned(self, gateway, submitted_batch):
        credit = _credit(submitted_batch)
        gateway.void_payment(credit.id, "stop")

        with pytest.raises(InvalidStateError):
            gateway.process_return(credit.id, "R01")

        assert credit.status == "voided"
