"""Tests for batch creation, draft mutation and cancellation."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from halonet.events import BatchCreated, BatchStatusChanged
from halonet.exceptions import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from halonet.models import Base, PaymentBatch
from halonet.services import (
    BankAccount,
    BatchManager,
    CalculationLine,
    CalculationResult,
    GarnishmentInput,
)
from halonet.services.batch_manager import validate_entry

from .conftest import ROUTING_A, ROUTING_B, ROUTING_C, make_entry


def _garnishment(amount, priority, payment_type="garnishment", **kwargs) -> GarnishmentInput:
    return GarnishmentInput(
        payment_type=payment_type,
        amount=Decimal(amount),
        priority=priority,
        recipient_name=kwargs.get("recipient_name", f"Agency {priority}"),
        routing_number=kwargs.get("routing_number", ROUTING_B),
        account_number=kwargs.get("account_number", "55550000"),
        court_order_number=kwargs.get("court_order_number", f"CO-{priority}"),
    )


def _line(net_pay, garnishments=(), employee_id="E-1") -> CalculationLine:
    return CalculationLine(
        employee_id=employee_id,
        employee_name="Jane Doe",
        net_pay=Decimal(net_pay),
        bank_account=BankAccount(routing_number=ROUTING_A, account_number="123456789"),
        garnishments=tuple(garnishments),
    )


class TestCreateBatch:
    """Test draft batch creation."""

    def test_aggregates_match_entries(self, draft_batch):
        """$1,000 credit plus $200 debit totals $1,200."""
        assert draft_batch.total_amount == Decimal("1200.00")
        assert draft_batch.credit_amount == Decimal("1000.00")
        assert draft_batch.debit_amount == Decimal("200.00")
        assert draft_batch.total_count == 2

    def test_new_batch_is_draft(self, draft_batch, company_id):
        assert draft_batch.status == "draft"
        assert draft_batch.submission_status == "not_submitted"
        assert draft_batch.approval_status == "not_required"
        assert draft_batch.requires_approval is False
        assert draft_batch.idempotency_key == f"{company_id}:{draft_batch.id}"

    def test_entries_are_sequenced_from_one(self, manager, draft_batch):
        entries = manager.get_entries(draft_batch.id)

        assert [e.sequence for e in entries] == [1, 2]
        assert all(e.status == "pending" for e in entries)

    def test_batch_numbers_count_up_per_day(self, manager, company_id, effective_date, clock):
        first = manager.create_batch(company_id, "bonus", effective_date, [make_entry()])
        second = manager.create_batch(company_id, "bonus", effective_date, [make_entry()])

        prefix = f"B-{clock():%Y%m%d}-"
        assert first.batch_number == f"{prefix}0001"
        assert second.batch_number == f"{prefix}0002"

    def test_batch_numbers_are_per_company(self, manager, effective_date, clock):
        a = manager.create_batch(uuid4(), "bonus", effective_date, [make_entry()])
        b = manager.create_batch(uuid4(), "bonus", effective_date, [make_entry()])

        assert a.batch_number == b.batch_number

    def test_emits_batch_created(self, events, draft_batch):
        created = [e for e in events if isinstance(e, BatchCreated)]

        assert len(created) == 1
        assert created[0].batch_id == draft_batch.id
        assert created[0].total_amount == Decimal("1200.00")
        assert created[0].metadata.actor == "alice"

    def test_threshold_control_marks_batch_for_approval(self, gated_batch):
        assert gated_batch.requires_approval is True

    def test_unknown_batch_type(self, manager, company_id, effective_date):
        with pytest.raises(ValidationError):
            manager.create_batch(company_id, "refund", effective_date, [make_entry()])


class TestEntryValidation:
    """Test entry validation at batch creation."""

    def test_reports_every_invalid_index(self, manager, company_id, effective_date):
        entries = [
            make_entry("10.00"),
            make_entry("0.00"),
            make_entry("10.00", routing_number=ROUTING_C),
            make_entry("10.00", routing_number="091000018"),
        ]

        with pytest.raises(ValidationError) as exc_info:
            manager.create_batch(company_id, "payroll", effective_date, entries)

        assert exc_info.value.entry_indices == [1, 3]
        assert any("checksum" in e for e in exc_info.value.errors)

    def test_invalid_batch_is_not_persisted(self, manager, company_id, effective_date):
        with pytest.raises(ValidationError):
            manager.create_batch(company_id, "payroll", effective_date, [make_entry("-5.00")])

        assert manager.list_batches(company_id) == []

    def test_fractional_cents_rejected(self):
        assert validate_entry(make_entry("10.005")) == ["amount cannot have fractional cents"]

    def test_garnishment_requires_priority(self):
        errors = validate_entry(make_entry("10.00", "debit", payment_type="child_support"))

        assert errors == ["child_support entries require garnishment_priority"]

    def test_account_number_format(self):
        assert validate_entry(make_entry(account_number="12AB34")) == [
            "account number must be 4 to 17 digits"
        ]

    def test_only_usd(self):
        assert "only USD is supported" in validate_entry(make_entry(currency="EUR"))


class TestDraftMutation:
    """Test add/remove entry on drafts."""

    def test_add_entry_recomputes_totals(self, manager, draft_batch):
        row = manager.add_entry(draft_batch.id, make_entry("50.00", routing_number=ROUTING_C))

        assert row.sequence == 3
        assert draft_batch.total_amount == Decimal("1250.00")
        assert draft_batch.credit_amount == Decimal("1050.00")
        assert draft_batch.total_count == 3

    def test_remove_entry_recomputes_totals(self, manager, draft_batch):
        debit = next(e for e in draft_batch.entries if e.transaction_type == "debit")

        manager.remove_entry(draft_batch.id, debit.id)

        assert draft_batch.total_amount == Decimal("1000.00")
        assert draft_batch.debit_amount == Decimal("0.00")
        assert draft_batch.total_count == 1

    def test_sequence_continues_after_removal(self, manager, draft_batch):
        last = max(draft_batch.entries, key=lambda e: e.sequence)
        manager.remove_entry(draft_batch.id, last.id)

        row = manager.add_entry(draft_batch.id, make_entry("5.00"))

        assert row.sequence == 2

    def test_remove_unknown_entry(self, manager, draft_batch):
        with pytest.raises(NotFoundError):
            manager.remove_entry(draft_batch.id, uuid4())

    def test_invalid_entry_rejected(self, manager, draft_batch):
        with pytest.raises(ValidationError):
            manager.add_entry(draft_batch.id, make_entry("1.999"))
        assert draft_batch.total_count == 2

    def test_only_drafts_are_mutable(self, manager, workflow, gated_batch):
        workflow.request_approval(gated_batch.id, required_approvers=["bob"])

        with pytest.raises(InvalidStateError):
            manager.add_entry(gated_batch.id, make_entry("5.00"))
        with pytest.raises(InvalidStateError):
            manager.remove_entry(gated_batch.id, gated_batch.entries[0].id)
        assert gated_batch.total_count == 2

    def test_concurrent_add_entry_is_detected(self, tmp_path, clock, company_id, effective_date):
        """Two writers on one draft: the loser gets ConcurrencyError, nothing is lost."""
        engine = create_engine(f"sqlite:///{tmp_path / 'halonet.db'}")
        Base.metadata.create_all(engine)
        factory = sessionmaker(engine, expire_on_commit=False, autoflush=False)

        with factory() as setup:
            batch = BatchManager(setup, clock=clock).create_batch(
                company_id, "payroll", effective_date, [make_entry("100.00")]
            )

        with factory() as first, factory() as second:
            writer_a = BatchManager(first, clock=clock)
            writer_b = BatchManager(second, clock=clock)
            # Both writers load version 1 before either writes
            assert len(writer_a.get_batch(batch.id).entries) == 1
            assert len(writer_b.get_batch(batch.id).entries) == 1

            writer_a.add_entry(batch.id, make_entry("10.00"))
            with pytest.raises(ConcurrencyError):
                writer_b.add_entry(batch.id, make_entry("20.00"))

        with factory() as check:
            stored = check.get(PaymentBatch, batch.id)
            assert stored.total_count == 2
            assert len(stored.entries) == 2
            assert stored.total_amount == Decimal("110.00")
        engine.dispose()


class TestCreateFromCalculation:
    """Test batch creation from payroll calculation output."""

    def test_salary_only(self, manager, company_id, effective_date):
        calc = CalculationResult(lines=(_line("1500.00"),), pay_run_id="PR-7")

        batch = manager.create_batch_from_calculation_source(
            company_id, calc, effective_date=effective_date
        )

        assert batch.batch_type == "payroll"
        assert batch.total_amount == Decimal("1500.00")
        assert batch.entries[0].payment_type == "salary"
        assert batch.entries[0].employee_id == "E-1"
        assert batch.metadata_json == {
            "source": "calculation",
            "garnishment_policy": "priority",
            "pay_run_id": "PR-7",
        }

    def test_garnishments_come_first_in_priority_order(self, manager, company_id, effective_date):
        calc = CalculationResult(
            lines=(
                _line(
                    "1000.00",
                    [_garnishment("100.00", 2, "child_support"), _garnishment("150.00", 1, "tax_levy")],
                ),
            ),
        )

        batch = manager.create_batch_from_calculation_source(
            company_id, calc, effective_date=effective_date
        )

        entries = sorted(batch.entries, key=lambda e: e.sequence)
        assert [(e.payment_type, e.garnishment_priority, e.transaction_type) for e in entries] == [
            ("tax_levy", 1, "debit"),
            ("child_support", 2, "debit"),
            ("salary", None, "credit"),
        ]
        assert entries[2].amount == Decimal("750.00")
        assert batch.debit_amount == Decimal("250.00")

    def test_priority_policy_exhausts_higher_priority_first(
        self, manager, company_id, effective_date
    ):
        calc = CalculationResult(
            lines=(_line("1000.00", [_garnishment("300.00", 2), _garnishment("800.00", 1)]),),
        )

        batch = manager.create_batch_from_calculation_source(
            company_id, calc, effective_date=effective_date
        )

        amounts = [(e.garnishment_priority, e.amount) for e in batch.entries]
        # Nothing left for salary
        assert amounts == [(1, Decimal("800.00")), (2, Decimal("200.00"))]

    def test_pro_rata_policy_scales_every_order(
        self, manager, company_settings, company_id, effective_date
    ):
        company_settings.upsert(company_id, garnishment_policy="pro_rata")
        calc = CalculationResult(
            lines=(_line("100.00", [_garnishment("100.00", 1), _garnishment("50.00", 2)]),),
        )

        batch = manager.create_batch_from_calculation_source(
            company_id, calc, effective_date=effective_date
        )

        assert [e.amount for e in batch.entries] == [Decimal("66.67"), Decimal("33.33")]
        assert batch.metadata_json["garnishment_policy"] == "pro_rata"

    def test_effective_date_defaults_to_pay_date(self, manager, company_id, effective_date):
        calc = CalculationResult(lines=(_line("10.00"),), pay_date=effective_date)

        batch = manager.create_batch_from_calculation_source(company_id, calc)

        assert batch.effective_date == effective_date

    def test_requires_an_effective_date(self, manager, company_id):
        with pytest.raises(ValidationError):
            manager.create_batch_from_calculation_source(
                company_id, CalculationResult(lines=(_line("10.00"),))
            )

    def test_negative_net_pay(self, manager, company_id, effective_date):
        with pytest.raises(ValidationError):
            manager.create_batch_from_calculation_source(
                company_id,
                CalculationResult(lines=(_line("-1.00"),)),
                effective_date=effective_date,
            )

    @pytest.mark.parametrize("first", ["-50.00", "0.00"])
    def test_non_positive_order_is_refused(self, manager, session, company_id, effective_date, first):
        calc = CalculationResult(
            lines=(_line("100.00", [_garnishment(first, 1), _garnishment("150.00", 2)]),),
        )

        with pytest.raises(ValidationError, match="must be positive"):
            manager.create_batch_from_calculation_source(
                company_id, calc, effective_date=effective_date
            )

        assert session.scalars(select(PaymentBatch)).all() == []


class TestCancelBatch:
    """Test batch cancellation."""

    def test_cancel_draft(self, manager, draft_batch, events):
        batch = manager.cancel_batch(draft_batch.id, "duplicate run", actor="alice")

        assert batch.status == "cancelled"
        assert batch.cancel_reason == "duplicate run"
        changed = [e for e in events if isinstance(e, BatchStatusChanged)]
        assert changed[-1].from_status == "draft"
        assert changed[-1].to_status == "cancelled"

    def test_cancel_expires_pending_request(self, manager, workflow, gated_batch):
        request = workflow.request_approval(gated_batch.id, required_approvers=["bob"])

        manager.cancel_batch(gated_batch.id, "withdrawn")

        assert request.status == "expired"
        assert workflow.list_pending(gated_batch.company_id) == []

    def test_reason_required(self, manager, draft_batch):
        with pytest.raises(ValidationError):
            manager.cancel_batch(draft_batch.id, "")

    def test_cannot_cancel_twice(self, manager, draft_batch):
        manager.cancel_batch(draft_batch.id, "duplicate run")

        with pytest.raises(InvalidStateError):
            manager.cancel_batch(draft_batch.id, "again")

    def test_list_batches_by_status(self, manager, draft_batch, company_id, effective_date):
        other = manager.create_batch(company_id, "bonus", effective_date, [make_entry()])
        manager.cancel_batch(other.id, "mistake")

        assert [b.id for b in manager.list_batches(company_id, status="draft")] == [draft_batch.id]
        assert len(manager.list_batches(company_id)) == 2
