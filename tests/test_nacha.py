"""Tests for NACHA file generation."""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from halonet.engine_config import NachaConfig
from halonet.exceptions import ValidationError
from halonet.models import PaymentBatch, PaymentEntry
from halonet.nacha import (
    BLOCKING_FACTOR,
    RECORD_SIZE,
    compute_entry_hash,
    generate_nacha_file,
    service_class_code,
    trace_number,
)

from .conftest import ROUTING_A, ROUTING_B, ROUTING_C


def _entry(sequence, amount, transaction_type="credit", routing=ROUTING_A, **kwargs):
    values = dict(
        id=uuid4(),
        sequence=sequence,
        recipient_name=kwargs.pop("recipient_name", f"Employee {sequence}"),
        routing_number=routing,
        account_number="123456789",
        account_type="checking",
        amount=Decimal(amount),
        currency="USD",
        transaction_type=transaction_type,
        payment_type="salary",
        status="pending",
    )
    values.update(kwargs)
    return PaymentEntry(**values)


def _batch(entries) -> PaymentBatch:
    batch = PaymentBatch(
        id=uuid4(),
        company_id=uuid4(),
        batch_number="B-20260304-0001",
        batch_type="payroll",
        effective_date=date(2026, 3, 5),
        created_at=datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc),
    )
    batch.entries = list(entries)
    return batch


class TestNachaLayout:
    """Record structure of generated files."""

    def test_every_record_is_94_characters(self):
        nacha = generate_nacha_file(
            _batch([_entry(1, "1000.00"), _entry(2, "200.00", "debit", ROUTING_B)]),
            NachaConfig(),
        )

        lines = nacha.content.splitlines()
        assert all(len(line) == RECORD_SIZE for line in lines)

    def test_record_order_and_blocking(self):
        nacha = generate_nacha_file(
            _batch([_entry(1, "1000.00"), _entry(2, "200.00", "debit", ROUTING_B)]),
            NachaConfig(),
        )

        lines = nacha.content.splitlines()
        assert [line[0] for line in lines[:6]] == ["1", "5", "6", "6", "8", "9"]
        # Padded with all-nines filler to a full block
        assert len(lines) % BLOCKING_FACTOR == 0
        assert all(line == "9" * RECORD_SIZE for line in lines[6:])

    def test_entry_detail_fields(self):
        nacha = generate_nacha_file(_batch([_entry(1, "1234.56")]), NachaConfig())

        detail = nacha.content.splitlines()[2]
        assert detail[1:3] == "22"  # checking credit
        assert detail[3:12] == ROUTING_A
        assert detail[29:39] == "0000123456"
        assert detail[79:94] == trace_number(NachaConfig(), _entry(1, "1.00"))

    def test_savings_debit_transaction_code(self):
        nacha = generate_nacha_file(
            _batch([_entry(1, "10.00", "debit", account_type="savings")]), NachaConfig()
        )

        assert nacha.content.splitlines()[2][1:3] == "37"

    def test_control_totals(self):
        nacha = generate_nacha_file(
            _batch([
                _entry(1, "1000.00"),
                _entry(2, "200.00", "debit", ROUTING_B),
                _entry(3, "50.25", routing=ROUTING_C),
            ]),
            NachaConfig(),
        )

        assert nacha.entry_count == 3
        assert nacha.total_credit == Decimal("1050.25")
        assert nacha.total_debit == Decimal("200.00")
        control = nacha.content.splitlines()[5]
        assert control[0] == "8"
        assert control[4:10] == "000003"
        assert control[20:32] == "000000020000"
        assert control[32:44] == "000000105025"


class TestEntryHash:
    def test_sums_first_eight_digits(self):
        # 09100001 + 02100002
        assert compute_entry_hash([ROUTING_A, ROUTING_B]) == "0011200003"

    def test_keeps_low_ten_digits(self):
        assert compute_entry_hash(["999999990"] * 200) == "9999999800"

    def test_service_class_codes(self):
        assert service_class_code(True, True) == "200"
        assert service_class_code(True, False) == "220"
        assert service_class_code(False, True) == "225"


class TestDeterminism:
    def test_same_batch_same_bytes(self):
        batch = _batch([_entry(1, "1000.00"), _entry(2, "200.00", "debit", ROUTING_B)])

        first = generate_nacha_file(batch, NachaConfig())
        second = generate_nacha_file(batch, NachaConfig())

        assert first.content == second.content
        assert first.content_hash == second.content_hash

    def test_voided_and_failed_entries_are_excluded(self):
        batch = _batch([
            _entry(1, "1000.00"),
            _entry(2, "300.00", status="voided"),
            _entry(3, "400.00", status="failed"),
        ])

        nacha = generate_nacha_file(batch, NachaConfig())

        assert nacha.entry_count == 1
        assert nacha.total_credit == Decimal("1000.00")

    def test_unsaved_batch_is_refused(self):
        batch = _batch([_entry(1, "1000.00")])
        batch.created_at = None

        with pytest.raises(ValidationError, match="has not been saved"):
            generate_nacha_file(batch, NachaConfig())

    def test_unsafe_characters_are_blanked(self):
        nacha = generate_nacha_file(
            _batch([_entry(1, "10.00", recipient_name="José <O'Neil>")]), NachaConfig()
        )

        name = nacha.content.splitlines()[2][54:76]
        assert name.rstrip() == "JOS   O'NEIL"
        nacha.content.encode("ascii")

    def test_originator_config_changes_the_hash(self):
        batch = _batch([_entry(1, "10.00")])

        default = generate_nacha_file(batch, NachaConfig())
        custom = generate_nacha_file(batch, NachaConfig(company_name="ACME PAYROLL"))

        assert default.content_hash != custom.content_hash
