"""NACHA file generation.

Builds a single-batch PPD file from a payment batch. Generation is pure:
every field is derived from stored batch state and the originator
configuration, never from the clock, so the same batch always yields the
same bytes and the same hash.

Record layout (94 characters each):
    1  File Header
    5  Batch Header
    6  Entry Detail (one per entry)
    8  Batch Control
    9  File Control, then '9' filler records up to a multiple of 10 lines
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from halonet.engine_config import NachaConfig
from halonet.exceptions import ValidationError
from halonet.models import PaymentBatch, PaymentEntry, ensure_utc

RECORD_SIZE = 94
BLOCKING_FACTOR = 10

TRANSACTION_CODES: dict[tuple[str, str], str] = {
    ("checking", "credit"): "22",
    ("checking", "debit"): "27",
    ("savings", "credit"): "32",
    ("savings", "debit"): "37",
}

ENTRY_DESCRIPTIONS: dict[str, str] = {
    "payroll": "PAYROLL",
    "garnishment": "GARNISH",
    "bonus": "BONUS",
    "correction": "CORRECTION",
}

# Entries in these states are not sent to the rail
EXCLUDED_STATUSES = frozenset({"voided", "failed"})

_UNSAFE = re.compile(r"[^A-Z0-9 .,&'/\-]")


@dataclass(frozen=True)
class NachaFile:
    """Generated file plus its integrity values."""

    content: str
    content_hash: str
    entry_hash: str
    entry_count: int
    total_debit: Decimal
    total_credit: Decimal


def _alpha(value: str | None, width: int) -> str:
    text = _UNSAFE.sub(" ", (value or "").upper())
    return text[:width].ljust(width)


def _numeric(value: int, width: int) -> str:
    return str(value).rjust(width, "0")[-width:]


def _cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def trace_number(config: NachaConfig, entry: PaymentEntry) -> str:
    """15 digit trace number: ODFI routing prefix + entry sequence."""
    return f"{config.odfi_routing[:8]}{_numeric(entry.sequence, 7)}"


def compute_entry_hash(routing_numbers: Iterable[str]) -> str:
    """Sum of the 8-digit RDFI identifiers, keeping the low 10 digits."""
    total = sum(int(rn[:8]) for rn in routing_numbers)
    return _numeric(total % 10**10, 10)


def service_class_code(has_credits: bool, has_debits: bool) -> str:
    if has_credits and has_debits:
        return "200"
    if has_debits:
        return "225"
    return "220"


def transmittable_entries(batch: PaymentBatch) -> list[PaymentEntry]:
    """Entries that belong in the file, in batch order."""
    return [
        e
        for e in sorted(batch.entries, key=lambda e: e.sequence)
        if e.status not in EXCLUDED_STATUSES
    ]


def generate_nacha_file(batch: PaymentBatch, config: NachaConfig) -> NachaFile:
    """Render a batch as a NACHA file.

    Deterministic for a given batch state and config.
    """
    entries = transmittable_entries(batch)
    created = ensure_utc(batch.created_at)
    if created is None:
        # File creation date and time come from the persisted batch
        raise ValidationError(f"Batch {batch.batch_number} has not been saved yet")

    credits = [e for e in entries if e.transaction_type == "credit"]
    debits = [e for e in entries if e.transaction_type == "debit"]
    total_credit = sum((e.amount for e in credits), Decimal("0"))
    total_debit = sum((e.amount for e in debits), Decimal("0"))
    scc = service_class_code(bool(credits), bool(debits))
    entry_hash = compute_entry_hash(e.routing_number for e in entries)
    odfi = config.odfi_routing[:8]
    batch_seq = _numeric(1, 7)

    lines: list[str] = []

    lines.append(
        "1"
        + "01"
        + " " + config.immediate_destination
        + config.immediate_origin.rjust(10)
        + created.strftime("%y%m%d")
        + created.strftime("%H%M")
        + "A"
        + "094"
        + "10"
        + "1"
        + _alpha(config.destination_name, 23)
        + _alpha(config.origin_name, 23)
        + _alpha(batch.batch_number[-8:], 8)
    )

    lines.append(
        "5"
        + scc
        + _alpha(config.company_name, 16)
        + _alpha(batch.batch_number, 20)
        + config.company_identification.rjust(10)
        + "PPD"
        + _alpha(ENTRY_DESCRIPTIONS.get(batch.batch_type, batch.batch_type), 10)
        + batch.effective_date.strftime("%y%m%d")
        + batch.effective_date.strftime("%y%m%d")
        + "   "
        + "1"
        + odfi
        + batch_seq
    )

    for entry in entries:
        code = TRANSACTION_CODES[(entry.account_type, entry.transaction_type)]
        lines.append(
            "6"
            + code
            + entry.routing_number[:8]
            + entry.routing_number[8]
            + entry.account_number[:17].ljust(17)
            + _numeric(_cents(entry.amount), 10)
            + _alpha(entry.employee_id or str(entry.sequence), 15)
            + _alpha(entry.recipient_name, 22)
            + "  "
            + "0"
            + trace_number(config, entry)
        )

    lines.append(
        "8"
        + scc
        + _numeric(len(entries), 6)
        + entry_hash
        + _numeric(_cents(total_debit), 12)
        + _numeric(_cents(total_credit), 12)
        + config.company_identification.rjust(10)
        + " " * 19
        + " " * 6
        + odfi
        + batch_seq
    )

    record_count = len(lines) + 1
    block_count = -(-record_count // BLOCKING_FACTOR)
    lines.append(
        "9"
        + _numeric(1, 6)
        + _numeric(block_count, 6)
        + _numeric(len(entries), 8)
        + entry_hash
        + _numeric(_cents(total_debit), 12)
        + _numeric(_cents(total_credit), 12)
        + " " * 39
    )

    while len(lines) % BLOCKING_FACTOR:
        lines.append("9" * RECORD_SIZE)

    for line in lines:
        if len(line) != RECORD_SIZE:
            raise ValueError(f"NACHA record has {len(line)} characters: {line[:1]!r}")

    content = "\n".join(lines) + "\n"
    return NachaFile(
        content=content,
        content_hash=hashlib.sha256(content.encode("ascii")).hexdigest(),
        entry_hash=entry_hash,
        entry_count=len(entries),
        total_debit=total_debit,
        total_credit=total_credit,
    )
