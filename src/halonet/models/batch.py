"""Payment batch and entry models.

A batch groups recipient-level entries for one company and one effective
date. Entries belong to exactly one batch.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from halonet.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

GARNISHMENT_PAYMENT_TYPES = frozenset({"garnishment", "child_support", "tax_levy"})


class PaymentBatch(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Unit of submission to a payment rail."""

    __tablename__ = "payment_batch"

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    batch_number: Mapped[str] = mapped_column(String(32), nullable=False)
    batch_type: Mapped[str] = mapped_column(String(20), nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    debit_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="not_required"
    )
    submission_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="not_submitted"
    )

    # Latest risk evaluation
    risk_action: Mapped[str | None] = mapped_column(String(10), nullable=True)
    risk_evaluated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    hold_until: Mapped[datetime | None] = mapped_column(nullable=True)

    # Provider linkage
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_batch_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confirmation_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    estimated_settlement_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    submission_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_submission_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # NACHA artifact
    nacha_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    nacha_content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    nacha_entry_hash: Mapped[str | None] = mapped_column(String(10), nullable=True)

    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "batch_type IN ('payroll', 'garnishment', 'bonus', 'correction')",
            name="payment_batch_type_ck",
        ),
        CheckConstraint(
            """status IN ('draft', 'pending_approval', 'approved', 'submitted',
                'processing', 'completed', 'failed', 'cancelled')""",
            name="payment_batch_status_ck",
        ),
        CheckConstraint(
            "approval_status IN ('not_required', 'pending', 'approved', 'rejected', 'expired')",
            name="payment_batch_approval_status_ck",
        ),
        CheckConstraint(
            "submission_status IN ('not_submitted', 'pending', 'submitted', 'failed')",
            name="payment_batch_submission_status_ck",
        ),
        CheckConstraint(
            "total_amount = credit_amount + debit_amount",
            name="payment_batch_totals_ck",
        ),
        UniqueConstraint("company_id", "batch_number", name="payment_batch_number_uq"),
        UniqueConstraint("idempotency_key", name="payment_batch_idempotency_uq"),
        Index("payment_batch_by_company", "company_id", "status"),
    )

    entries: Mapped[list[PaymentEntry]] = relationship(
        back_populates="batch",
        order_by="PaymentEntry.sequence",
        cascade="all, delete-orphan",
    )

    def recompute_totals(self) -> None:
        """Recompute aggregates from the constituent entries."""
        credit = sum(
            (e.amount for e in self.entries if e.transaction_type == "credit"),
            Decimal("0"),
        )
        debit = sum(
            (e.amount for e in self.entries if e.transaction_type == "debit"),
            Decimal("0"),
        )
        self.credit_amount = credit
        self.debit_amount = debit
        self.total_amount = credit + debit
        self.total_count = len(self.entries)


class PaymentEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Recipient-level payment instruction within a batch."""

    __tablename__ = "payment_entry"

    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_batch.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recipient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    routing_number: Mapped[str] = mapped_column(String(9), nullable=False)
    account_number: Mapped[str] = mapped_column(String(17), nullable=False)
    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="checking")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transaction_type: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    garnishment_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    court_order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    trace_number: Mapped[str | None] = mapped_column(String(15), nullable=True)
    provider_entry_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    return_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(nullable=True)
    nsf_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_entry_amount_positive_ck"),
        CheckConstraint(
            "transaction_type IN ('credit', 'debit')",
            name="payment_entry_transaction_type_ck",
        ),
        CheckConstraint(
            "payment_type IN ('salary', 'bonus', 'garnishment', 'child_support', 'tax_levy')",
            name="payment_entry_payment_type_ck",
        ),
        CheckConstraint(
            "account_type IN ('checking', 'savings')",
            name="payment_entry_account_type_ck",
        ),
        CheckConstraint(
            """status IN ('pending', 'submitted', 'processing', 'completed',
                'returned', 'failed', 'voided')""",
            name="payment_entry_status_ck",
        ),
        CheckConstraint(
            """payment_type NOT IN ('garnishment', 'child_support', 'tax_levy')
                OR garnishment_priority IS NOT NULL""",
            name="payment_entry_garnishment_priority_ck",
        ),
        UniqueConstraint("batch_id", "sequence", name="payment_entry_sequence_uq"),
        Index("payment_entry_by_batch", "batch_id", "status"),
    )

    batch: Mapped[PaymentBatch] = relationship(back_populates="entries")

    @property
    def masked_account_number(self) -> str:
        """Account number with all but the last four digits hidden."""
        return "****" + self.account_number[-4:]

    @property
    def is_garnishment(self) -> bool:
        return self.payment_type in GARNISHMENT_PAYMENT_TYPES
