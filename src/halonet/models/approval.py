"""Approval request models.

An approval request gates a batch behind N-of-M human sign-off. Each
approver decision is stored as an ApprovalAction row.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from halonet.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ApprovalRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Multi-party approval gate for a batch."""

    __tablename__ = "approval_request"

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_batch.id", ondelete="CASCADE"),
        nullable=False,
    )
    request_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="batch_submission"
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    required_approvers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    approval_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    requires_2fa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "request_type IN ('batch_submission', 'void_payment', 'emergency_release')",
            name="approval_request_type_ck",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired')",
            name="approval_request_status_ck",
        ),
        CheckConstraint("approval_threshold >= 1", name="approval_request_threshold_ck"),
        CheckConstraint("approved_count >= 0", name="approval_request_count_ck"),
        Index("approval_request_by_batch", "batch_id", "status"),
        Index("approval_request_by_company", "company_id", "status"),
    )

    actions: Mapped[list[ApprovalAction]] = relationship(
        back_populates="request",
        order_by="ApprovalAction.created_at",
        cascade="all, delete-orphan",
    )

    def has_acted(self, approver: str) -> bool:
        """Whether this approver already recorded a decision."""
        return any(a.approver == approver for a in self.actions)


class ApprovalAction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One approver's decision on a request."""

    __tablename__ = "approval_action"

    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_request.id", ondelete="CASCADE"),
        nullable=False,
    )
    approver: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    two_factor_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(
            "decision IN ('approved', 'rejected')",
            name="approval_action_decision_ck",
        ),
        UniqueConstraint("request_id", "approver", name="approval_action_once_per_approver"),
    )

    request: Mapped[ApprovalRequest] = relationship(back_populates="actions")
