"""Company-level payment settings and webhook registrations."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import JSON, Boolean, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from halonet.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CompanyPaymentSettings(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Per-company approval and disbursement policy.

    ``default_approver`` is the explicit fallback assignee used when no
    approver list is configured.
    """

    __tablename__ = "company_payment_settings"

    company_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    approvers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    approval_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires_2fa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_ttl_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    default_approver: Mapped[str | None] = mapped_column(String(255), nullable=True)
    garnishment_policy: Mapped[str] = mapped_column(
        String(16), nullable=False, default="priority"
    )
    allow_partial_acceptance: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    __table_args__ = (
        CheckConstraint(
            "garnishment_policy IN ('priority', 'pro_rata')",
            name="company_payment_settings_policy_ck",
        ),
    )


class WebhookRegistration(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Endpoint registered by a company for provider status callbacks."""

    __tablename__ = "webhook_registration"

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    event_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("webhook_registration_by_company", "company_id", "is_active"),)
