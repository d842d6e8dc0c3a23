"""Risk control and risk event models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
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
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from halonet.exceptions import ImmutabilityError
from halonet.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class RiskControl(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Company-scoped standing rule.

    ``threshold_config`` and ``action_config`` are validated against the
    typed variants in ``halonet.risk_rules`` before they are stored.
    """

    __tablename__ = "risk_control"

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    control_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    threshold_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    action_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    __table_args__ = (
        CheckConstraint(
            """control_type IN ('amount_threshold', 'velocity_check',
                'account_validation', 'time_restriction')""",
            name="risk_control_type_ck",
        ),
        CheckConstraint(
            "action_type IN ('require_approval', 'block', 'flag', 'delay')",
            name="risk_control_action_ck",
        ),
        Index("risk_control_by_company", "company_id", "is_active", "priority"),
    )


class RiskEvent(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Immutable record of a control firing.

    Only status and resolution fields may change after insert.
    """

    __tablename__ = "risk_event"

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    batch_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_batch.id", ondelete="SET NULL"), nullable=True
    )
    entry_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_entry.id", ondelete="SET NULL"), nullable=True
    )
    control_id: Mapped[UUID] = mapped_column(
        ForeignKey("risk_control.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_factors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    action_taken: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="risk_event_severity_ck",
        ),
        CheckConstraint(
            "risk_score >= 0 AND risk_score <= 100",
            name="risk_event_score_ck",
        ),
        CheckConstraint(
            "status IN ('active', 'resolved', 'false_positive', 'suppressed')",
            name="risk_event_status_ck",
        ),
        Index("risk_event_by_company", "company_id", "status", "created_at"),
    )


IMMUTABLE_RISK_EVENT_FIELDS = ("event_type", "risk_score", "risk_factors", "control_id")


@event.listens_for(RiskEvent, "before_update")
def _reject_detection_field_changes(mapper: Any, connection: Any, target: RiskEvent) -> None:
    state = inspect(target)
    for name in IMMUTABLE_RISK_EVENT_FIELDS:
        if state.attrs[name].history.has_changes():
            raise ImmutabilityError(
                f"RiskEvent.{name} is immutable once recorded",
                field=name,
                event_id=str(target.id),
            )
