"""Domain event types for batch orchestration.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Scoped to a company via metadata, so dashboards can subscribe per company
- Serializable for notification sinks and webhooks
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    BATCH = "batch"
    ENTRY = "entry"
    APPROVAL = "approval"
    RISK = "risk"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    company_id: UUID
    actor: str | None  # User or system that triggered
    source_service: str  # Service that emitted
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        company_id: UUID,
        actor: str | None = None,
        source_service: str = "halonet",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            company_id=company_id,
            actor=actor,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    @property
    def company_id(self) -> UUID:
        return self.metadata.company_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        data["category"] = self.category
        return _serialize_dict(data)

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, date):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Batch Events
# =============================================================================


@dataclass(frozen=True)
class BatchCreated(DomainEvent):
    """A draft batch was built."""

    batch_id: UUID
    batch_number: str
    batch_type: str
    total_amount: Decimal
    total_count: int
    requires_approval: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.BATCH


@dataclass(frozen=True)
class BatchStatusChanged(DomainEvent):
    """Batch lifecycle or submission status moved."""

    batch_id: UUID
    from_status: str
    to_status: str
    submission_status: str
    reason: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.BATCH


# =============================================================================
# Entry Events
# =============================================================================


@dataclass(frozen=True)
class EntryStatusChanged(DomainEvent):
    """A single entry moved independently of its batch."""

    batch_id: UUID
    entry_id: UUID
    from_status: str
    to_status: str
    reason: str | None = None
    return_code: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.ENTRY


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class ApprovalRequested(DomainEvent):
    """A batch was put behind an approval gate."""

    request_id: UUID
    batch_id: UUID
    required_approvers: tuple[str, ...]
    approval_threshold: int
    expires_at: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalDecided(DomainEvent):
    """An approver acted on a request."""

    request_id: UUID
    batch_id: UUID
    approver: str
    decision: str
    approved_count: int
    request_status: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


# =============================================================================
# Risk Events
# =============================================================================


@dataclass(frozen=True)
class RiskEventRecorded(DomainEvent):
    """A risk control fired."""

    risk_event_id: UUID
    control_id: UUID
    batch_id: UUID | None
    event_type_name: str
    severity: str
    risk_score: int
    action_taken: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RISK


@dataclass(frozen=True)
class RiskEventResolved(DomainEvent):
    """An operator resolved a risk event."""

    risk_event_id: UUID
    resolution_status: str
    resolved_by: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RISK


EVENT_TYPES: dict[str, type[DomainEvent]] = {
    cls.__name__: cls
    for cls in (
        BatchCreated,
        BatchStatusChanged,
        EntryStatusChanged,
        ApprovalRequested,
        ApprovalDecided,
        RiskEventRecorded,
        RiskEventResolved,
    )
}
