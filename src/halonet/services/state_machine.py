"""Batch, entry and approval state machines with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from halonet.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from halonet.models import PaymentBatch


class BatchStatus(str, Enum):
    """Payment batch status values."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EntryStatus(str, Enum):
    """Payment entry status values."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    RETURNED = "returned"
    FAILED = "failed"
    VOIDED = "voided"


class ApprovalStatus(str, Enum):
    """Approval request status values."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class BatchApprovalStatus(str, Enum):
    """Approval state mirrored on the batch."""

    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SubmissionStatus(str, Enum):
    """Provider submission state of a batch."""

    NOT_SUBMITTED = "not_submitted"
    PENDING = "pending"
    SUBMITTED = "submitted"
    FAILED = "failed"


class BatchStateMachine:
    """State machine for payment batch status transitions.

    Statuses only move forward in the order
    draft < pending_approval < approved < submitted < processing
    < (completed | failed | cancelled).

    Allowed transitions:
    - draft → pending_approval | submitted | failed | cancelled
    - pending_approval → approved | cancelled
    - approved → submitted | failed | cancelled
    - submitted → processing | completed | failed
    - processing → completed | failed
    """

    ORDER: dict[str, int] = {
        BatchStatus.DRAFT: 0,
        BatchStatus.PENDING_APPROVAL: 1,
        BatchStatus.APPROVED: 2,
        BatchStatus.SUBMITTED: 3,
        BatchStatus.PROCESSING: 4,
        BatchStatus.COMPLETED: 5,
        BatchStatus.FAILED: 5,
        BatchStatus.CANCELLED: 5,
    }

    VALID_TRANSITIONS: dict[str, list[str]] = {
        BatchStatus.DRAFT: [
            BatchStatus.PENDING_APPROVAL,
            BatchStatus.SUBMITTED,
            BatchStatus.FAILED,
            BatchStatus.CANCELLED,
        ],
        BatchStatus.PENDING_APPROVAL: [BatchStatus.APPROVED, BatchStatus.CANCELLED],
        BatchStatus.APPROVED: [
            BatchStatus.SUBMITTED,
            BatchStatus.FAILED,
            BatchStatus.CANCELLED,
        ],
        BatchStatus.SUBMITTED: [
            BatchStatus.PROCESSING,
            BatchStatus.COMPLETED,
            BatchStatus.FAILED,
        ],
        BatchStatus.PROCESSING: [BatchStatus.COMPLETED, BatchStatus.FAILED],
        BatchStatus.COMPLETED: [],
        BatchStatus.FAILED: [],
        BatchStatus.CANCELLED: [],
    }

    # Entries may be added or removed only here
    ENTRIES_MUTABLE = {BatchStatus.DRAFT}

    # Statuses from which a submission may be attempted
    SUBMITTABLE = {BatchStatus.DRAFT, BatchStatus.APPROVED}

    TERMINAL = {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_modify_entries(cls, status: str) -> bool:
        """Check if entries can be added or removed."""
        return status in cls.ENTRIES_MUTABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def rank(cls, status: str) -> int:
        """Position of a status in the forward ordering."""
        return cls.ORDER[status]

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_batch_for_transition(
        cls, batch: PaymentBatch, to_status: str
    ) -> list[str]:
        """Validate a batch for a specific transition, returning any errors.

        Returns list of error messages (empty if valid).
        """
        errors: list[str] = []
        from_status = batch.status

        if not cls.can_transition(from_status, to_status):
            errors.append(f"Cannot transition from '{from_status}' to '{to_status}'")
            return errors

        if to_status == BatchStatus.SUBMITTED:
            if batch.requires_approval and batch.approval_status != BatchApprovalStatus.APPROVED:
                errors.append(
                    f"Batch requires approval (approval_status={batch.approval_status})"
                )
            if batch.total_count == 0:
                errors.append("Batch has no entries")

        elif to_status == BatchStatus.APPROVED:
            if batch.approval_status != BatchApprovalStatus.APPROVED:
                errors.append("Approval request has not been granted")

        return errors

    @classmethod
    def transition(cls, batch: PaymentBatch, to_status: str) -> str:
        """Apply a validated transition to a batch, returning the old status."""
        errors = cls.validate_batch_for_transition(batch, to_status)
        if errors:
            raise InvalidTransitionError(batch.status, to_status, "; ".join(errors))
        previous = batch.status
        batch.status = BatchStatus(to_status).value
        return previous


class EntryStateMachine:
    """State machine for payment entry status transitions.

    Entries move forward independently of their siblings once submitted.
    ``voided`` is an explicit override available from pending, submitted
    and processing only.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        EntryStatus.PENDING: [
            EntryStatus.SUBMITTED,
            EntryStatus.FAILED,
            EntryStatus.VOIDED,
        ],
        EntryStatus.SUBMITTED: [
            EntryStatus.PROCESSING,
            EntryStatus.COMPLETED,
            EntryStatus.RETURNED,
            EntryStatus.FAILED,
            EntryStatus.VOIDED,
        ],
        EntryStatus.PROCESSING: [
            EntryStatus.COMPLETED,
            EntryStatus.RETURNED,
            EntryStatus.FAILED,
            EntryStatus.VOIDED,
        ],
        EntryStatus.COMPLETED: [EntryStatus.RETURNED],
        EntryStatus.RETURNED: [],
        EntryStatus.FAILED: [],
        EntryStatus.VOIDED: [],
    }

    VOIDABLE = {EntryStatus.PENDING, EntryStatus.SUBMITTED, EntryStatus.PROCESSING}

    TERMINAL = {
        EntryStatus.COMPLETED,
        EntryStatus.RETURNED,
        EntryStatus.FAILED,
        EntryStatus.VOIDED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_void(cls, status: str) -> bool:
        return status in cls.VOIDABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL


class ApprovalStateMachine:
    """State machine for approval requests: pending → approved | rejected | expired."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ApprovalStatus.PENDING: [
            ApprovalStatus.APPROVED,
            ApprovalStatus.REJECTED,
            ApprovalStatus.EXPIRED,
        ],
        ApprovalStatus.APPROVED: [],
        ApprovalStatus.REJECTED: [],
        ApprovalStatus.EXPIRED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status != ApprovalStatus.PENDING
