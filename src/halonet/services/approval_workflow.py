"""Approval workflow engine.

N-of-M approval for batches that require it:

    pending -> approved   (approved_count reaches approval_threshold)
    pending -> rejected   (any required approver rejects, with comments)
    pending -> expired    (expires_at passed; checked lazily on read/write)

Terminal request states are final. A rejected or expired request leaves
the batch in pending_approval; a new request must be raised for it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from halonet.engine_config import ApprovalConfig
from halonet.events import (
    ApprovalDecided,
    ApprovalRequested,
    BatchStatusChanged,
    EventEmitter,
    EventMetadata,
)
from halonet.exceptions import (
    AuthorizationError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    TwoFactorError,
    ValidationError,
)
from halonet.models import ApprovalAction, ApprovalRequest, PaymentBatch, ensure_utc, utcnow
from halonet.services.company_settings import get_company_settings
from halonet.services.state_machine import (
    ApprovalStateMachine,
    ApprovalStatus,
    BatchApprovalStatus,
    BatchStateMachine,
    BatchStatus,
)
from halonet.services.two_factor import TwoFactorVerifier
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("batch_submission", "void_payment", "emergency_release")

# Batch statuses that may be put behind an approval gate
REQUESTABLE_STATUSES = {BatchStatus.DRAFT, BatchStatus.PENDING_APPROVAL}


class ApprovalWorkflow:
    """Service for approval requests and approver decisions."""

    def __init__(
        self,
        db: Session,
        config: ApprovalConfig | None = None,
        verifier: TwoFactorVerifier | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or ApprovalConfig()
        self.verifier = verifier
        self.emitter = emitter or EventEmitter()
        self.clock = clock

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_approval(
        self,
        batch_id: UUID,
        reason: str | None = None,
        requested_by: str | None = None,
        required_approvers: Sequence[str] | None = None,
        approval_threshold: int | None = None,
        requires_2fa: bool | None = None,
        request_type: str = "batch_submission",
    ) -> ApprovalRequest:
        """Open an approval request for a batch.

        Unspecified approvers, threshold, 2FA flag and TTL come from the
        company's payment settings, then from the engine configuration.

        Raises:
            NotFoundError: unknown batch.
            InvalidStateError: batch is past approval, does not require it,
                or already has a live request.
            ValidationError: no approver could be resolved, or the threshold
                is outside 1..len(approvers).
        """
        if request_type not in REQUEST_TYPES:
            raise ValidationError(f"unknown request_type {request_type!r}")

        with self.emitter.batch(), unit_of_work(self.db):
            batch = self.db.get(PaymentBatch, batch_id)
            if batch is None:
                raise NotFoundError("PaymentBatch", batch_id)
            if batch.status not in REQUESTABLE_STATUSES:
                raise InvalidStateError(
                    f"Batch {batch.batch_number} is {batch.status}; approval can no longer be requested",
                    current_status=batch.status,
                )
            if not batch.requires_approval:
                raise InvalidStateError(
                    f"Batch {batch.batch_number} does not require approval",
                    current_status=batch.status,
                )

            for existing in self._pending_for_batch(batch.id):
                self._expire_if_due(existing, batch)
                if existing.status == ApprovalStatus.PENDING:
                    raise InvalidStateError(
                        f"Batch {batch.batch_number} already has pending request {existing.id}",
                        current_status=existing.status,
                    )

            settings = get_company_settings(self.db, batch.company_id)
            approvers = self._resolve_approvers(required_approvers, settings)
            threshold = approval_threshold
            if threshold is None and settings is not None:
                threshold = settings.approval_threshold
            if threshold is None:
                threshold = min(self.config.default_threshold, len(approvers))
            if threshold < 1 or threshold > len(approvers):
                raise ValidationError(
                    f"approval_threshold {threshold} must be between 1 and {len(approvers)}"
                )
            if requires_2fa is None:
                requires_2fa = bool(settings.requires_2fa) if settings is not None else False
            ttl_hours = (
                settings.approval_ttl_hours
                if settings is not None and settings.approval_ttl_hours
                else self.config.default_ttl_hours
            )

            now = self.clock()
            request = ApprovalRequest(
                company_id=batch.company_id,
                batch_id=batch.id,
                request_type=request_type,
                reason=reason,
                requested_by=requested_by,
                required_approvers=approvers,
                approval_threshold=threshold,
                requires_2fa=requires_2fa,
                approved_count=0,
                status=ApprovalStatus.PENDING.value,
                expires_at=now + timedelta(hours=ttl_hours),
            )
            self.db.add(request)

            previous = batch.status
            if batch.status == BatchStatus.DRAFT:
                BatchStateMachine.transition(batch, BatchStatus.PENDING_APPROVAL)
            batch.approval_status = BatchApprovalStatus.PENDING.value
            self.db.flush()

            self.emitter.emit(
                ApprovalRequested(
                    metadata=self._metadata(batch.company_id, requested_by),
                    request_id=request.id,
                    batch_id=batch.id,
                    required_approvers=tuple(approvers),
                    approval_threshold=threshold,
                    expires_at=request.expires_at,
                )
            )
            if previous != batch.status:
                self._emit_batch_status(batch, previous, requested_by, "approval requested")

        logger.info(
            "Approval requested for batch %s: %d of %s, 2fa=%s, expires %s",
            batch.batch_number,
            threshold,
            approvers,
            requires_2fa,
            request.expires_at.isoformat(),
        )
        return request

    def _resolve_approvers(self, explicit, settings) -> list[str]:
        if explicit:
            candidates = list(explicit)
        elif settings is not None and settings.approvers:
            candidates = list(settings.approvers)
        elif settings is not None and settings.default_approver:
            candidates = [settings.default_approver]
        else:
            raise ValidationError(
                "No approvers given and the company has no approvers or default approver configured"
            )
        # Preserve order, drop duplicates and blanks
        approvers: list[str] = []
        for name in candidates:
            if name and name not in approvers:
                approvers.append(name)
        if not approvers:
            raise ValidationError("At least one approver is required")
        return approvers

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: UUID,
        approver: str,
        comments: str | None = None,
        two_factor_code: str | None = None,
    ) -> ApprovalRequest:
        """Record one approval.

        A two-factor code is checked after every other check and after the
        optimistic-lock flush. If the commit itself still fails, the code
        is spent and the approver needs a new one.

        Raises:
            ExpiredError: the request lapsed (it is marked expired first).
            InvalidStateError: the request is already decided.
            AuthorizationError: approver is not required or already acted.
            TwoFactorError: 2FA is required and the code is missing or wrong.
            ConcurrencyError: another decision was recorded concurrently.
        """
        self._check_not_expired(request_id)

        with self.emitter.batch(), unit_of_work(self.db):
            request, batch = self._load(request_id)
            self._check_can_act(request, approver)

            verifier: TwoFactorVerifier | None = None
            if request.requires_2fa:
                if not two_factor_code:
                    raise TwoFactorError(f"Two-factor code required for {approver}")
                verifier = self.verifier
                if verifier is None:
                    raise TwoFactorError("No two-factor verifier is configured")

            request.actions.append(
                ApprovalAction(
                    approver=approver,
                    decision="approved",
                    comments=comments,
                    two_factor_verified=request.requires_2fa,
                )
            )
            request.approved_count += 1

            previous = batch.status
            if request.approved_count >= request.approval_threshold:
                ApprovalStateMachine.validate_transition(request.status, ApprovalStatus.APPROVED)
                request.status = ApprovalStatus.APPROVED.value
                request.decided_at = self.clock()
                batch.approval_status = BatchApprovalStatus.APPROVED.value
                if batch.status == BatchStatus.PENDING_APPROVAL:
                    BatchStateMachine.transition(batch, BatchStatus.APPROVED)
            self.db.flush()

            # Codes are single use; consume one only once the version check passed
            if verifier is not None and not verifier.verify(approver, two_factor_code or ""):
                raise TwoFactorError(f"Two-factor code rejected for {approver}")

            self._emit_decision(request, approver, "approved")
            if previous != batch.status:
                self._emit_batch_status(batch, previous, approver, "approval granted")

        logger.info(
            "Approval by %s on request %s: %d/%d (%s)",
            approver,
            request.id,
            request.approved_count,
            request.approval_threshold,
            request.status,
        )
        return request

    def issue_two_factor_code(self, request_id: UUID, approver: str) -> str:
        """Issue a one-time code an approver must present to approve.

        Raises:
            ExpiredError: the request lapsed.
            InvalidStateError: the request is decided or does not require 2FA.
            AuthorizationError: approver is not required or already acted.
            TwoFactorError: no verifier is configured.
        """
        self._check_not_expired(request_id)

        with unit_of_work(self.db):
            request, _ = self._load(request_id)
            self._check_can_act(request, approver)
            if not request.requires_2fa:
                raise InvalidStateError(
                    f"Approval request {request.id} does not require two-factor verification",
                    current_status=request.status,
                )

        if self.verifier is None:
            raise TwoFactorError("No two-factor verifier is configured")
        return self.verifier.issue(approver)

    def reject(self, request_id: UUID, approver: str, comments: str) -> ApprovalRequest:
        """Reject a request. Comments are mandatory."""
        if not comments or not comments.strip():
            raise ValidationError("Rejection comments are required")

        self._check_not_expired(request_id)

        with self.emitter.batch(), unit_of_work(self.db):
            request, batch = self._load(request_id)
            self._check_can_act(request, approver)

            request.actions.append(
                ApprovalAction(approver=approver, decision="rejected", comments=comments)
            )
            ApprovalStateMachine.validate_transition(request.status, ApprovalStatus.REJECTED)
            request.status = ApprovalStatus.REJECTED.value
            request.decided_at = self.clock()
            batch.approval_status = BatchApprovalStatus.REJECTED.value
            self.db.flush()

            self._emit_decision(request, approver, "rejected")

        logger.info("Request %s rejected by %s: %s", request.id, approver, comments)
        return request

    def _check_can_act(self, request: ApprovalRequest, approver: str) -> None:
        if ApprovalStateMachine.is_terminal(request.status):
            raise InvalidStateError(
                f"Approval request {request.id} is already {request.status}",
                current_status=request.status,
            )
        if approver not in request.required_approvers:
            raise AuthorizationError(
                f"{approver} is not a required approver for request {request.id}",
                approver=approver,
            )
        if request.has_acted(approver):
            raise AuthorizationError(
                f"{approver} has already acted on request {request.id}",
                approver=approver,
            )

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _check_not_expired(self, request_id: UUID) -> None:
        """Apply lazy expiry in its own transaction, then report it."""
        with self.emitter.batch(), unit_of_work(self.db):
            request, batch = self._load(request_id)
            expired = self._expire_if_due(request, batch)
        if expired:
            raise ExpiredError(
                f"Approval request {request_id} expired at {ensure_utc(request.expires_at)}",
                request_id=str(request_id),
            )

    def _expire_if_due(self, request: ApprovalRequest, batch: PaymentBatch | None) -> bool:
        """Mark a lapsed pending request expired. Returns True if it did."""
        if request.status != ApprovalStatus.PENDING:
            return False
        now = self.clock()
        if now < ensure_utc(request.expires_at):
            return False

        request.status = ApprovalStatus.EXPIRED.value
        request.decided_at = now
        if batch is not None and batch.approval_status == BatchApprovalStatus.PENDING:
            batch.approval_status = BatchApprovalStatus.EXPIRED.value
        self.db.flush()
        self._emit_decision(request, "system", "expired")
        logger.info("Approval request %s expired", request.id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest | None:
        """Load a request, applying lazy expiry."""
        with self.emitter.batch(), unit_of_work(self.db):
            request = self.db.get(ApprovalRequest, request_id)
            if request is not None:
                self._expire_if_due(request, self.db.get(PaymentBatch, request.batch_id))
        return request

    def list_pending(self, company_id: UUID) -> list[ApprovalRequest]:
        """Live pending requests for a company, oldest first."""
        with self.emitter.batch(), unit_of_work(self.db):
            requests = list(
                self.db.scalars(
                    select(ApprovalRequest)
                    .where(
                        ApprovalRequest.company_id == company_id,
                        ApprovalRequest.status == ApprovalStatus.PENDING.value,
                    )
                    .order_by(ApprovalRequest.created_at)
                )
            )
            for request in requests:
                self._expire_if_due(request, self.db.get(PaymentBatch, request.batch_id))
        return [r for r in requests if r.status == ApprovalStatus.PENDING]

    def list_for_batch(self, batch_id: UUID) -> list[ApprovalRequest]:
        return list(
            self.db.scalars(
                select(ApprovalRequest)
                .where(ApprovalRequest.batch_id == batch_id)
                .order_by(ApprovalRequest.created_at)
            )
        )

    def _pending_for_batch(self, batch_id: UUID) -> list[ApprovalRequest]:
        return list(
            self.db.scalars(
                select(ApprovalRequest).where(
                    ApprovalRequest.batch_id == batch_id,
                    ApprovalRequest.status == ApprovalStatus.PENDING.value,
                )
            )
        )

    def _load(self, request_id: UUID) -> tuple[ApprovalRequest, PaymentBatch]:
        request = self.db.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError("ApprovalRequest", request_id)
        batch = self.db.get(PaymentBatch, request.batch_id)
        if batch is None:
            raise NotFoundError("PaymentBatch", request.batch_id)
        return request, batch

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _metadata(self, company_id: UUID, actor: str | None) -> EventMetadata:
        return EventMetadata.create(company_id, actor=actor, source_service="approval_workflow")

    def _emit_decision(self, request: ApprovalRequest, approver: str, decision: str) -> None:
        self.emitter.emit(
            ApprovalDecided(
                metadata=self._metadata(request.company_id, approver),
                request_id=request.id,
                batch_id=request.batch_id,
                approver=approver,
                decision=decision,
                approved_count=request.approved_count,
                request_status=request.status,
            )
        )

    def _emit_batch_status(
        self, batch: PaymentBatch, previous: str, actor: str | None, reason: str
    ) -> None:
        self.emitter.emit(
            BatchStatusChanged(
                metadata=self._metadata(batch.company_id, actor),
                batch_id=batch.id,
                from_status=previous,
                to_status=batch.status,
                submission_status=batch.submission_status,
                reason=reason,
            )
        )
