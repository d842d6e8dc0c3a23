"""ACH stub provider for local development and testing.

Replace with a bank API or SFTP NACHA adapter for production.
"""

from __future__ import annotations

import datetime
import hashlib
from typing import Any

from halonet.exceptions import ProviderTimeoutError, ProviderTransportError
from halonet.providers.base import (
    BatchStatusResult,
    BatchSubmission,
    EntryUpdate,
    ProviderCapabilities,
    ProviderResponse,
)


class AchStubProvider:
    """Stub ACH provider for development.

    Submissions are deduplicated by idempotency key, like a real provider.
    The ``simulate_*`` helpers inject transport failures, timeouts,
    rejections, settlement and returns.
    """

    provider_name = "ach_stub"

    def __init__(self, partial_acceptance: bool = False, settlement_days: int = 1):
        """Initialize stub provider.

        Args:
            partial_acceptance: If True, rejected entries do not fail the batch.
            settlement_days: Business-agnostic offset from the effective date.
        """
        self.partial_acceptance = partial_acceptance
        self.settlement_days = settlement_days
        self.submit_calls = 0
        # In-memory tracking for stub, keyed by idempotency key
        self._submitted: dict[str, dict[str, Any]] = {}
        self._transport_failures = 0
        self._timeouts = 0
        self._accept_after_timeout = True
        self._rejections: dict[str, str] = {}
        self._reject_batch: str | None = None

    def capabilities(self) -> ProviderCapabilities:
        """Return ACH capabilities."""
        return ProviderCapabilities(
            ach_credit=True,
            ach_debit=True,
            partial_acceptance=self.partial_acceptance,
            cancel=False,
            cutoffs_json={
                "ach_same_day": "14:00 CT",
                "ach_standard": "17:00 CT",
            },
            limits_json={
                "ach_same_day_max": "1000000.00",
                "ach_standard_max": "99999999.99",
            },
        )

    def submit_batch(self, submission: BatchSubmission, *, timeout: float) -> ProviderResponse:
        """Submit ACH batch (stub implementation)."""
        self.submit_calls += 1

        if self._transport_failures:
            self._transport_failures -= 1
            raise ProviderTransportError("connection reset by ach_stub", provider=self.provider_name)

        if self._timeouts:
            self._timeouts -= 1
            if self._accept_after_timeout:
                # The provider got the file but the answer was lost
                self._accept(submission)
            raise ProviderTimeoutError(
                f"ach_stub did not answer within {timeout}s", provider=self.provider_name
            )

        existing = self._submitted.get(submission.idempotency_key)
        if existing is not None:
            return existing["response"]

        if self._reject_batch is not None:
            reason = self._reject_batch
            self._reject_batch = None
            return ProviderResponse(success=False, errors=(reason,))

        rejected = {
            entry.entry_id: self._rejections[entry.entry_id]
            for entry in submission.entries
            if entry.entry_id in self._rejections
        }
        # The originator may opt out of partial acceptance per submission
        partial = self.partial_acceptance and submission.metadata.get(
            "allow_partial_acceptance", True
        )
        if rejected and not partial:
            return ProviderResponse(
                success=False,
                errors=tuple(f"entry {eid}: {reason}" for eid, reason in rejected.items()),
                rejected_entries=rejected,
            )

        return self._accept(submission, rejected)

    def get_batch_status(self, idempotency_key: str, *, timeout: float) -> BatchStatusResult:
        """Get status of a submitted batch."""
        record = self._submitted.get(idempotency_key)
        if record is None:
            return BatchStatusResult(
                status="unknown",
                message=f"Batch {idempotency_key} not found",
            )
        response: ProviderResponse = record["response"]
        return BatchStatusResult(
            status=record["status"],
            provider_batch_id=response.provider_batch_id,
            confirmation_number=response.confirmation_number,
            estimated_settlement_date=response.estimated_settlement_date,
            message="ACH stub status",
            entry_updates=tuple(record["entry_updates"]),
        )

    def _accept(
        self,
        submission: BatchSubmission,
        rejected: dict[str, str] | None = None,
    ) -> ProviderResponse:
        rejected = rejected or {}
        digest = hashlib.sha256(submission.idempotency_key.encode()).hexdigest()[:12].upper()
        provider_batch_id = f"ACHSTUB-{digest}"
        response = ProviderResponse(
            success=True,
            provider_batch_id=provider_batch_id,
            confirmation_number=f"CONF{digest[:8]}",
            estimated_settlement_date=submission.effective_date
            + datetime.timedelta(days=self.settlement_days),
            warnings=tuple(f"entry {eid} rejected: {reason}" for eid, reason in rejected.items()),
            rejected_entries=rejected,
            accepted_entries={
                e.entry_id: f"{provider_batch_id}-{e.sequence:04d}"
                for e in submission.entries
                if e.entry_id not in rejected
            },
        )
        self._submitted[submission.idempotency_key] = {
            "submission": submission,
            "response": response,
            "status": "accepted",
            "entry_updates": [],
        }
        return response

    # ------------------------------------------------------------------
    # Simulation helpers
    # ------------------------------------------------------------------

    def simulate_transport_failures(self, count: int) -> None:
        """Fail the next ``count`` submit calls before reaching the provider."""
        self._transport_failures = count

    def simulate_timeout(self, accepted: bool = True, count: int = 1) -> None:
        """Time out the next submit call(s).

        Args:
            accepted: Whether the provider actually received the batch.
        """
        self._timeouts = count
        self._accept_after_timeout = accepted

    def simulate_rejection(self, entry_id: str, reason: str = "invalid account") -> None:
        """Reject one entry on the next submission."""
        self._rejections[entry_id] = reason

    def simulate_batch_rejection(self, reason: str = "file rejected") -> None:
        """Reject the next batch as a whole."""
        self._reject_batch = reason

    def simulate_status(self, idempotency_key: str, status: str) -> None:
        """Move a submitted batch to processing/completed/failed."""
        if idempotency_key in self._submitted:
            self._submitted[idempotency_key]["status"] = status

    def simulate_return(
        self,
        idempotency_key: str,
        entry_id: str,
        return_code: str = "R01",
        reason: str = "Insufficient Funds",
    ) -> None:
        """Simulate an ACH return (for testing).

        Common return codes:
        - R01: Insufficient Funds
        - R02: Account Closed
        - R03: No Account/Unable to Locate
        - R04: Invalid Account Number
        - R09: Uncollected Funds
        """
        if idempotency_key in self._submitted:
            self._submitted[idempotency_key]["entry_updates"].append(
                EntryUpdate(
                    entry_id=entry_id,
                    status="returned",
                    return_code=return_code,
                    reason=reason,
                )
            )

