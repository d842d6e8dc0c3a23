"""Base protocol and types for payment rail providers.

All provider adapters must implement the BatchPaymentProvider protocol.
Adapters raise ``ProviderTransportError`` for network failures and
``ProviderTimeoutError`` when a call exceeds its timeout; provider-side
validation failures come back as an unsuccessful ``ProviderResponse``.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capabilities supported by a payment rail provider."""

    ach_credit: bool = True
    ach_debit: bool = True
    partial_acceptance: bool = False
    cancel: bool = False

    # Bank-specific configurations
    cutoffs_json: dict[str, Any] | None = None
    limits_json: dict[str, Any] | None = None


@dataclass(frozen=True)
class SubmissionEntry:
    """One entry as handed to the provider."""

    entry_id: str
    sequence: int
    amount: Decimal
    transaction_type: str
    routing_number: str
    account_number: str
    account_type: str
    recipient_name: str
    trace_number: str


@dataclass(frozen=True)
class BatchSubmission:
    """Payload for a batch submission.

    ``idempotency_key`` is stable for the lifetime of a batch, so a retried
    submission is recognised by the provider instead of paying twice.
    """

    idempotency_key: str
    batch_id: str
    company_id: str
    effective_date: datetime.date
    total_amount: Decimal
    nacha_content: str
    nacha_content_hash: str
    entries: tuple[SubmissionEntry, ...]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderResponse:
    """Synchronous provider answer to a submission."""

    success: bool
    provider_batch_id: str | None = None
    confirmation_number: str | None = None
    estimated_settlement_date: datetime.date | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    # entry_id -> reason, for entries the provider refused
    rejected_entries: dict[str, str] = field(default_factory=dict)
    # entry_id -> provider's own entry reference
    accepted_entries: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EntryUpdate:
    """Asynchronous status change for a single entry."""

    entry_id: str
    status: str  # processing/completed/returned/failed
    return_code: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class BatchStatusResult:
    """Result of polling a submitted batch."""

    status: str  # unknown/accepted/processing/completed/failed
    provider_batch_id: str | None = None
    confirmation_number: str | None = None
    estimated_settlement_date: datetime.date | None = None
    message: str = ""
    entry_updates: tuple[EntryUpdate, ...] = ()


class BatchPaymentProvider(Protocol):
    """Protocol for payment rail provider adapters.

    Each bank/processor has its own adapter implementing this protocol.
    The gateway uses these adapters without knowing bank-specific details.
    """

    provider_name: str

    def capabilities(self) -> ProviderCapabilities:
        """Return capabilities supported by this provider."""
        ...

    def submit_batch(self, submission: BatchSubmission, *, timeout: float) -> ProviderResponse:
        """Submit a batch.

        Args:
            submission: The batch payload including the NACHA file.
            timeout: Upper bound in seconds for the call.

        Returns:
            ProviderResponse describing acceptance.

        Raises:
            ProviderTransportError: the request did not reach the provider.
            ProviderTimeoutError: no answer within ``timeout``; outcome unknown.
        """
        ...

    def get_batch_status(self, idempotency_key: str, *, timeout: float) -> BatchStatusResult:
        """Look up a batch by the idempotency key it was submitted with.

        Used to reconcile submissions whose outcome is unknown.
        """
        ...
