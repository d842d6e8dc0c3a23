"""Typed exception hierarchy for the HALOnet engine.

Every error carries a machine-readable ``code`` and structured attributes,
so callers catch by type and APIs report by code instead of parsing
messages.

    HalonetError (base)
    |
    +-- ValidationError          VALIDATION_FAILED
    +-- NotFoundError            NOT_FOUND
    +-- InvalidStateError        INVALID_STATE
    |   +-- InvalidTransitionError
    +-- AuthorizationError       NOT_AUTHORIZED
    +-- TwoFactorError           TWO_FACTOR_REQUIRED
    +-- ExpiredError             APPROVAL_EXPIRED
    +-- PreconditionError        PRECONDITION_FAILED
    +-- ProviderError            PROVIDER_ERROR
    |   +-- ProviderTransportError
    |   +-- ProviderTimeoutError
    +-- ConcurrencyError         CONCURRENT_MODIFICATION
    +-- ImmutabilityError        IMMUTABILITY_VIOLATION
"""

from __future__ import annotations

from typing import Any, Sequence


class HalonetError(Exception):
    """Base class for all engine errors."""

    code: str = "HALONET_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {"detail": self.message, "code": self.code, "context": self.details or None}


class ValidationError(HalonetError):
    """Malformed input. The caller can correct the input and retry."""

    code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        entry_indices: Sequence[int] = (),
        errors: Sequence[str] = (),
    ):
        self.entry_indices = list(entry_indices)
        self.errors = list(errors)
        super().__init__(message, entry_indices=self.entry_indices, errors=self.errors)


class NotFoundError(HalonetError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found", kind=kind, id=str(identifier))


class InvalidStateError(HalonetError):
    """Operation is not allowed in the record's current lifecycle state."""

    code = "INVALID_STATE"

    def __init__(self, message: str, *, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message, current_status=current_status)


class InvalidTransitionError(InvalidStateError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, current_status=from_status)


class AuthorizationError(HalonetError):
    """Actor is not entitled to perform the operation."""

    code = "NOT_AUTHORIZED"


class TwoFactorError(HalonetError):
    """Second factor missing or invalid. Re-prompt and retry."""

    code = "TWO_FACTOR_REQUIRED"


class ExpiredError(HalonetError):
    """Approval window lapsed. A new request is required."""

    code = "APPROVAL_EXPIRED"


class PreconditionError(HalonetError):
    """Submission attempted before the batch is approved and risk-clear."""

    code = "PRECONDITION_FAILED"

    def __init__(self, message: str, *, reasons: Sequence[str] = ()):
        self.reasons = list(reasons)
        super().__init__(message, reasons=self.reasons)


class ProviderError(HalonetError):
    """Transport or provider-reported failure.

    ``retryable`` separates transport failures, which may be retried with the
    same idempotency key, from terminal validation rejections.
    """

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, *, retryable: bool = False, provider: str | None = None):
        self.retryable = retryable
        self.provider = provider
        super().__init__(message, retryable=retryable, provider=provider)


class ProviderTransportError(ProviderError):
    """Network level failure talking to the provider."""

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message, retryable=True, provider=provider)


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its timeout. Outcome is unknown."""

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message, retryable=True, provider=provider)


class ConcurrencyError(HalonetError):
    """A concurrent writer changed the record first (optimistic lock)."""

    code = "CONCURRENT_MODIFICATION"


class ImmutabilityError(HalonetError):
    """Attempt to change a field that is immutable once written."""

    code = "IMMUTABILITY_VIOLATION"
