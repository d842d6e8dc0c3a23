"""Payment rail provider adapters."""

from halonet.providers.ach_stub import AchStubProvider
from halonet.providers.base import (
    BatchPaymentProvider,
    BatchStatusResult,
    BatchSubmission,
    EntryUpdate,
    ProviderCapabilities,
    ProviderResponse,
    SubmissionEntry,
)

__all__ = [
    "AchStubProvider",
    "BatchPaymentProvider",
    "BatchStatusResult",
    "BatchSubmission",
    "EntryUpdate",
    "ProviderCapabilities",
    "ProviderResponse",
    "SubmissionEntry",
]
