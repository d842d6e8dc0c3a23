"""Engine Configuration Objects.

Explicit configuration for batch orchestration. No defaults that move money.

Pattern:
    config = EngineConfig(
        approval=ApprovalConfig(...),
        submission=SubmissionConfig(...),
        nacha=NachaConfig(...),
    )

Rules:
    1. No env vars. Configuration is explicit.
    2. No globals. Each service graph receives its own config.
    3. Immutable after creation (frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class ApprovalConfig:
    """
    Approval workflow configuration.

    Attributes:
        default_ttl_hours: Lifetime of an approval request when the company
            has no override. Default 48 hours.
        default_threshold: Approvals needed when the company has no
            override. Default 1.
    """

    default_ttl_hours: int = 48
    default_threshold: int = 1

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.default_ttl_hours < 1:
            raise ValueError("default_ttl_hours must be at least 1")
        if self.default_ttl_hours > 168:
            raise ValueError("default_ttl_hours cannot exceed 168 (1 week)")
        if self.default_threshold < 1:
            raise ValueError("default_threshold must be at least 1")


@dataclass(frozen=True)
class SubmissionConfig:
    """
    Provider submission configuration.

    Attributes:
        timeout_seconds: Bound on a single provider call. Default 30.
        retry_count: Retries on transport failure after the first attempt.
            Default 3.
        retry_backoff_seconds: Base delay, doubled per retry. Default 1.0.
        nsf_fee: Fee recorded for NSF returns when none is supplied.
    """

    timeout_seconds: float = 30.0
    retry_count: int = 3
    retry_backoff_seconds: float = 1.0
    nsf_fee: Decimal = Decimal("25.00")

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.retry_count < 0 or self.retry_count > 10:
            raise ValueError("retry_count must be between 0 and 10")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds cannot be negative")


@dataclass(frozen=True)
class NachaConfig:
    """
    Originator identity written into generated NACHA files.

    Attributes:
        immediate_destination: Routing number of the receiving point (9 digits).
        immediate_origin: Originator identification (10 characters).
        destination_name: Name of the receiving bank.
        origin_name: Name of the originator.
        company_name: Company name in the batch header.
        company_identification: 10 character company id (usually "1" + EIN).
        odfi_routing: Originating DFI routing number (first 8 digits are used).
    """

    immediate_destination: str = "091000019"
    immediate_origin: str = "1234567890"
    destination_name: str = "HALONET ODFI"
    origin_name: str = "HALONET"
    company_name: str = "HALONET PAYROLL"
    company_identification: str = "1234567890"
    odfi_routing: str = "09100001"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if len(self.immediate_destination) != 9 or not self.immediate_destination.isdigit():
            raise ValueError("immediate_destination must be a 9 digit routing number")
        if len(self.immediate_origin) > 10:
            raise ValueError("immediate_origin cannot exceed 10 characters")
        if len(self.company_identification) > 10:
            raise ValueError("company_identification cannot exceed 10 characters")
        if len(self.odfi_routing) < 8 or not self.odfi_routing[:8].isdigit():
            raise ValueError("odfi_routing must start with 8 digits")


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete engine configuration.

    Example:
        config = EngineConfig(
            approval=ApprovalConfig(default_ttl_hours=24),
            submission=SubmissionConfig(retry_count=2),
            nacha=NachaConfig(company_name="ACME PAYROLL"),
        )
    """

    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    nacha: NachaConfig = field(default_factory=NachaConfig)


def create_sandbox_config() -> EngineConfig:
    """
    Create a sandbox configuration for testing.

    Retries happen without backoff so tests stay fast.
    """
    return EngineConfig(
        approval=ApprovalConfig(),
        submission=SubmissionConfig(
            timeout_seconds=5.0,
            retry_count=2,
            retry_backoff_seconds=0.0,
        ),
        nacha=NachaConfig(),
    )
