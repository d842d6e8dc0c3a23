"""Typed risk control configuration.

Controls are stored with JSON ``threshold_config``/``action_config`` columns.
Each ``control_type`` and ``action_type`` has its own pydantic model, so a
misconfigured control is rejected when it is written rather than when a
batch is evaluated.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from halonet.exceptions import ValidationError

ControlType = Literal["amount_threshold", "velocity_check", "account_validation", "time_restriction"]
ActionType = Literal["require_approval", "block", "flag", "delay"]
Severity = Literal["low", "medium", "high", "critical"]


class _RuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AmountThresholdConfig(_RuleConfig):
    """Limits on batch total, single entry amount and entry count."""

    control_type: Literal["amount_threshold"] = "amount_threshold"
    max_batch_amount: Decimal | None = Field(default=None, gt=0)
    max_entry_amount: Decimal | None = Field(default=None, gt=0)
    max_entry_count: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _at_least_one_limit(self) -> AmountThresholdConfig:
        if (
            self.max_batch_amount is None
            and self.max_entry_amount is None
            and self.max_entry_count is None
        ):
            raise ValueError("amount_threshold needs at least one limit")
        return self


class VelocityCheckConfig(_RuleConfig):
    """Limits on the company's batch activity in a rolling window."""

    control_type: Literal["velocity_check"] = "velocity_check"
    window_hours: int = Field(default=24, gt=0, le=24 * 31)
    max_batches: int | None = Field(default=None, gt=0)
    max_total_amount: Decimal | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _at_least_one_limit(self) -> VelocityCheckConfig:
        if self.max_batches is None and self.max_total_amount is None:
            raise ValueError("velocity_check needs max_batches or max_total_amount")
        return self


class AccountValidationConfig(_RuleConfig):
    """Structural checks on recipient bank details."""

    control_type: Literal["account_validation"] = "account_validation"
    check_routing_checksum: bool = True
    min_account_length: int = Field(default=4, ge=1, le=17)
    max_account_length: int = Field(default=17, ge=1, le=17)
    blocked_routing_numbers: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _length_range(self) -> AccountValidationConfig:
        if self.min_account_length > self.max_account_length:
            raise ValueError("min_account_length cannot exceed max_account_length")
        return self


class TimeRestrictionConfig(_RuleConfig):
    """Allowed submission window, evaluated in the company's timezone."""

    control_type: Literal["time_restriction"] = "time_restriction"
    allowed_weekdays: tuple[int, ...] = (0, 1, 2, 3, 4)
    start_hour: int = Field(default=6, ge=0, le=23)
    end_hour: int = Field(default=18, ge=1, le=24)
    timezone: str = "America/Chicago"
    allow_weekend_effective_date: bool = False

    @field_validator("allowed_weekdays")
    @classmethod
    def _weekdays_in_range(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(d < 0 or d > 6 for d in value):
            raise ValueError("allowed_weekdays must be 0 (Monday) to 6 (Sunday)")
        return value

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _window(self) -> TimeRestrictionConfig:
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be before end_hour")
        return self


ThresholdConfig = Annotated[
    Union[
        AmountThresholdConfig,
        VelocityCheckConfig,
        AccountValidationConfig,
        TimeRestrictionConfig,
    ],
    Field(discriminator="control_type"),
]

_threshold_adapter: TypeAdapter[Any] = TypeAdapter(ThresholdConfig)


class ActionConfig(_RuleConfig):
    """Options for what happens when a control fires."""

    action_type: ActionType
    severity: Severity | None = None
    delay_hours: int | None = Field(default=None, gt=0, le=168)

    @model_validator(mode="after")
    def _delay_only_for_delay(self) -> ActionConfig:
        if self.delay_hours is not None and self.action_type != "delay":
            raise ValueError("delay_hours only applies to delay actions")
        return self

    @property
    def effective_severity(self) -> str:
        return self.severity or DEFAULT_SEVERITY[self.action_type]

    @property
    def effective_delay_hours(self) -> int:
        return self.delay_hours or 24


DEFAULT_SEVERITY: dict[str, str] = {
    "flag": "low",
    "require_approval": "medium",
    "delay": "high",
    "block": "critical",
}


def parse_threshold_config(control_type: str, raw: dict[str, Any] | None) -> Any:
    """Validate a stored threshold config into its typed variant."""
    try:
        return _threshold_adapter.validate_python({**(raw or {}), "control_type": control_type})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {control_type} configuration",
            errors=[err["msg"] for err in exc.errors()],
        ) from exc


def parse_action_config(action_type: str, raw: dict[str, Any] | None) -> ActionConfig:
    """Validate a stored action config."""
    try:
        return ActionConfig.model_validate({**(raw or {}), "action_type": action_type})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {action_type} action configuration",
            errors=[err["msg"] for err in exc.errors()],
        ) from exc


def dump_config(config: BaseModel) -> dict[str, Any]:
    """JSON-safe dict for storage, without the discriminator field."""
    return config.model_dump(mode="json", exclude={"control_type", "action_type"}, exclude_none=True)
