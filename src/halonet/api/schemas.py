"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Entry schemas
# ============================================================================


class EntryCreate(BaseModel):
    """Schema for a payment entry in a create or add request."""

    recipient_name: str
    routing_number: str
    account_number: str
    amount: Decimal
    transaction_type: Literal["credit", "debit"] = "credit"
    payment_type: Literal["salary", "bonus", "garnishment", "child_support", "tax_levy"] = "salary"
    account_type: Literal["checking", "savings"] = "checking"
    employee_id: str | None = None
    garnishment_priority: int | None = None
    court_order_number: str | None = None


class EntryResponse(BaseModel):
    """Schema for a payment entry. Account numbers are always masked."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_id: UUID
    sequence: int
    employee_id: str | None = None
    recipient_name: str
    routing_number: str
    account_number: str = Field(validation_alias="masked_account_number")
    account_type: str
    amount: Decimal
    currency: str
    transaction_type: str
    payment_type: str
    garnishment_priority: int | None = None
    court_order_number: str | None = None
    status: str
    trace_number: str | None = None
    provider_entry_id: str | None = None
    failure_reason: str | None = None
    return_code: str | None = None
    return_reason: str | None = None
    returned_at: datetime | None = None
    nsf_fee: Decimal | None = None
    void_reason: str | None = None
    voided_at: datetime | None = None
    voided_by: str | None = None


class VoidRequest(BaseModel):
    reason: str = Field(min_length=1)
    actor: str | None = None


class ReturnRequest(BaseModel):
    return_code: str = Field(pattern=r"^R\d{2}$")
    reason: str | None = None
    nsf_fee: Decimal | None = None


# ============================================================================
# Batch schemas
# ============================================================================


class BatchCreate(BaseModel):
    """Schema for creating a new batch in draft status."""

    batch_type: Literal["payroll", "garnishment", "bonus", "correction"] = "payroll"
    effective_date: date
    entries: list[EntryCreate] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    created_by: str | None = None


class GarnishmentCreate(BaseModel):
    payment_type: Literal["garnishment", "child_support", "tax_levy"] = "garnishment"
    amount: Decimal = Field(gt=0)
    priority: int
    recipient_name: str
    routing_number: str
    account_number: str
    account_type: Literal["checking", "savings"] = "checking"
    court_order_number: str | None = None


class BankAccountCreate(BaseModel):
    routing_number: str
    account_number: str
    account_type: Literal["checking", "savings"] = "checking"


class CalculationLineCreate(BaseModel):
    employee_id: str
    employee_name: str
    net_pay: Decimal = Field(ge=0)
    bank_account: BankAccountCreate
    garnishments: list[GarnishmentCreate] = Field(default_factory=list)


class CalculationBatchCreate(BaseModel):
    """Schema for building a payroll batch from calculation output."""

    lines: list[CalculationLineCreate]
    pay_date: date | None = None
    pay_run_id: str | None = None
    effective_date: date | None = None
    created_by: str | None = None


class BatchResponse(BaseModel):
    """Schema for batch response."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    company_id: UUID
    batch_number: str
    batch_type: str
    effective_date: date
    total_amount: Decimal
    total_count: int
    credit_amount: Decimal
    debit_amount: Decimal
    status: str
    requires_approval: bool
    approval_status: str
    submission_status: str
    risk_action: str | None = None
    risk_evaluated_at: datetime | None = None
    hold_until: datetime | None = None
    provider_id: str | None = None
    provider_batch_id: str | None = None
    confirmation_number: str | None = None
    estimated_settlement_date: date | None = None
    submission_attempts: int
    last_submission_error: str | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    nacha_content_hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    created_by: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class BatchDetailResponse(BatchResponse):
    """Schema for batch response including its entries."""

    entries: list[EntryResponse]


class BatchListResponse(BaseModel):
    """Schema for listing batches."""

    items: list[BatchResponse]
    total: int


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)
    actor: str | None = None


class SubmitRequest(BaseModel):
    provider_id: str | None = None
    actor: str | None = None


class SubmissionResponse(BaseModel):
    """Schema for a provider submission outcome."""

    success: bool
    batch_id: UUID
    submission_status: str
    provider_batch_id: str | None = None
    confirmation_number: str | None = None
    estimated_settlement_date: date | None = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    rejected_entries: dict[str, str] = Field(default_factory=dict)


class NachaResponse(BaseModel):
    content: str
    content_hash: str
    entry_hash: str
    entry_count: int
    total_debit: Decimal
    total_credit: Decimal


# ============================================================================
# Approval schemas
# ============================================================================


class ApprovalCreate(BaseModel):
    """Schema for opening an approval request."""

    batch_id: UUID
    reason: str | None = None
    requested_by: str | None = None
    required_approvers: list[str] | None = None
    approval_threshold: int | None = Field(default=None, ge=1)
    requires_2fa: bool | None = None
    request_type: Literal["batch_submission", "void_payment", "emergency_release"] = (
        "batch_submission"
    )


class ApprovalActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    approver: str
    decision: str
    comments: str | None = None
    two_factor_verified: bool
    created_at: datetime


class ApprovalResponse(BaseModel):
    """Schema for approval request response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    batch_id: UUID
    request_type: str
    reason: str | None = None
    requested_by: str | None = None
    required_approvers: list[str]
    approval_threshold: int
    requires_2fa: bool
    approved_count: int
    status: str
    expires_at: datetime
    decided_at: datetime | None = None
    actions: list[ApprovalActionResponse] = Field(default_factory=list)
    created_at: datetime


class ApproveRequest(BaseModel):
    approver: str = Field(min_length=1)
    comments: str | None = None
    two_factor_code: str | None = None


class TwoFactorCodeRequest(BaseModel):
    approver: str = Field(min_length=1)


class TwoFactorCodeResponse(BaseModel):
    request_id: UUID
    approver: str
    code: str


class RejectRequest(BaseModel):
    approver: str = Field(min_length=1)
    comments: str


# ============================================================================
# Risk schemas
# ============================================================================


class RiskControlCreate(BaseModel):
    """Schema for creating a risk control."""

    control_type: Literal["amount_threshold", "velocity_check", "account_validation", "time_restriction"]
    name: str = Field(min_length=1)
    threshold_config: dict[str, Any]
    action_type: Literal["require_approval", "block", "flag", "delay"]
    action_config: dict[str, Any] | None = None
    priority: int = 100
    is_active: bool = True


class RiskControlUpdate(BaseModel):
    """Schema for a partial risk control update."""

    name: str | None = None
    is_active: bool | None = None
    threshold_config: dict[str, Any] | None = None
    action_type: Literal["require_approval", "block", "flag", "delay"] | None = None
    action_config: dict[str, Any] | None = None
    priority: int | None = None


class RiskControlResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    control_type: str
    name: str
    is_active: bool
    threshold_config: dict[str, Any]
    action_type: str
    action_config: dict[str, Any]
    priority: int
    created_at: datetime


class RiskEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    batch_id: UUID | None = None
    entry_id: UUID | None = None
    control_id: UUID
    event_type: str
    severity: str
    risk_score: int
    risk_factors: list[dict[str, Any]]
    action_taken: str
    status: str
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    created_at: datetime


class ResolveRequest(BaseModel):
    resolver: str = Field(min_length=1)
    notes: str | None = None
    status: Literal["resolved", "false_positive", "suppressed"] = "resolved"


class EvaluationResponse(BaseModel):
    """Schema for a risk evaluation of a batch."""

    action: str
    requires_approval: bool
    hard_stop_reasons: list[str]
    hold_until: datetime | None = None
    events: list[RiskEventResponse]


# ============================================================================
# Company settings, webhooks and dashboard
# ============================================================================


class CompanySettingsUpdate(BaseModel):
    approvers: list[str] | None = None
    approval_threshold: int | None = Field(default=None, ge=1)
    requires_2fa: bool | None = None
    approval_ttl_hours: int | None = Field(default=None, ge=1, le=168)
    default_approver: str | None = None
    garnishment_policy: Literal["priority", "pro_rata"] | None = None
    allow_partial_acceptance: bool | None = None


class CompanySettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_id: UUID
    approvers: list[str]
    approval_threshold: int | None = None
    requires_2fa: bool
    approval_ttl_hours: int | None = None
    default_approver: str | None = None
    garnishment_policy: str
    allow_partial_acceptance: bool


class WebhookCreate(BaseModel):
    webhook_url: str
    event_types: list[str] | None = None
    secret: str | None = None


class WebhookResponse(BaseModel):
    """Schema for a webhook registration. The secret is never echoed."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    webhook_url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Returned once at registration so the caller can store the secret."""

    secret: str


class DashboardMetricsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_id: UUID
    batches_by_status: dict[str, int]
    total_batches: int
    pending_approvals: int
    active_risk_events: int
    critical_risk_events: int
    submitted_volume: Decimal
    returned_entries: int
    failed_entries: int
    voided_entries: int


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
