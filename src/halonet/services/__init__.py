"""HALOnet services."""

from halonet.services.state_machine import (
    ApprovalStateMachine,
    BatchStateMachine,
    BatchStatus,
    EntryStateMachine,
    EntryStatus,
)
from halonet.services.risk_events import RiskEventRecorder
from halonet.services.risk_evaluator import (
    BatchHistory,
    EvaluationResult,
    RiskControlEvaluator,
    SqlBatchHistory,
)
from halonet.services.risk_controls import RiskControlService
from halonet.services.company_settings import CompanySettingsService
from halonet.services.batch_manager import (
    BankAccount,
    BatchManager,
    CalculationLine,
    CalculationResult,
    EntryInput,
)
from halonet.services.garnishment import GarnishmentInput
from halonet.services.two_factor import OneTimeCodeVerifier, TwoFactorVerifier
from halonet.services.approval_workflow import ApprovalWorkflow
from halonet.services.submission_gateway import SubmissionGateway, SubmissionOutcome
from halonet.services.webhooks import WebhookService
from halonet.services.dashboard import DashboardMetrics, DashboardService

__all__ = [
    "ApprovalStateMachine",
    "ApprovalWorkflow",
    "BankAccount",
    "BatchHistory",
    "BatchManager",
    "BatchStateMachine",
    "BatchStatus",
    "CalculationLine",
    "CalculationResult",
    "CompanySettingsService",
    "DashboardMetrics",
    "DashboardService",
    "EntryInput",
    "EntryStateMachine",
    "EntryStatus",
    "EvaluationResult",
    "GarnishmentInput",
    "OneTimeCodeVerifier",
    "RiskControlEvaluator",
    "RiskControlService",
    "RiskEventRecorder",
    "SqlBatchHistory",
    "SubmissionGateway",
    "SubmissionOutcome",
    "TwoFactorVerifier",
    "WebhookService",
]
