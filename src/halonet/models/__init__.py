"""ORM models."""

from halonet.models.approval import ApprovalAction, ApprovalRequest
from halonet.models.base import Base, TimestampMixin, ensure_utc, utcnow
from halonet.models.batch import GARNISHMENT_PAYMENT_TYPES, PaymentBatch, PaymentEntry
from halonet.models.company import CompanyPaymentSettings, WebhookRegistration
from halonet.models.risk import RiskControl, RiskEvent

__all__ = [
    "ApprovalAction",
    "ApprovalRequest",
    "Base",
    "CompanyPaymentSettings",
    "GARNISHMENT_PAYMENT_TYPES",
    "PaymentBatch",
    "PaymentEntry",
    "RiskControl",
    "RiskEvent",
    "TimestampMixin",
    "WebhookRegistration",
    "ensure_utc",
    "utcnow",
]
