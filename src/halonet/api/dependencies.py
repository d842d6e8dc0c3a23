"""FastAPI dependencies for dependency injection."""

from collections.abc import Generator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from halonet.exceptions import NotFoundError
from halonet.models import PaymentBatch
from halonet.services import (
    ApprovalWorkflow,
    BatchManager,
    CompanySettingsService,
    DashboardService,
    RiskControlEvaluator,
    RiskControlService,
    RiskEventRecorder,
    SubmissionGateway,
    WebhookService,
)


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Get database session dependency."""
    factory = request.app.state.session_factory
    with factory() as session:
        try:
            yield session
        finally:
            session.close()


def get_company_id(
    x_company_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract company ID from header."""
    if not x_company_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Company-ID header is required",
        )
    try:
        return UUID(x_company_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Company-ID format",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
CompanyId = Annotated[UUID, Depends(get_company_id)]


# ============================================================================
# Service factories
# ============================================================================


def _recorder(request: Request, db: Session) -> RiskEventRecorder:
    state = request.app.state
    return RiskEventRecorder(db, emitter=state.emitter, clock=state.clock)


def _evaluator(request: Request, db: Session) -> RiskControlEvaluator:
    return RiskControlEvaluator(
        db, recorder=_recorder(request, db), clock=request.app.state.clock
    )


def get_batch_manager(request: Request, db: DbSession) -> BatchManager:
    state = request.app.state
    return BatchManager(
        db, evaluator=_evaluator(request, db), emitter=state.emitter, clock=state.clock
    )


def get_evaluator(request: Request, db: DbSession) -> RiskControlEvaluator:
    return _evaluator(request, db)


def get_recorder(request: Request, db: DbSession) -> RiskEventRecorder:
    return _recorder(request, db)


def get_approval_workflow(request: Request, db: DbSession) -> ApprovalWorkflow:
    state = request.app.state
    return ApprovalWorkflow(
        db,
        config=state.engine_config.approval,
        verifier=state.verifier,
        emitter=state.emitter,
        clock=state.clock,
    )


def _gateway(request: Request, db: Session) -> SubmissionGateway:
    state = request.app.state
    return SubmissionGateway(
        db,
        state.providers,
        evaluator=_evaluator(request, db),
        config=state.engine_config,
        emitter=state.emitter,
        clock=state.clock,
        default_provider_id=state.default_provider_id,
    )


def get_gateway(request: Request, db: DbSession) -> SubmissionGateway:
    return _gateway(request, db)


def get_webhook_service(request: Request, db: DbSession) -> WebhookService:
    return WebhookService(db, _gateway(request, db))


def get_risk_control_service(db: DbSession) -> RiskControlService:
    return RiskControlService(db)


def get_settings_service(db: DbSession) -> CompanySettingsService:
    return CompanySettingsService(db)


def get_dashboard_service(request: Request, db: DbSession) -> DashboardService:
    return DashboardService(db, clock=request.app.state.clock)


Batches = Annotated[BatchManager, Depends(get_batch_manager)]
Evaluator = Annotated[RiskControlEvaluator, Depends(get_evaluator)]
Recorder = Annotated[RiskEventRecorder, Depends(get_recorder)]
Approvals = Annotated[ApprovalWorkflow, Depends(get_approval_workflow)]
Gateway = Annotated[SubmissionGateway, Depends(get_gateway)]
Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]
RiskControls = Annotated[RiskControlService, Depends(get_risk_control_service)]
CompanySettings = Annotated[CompanySettingsService, Depends(get_settings_service)]
Dashboard = Annotated[DashboardService, Depends(get_dashboard_service)]


def require_owned(record, company_id: UUID, kind: str, record_id: UUID):
    """Return the record if it belongs to the company, else raise NotFoundError.

    Records of other companies are reported as missing rather than forbidden.
    """
    if record is None or record.company_id != company_id:
        raise NotFoundError(kind, record_id)
    return record


def owned_batch(db: Session, company_id: UUID, batch_id: UUID) -> PaymentBatch:
    return require_owned(db.get(PaymentBatch, batch_id), company_id, "PaymentBatch", batch_id)
