"""Payment batch API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Request, status

from halonet.api.dependencies import (
    Batches,
    CompanyId,
    DbSession,
    Evaluator,
    Gateway,
    owned_batch,
)
from halonet.api.schemas import (
    BatchCreate,
    BatchDetailResponse,
    BatchListResponse,
    BatchResponse,
    CalculationBatchCreate,
    CancelRequest,
    EntryCreate,
    EntryResponse,
    ErrorResponse,
    EvaluationResponse,
    NachaResponse,
    RiskEventResponse,
    SubmissionResponse,
    SubmitRequest,
)
from halonet.services import (
    BankAccount,
    CalculationLine,
    CalculationResult,
    EntryInput,
    GarnishmentInput,
)
from halonet.services.unit_of_work import unit_of_work

router = APIRouter(prefix="/batches", tags=["batches"])


def _entry_input(payload: EntryCreate) -> EntryInput:
    return EntryInput(**payload.model_dump())


def _detail(batch) -> BatchDetailResponse:
    response = BatchResponse.model_validate(batch)
    return BatchDetailResponse(
        **response.model_dump(),
        entries=[EntryResponse.model_validate(e) for e in batch.entries],
    )


# ============================================================================
# Batch CRUD
# ============================================================================


@router.post(
    "",
    response_model=BatchDetailResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
def create_batch(
    company_id: CompanyId,
    manager: Batches,
    payload: BatchCreate,
) -> BatchDetailResponse:
    """Create a new batch in draft status."""
    batch = manager.create_batch(
        company_id,
        payload.batch_type,
        payload.effective_date,
        [_entry_input(e) for e in payload.entries],
        metadata=payload.metadata,
        created_by=payload.created_by,
    )
    return _detail(batch)


@router.post(
    "/from-calculation",
    response_model=BatchDetailResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
def create_batch_from_calculation(
    company_id: CompanyId,
    manager: Batches,
    payload: CalculationBatchCreate,
) -> BatchDetailResponse:
    """Build a payroll batch from payroll calculation output."""
    calc = CalculationResult(
        lines=tuple(
            CalculationLine(
                employee_id=line.employee_id,
                employee_name=line.employee_name,
                net_pay=line.net_pay,
                bank_account=BankAccount(**line.bank_account.model_dump()),
                garnishments=tuple(GarnishmentInput(**g.model_dump()) for g in line.garnishments),
            )
            for line in payload.lines
        ),
        pay_date=payload.pay_date,
        pay_run_id=payload.pay_run_id,
    )
    batch = manager.create_batch_from_calculation_source(
        company_id,
        calc,
        effective_date=payload.effective_date,
        created_by=payload.created_by,
    )
    return _detail(batch)


@router.get("", response_model=BatchListResponse)
def list_batches(
    company_id: CompanyId,
    manager: Batches,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> BatchListResponse:
    """List batches for a company, most recent first."""
    batches = manager.list_batches(company_id, status=status_filter, limit=limit)
    return BatchListResponse(
        items=[BatchResponse.model_validate(b) for b in batches],
        total=len(batches),
    )


@router.get(
    "/{batch_id}",
    response_model=BatchDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_batch(
    db: DbSession,
    company_id: CompanyId,
    batch_id: Annotated[UUID, Path()],
) -> BatchDetailResponse:
    """Get a batch with its entries."""
    return _detail(owned_batch(db, company_id, batch_id))


# ============================================================================
# Draft mutation
# ============================================================================


@router.post(
    "/{batch_id}/entries",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def add_entry(
    db: DbSession,
    company_id: CompanyId,
    manager: Batches,
    batch_id: Annotated[UUID, Path()],
    payload: EntryCreate,
) -> EntryResponse:
    """Append an entry to a draft batch."""
    owned_batch(db, company_id, batch_id)
    entry = manager.add_entry(batch_id, _entry_input(payload))
    return EntryResponse.model_validate(entry)


@router.delete(
    "/{batch_id}/entries/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def remove_entry(
    db: DbSession,
    company_id: CompanyId,
    manager: Batches,
    batch_id: Annotated[UUID, Path()],
    entry_id: Annotated[UUID, Path()],
) -> None:
    """Remove an entry from a draft batch."""
    owned_batch(db, company_id, batch_id)
    manager.remove_entry(batch_id, entry_id)


@router.post(
    "/{batch_id}/cancel",
    response_model=BatchResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def cancel_batch(
    db: DbSession,
    company_id: CompanyId,
    manager: Batches,
    batch_id: Annotated[UUID, Path()],
    payload: CancelRequest,
) -> BatchResponse:
    """Cancel a batch that has not been submitted."""
    owned_batch(db, company_id, batch_id)
    batch = manager.cancel_batch(batch_id, payload.reason, actor=payload.actor)
    return BatchResponse.model_validate(batch)


# ============================================================================
# Risk evaluation and submission
# ============================================================================


@router.post(
    "/{batch_id}/evaluate",
    response_model=EvaluationResponse,
    responses={404: {"model": ErrorResponse}},
)
def evaluate_batch(
    request: Request,
    db: DbSession,
    company_id: CompanyId,
    evaluator: Evaluator,
    batch_id: Annotated[UUID, Path()],
) -> EvaluationResponse:
    """Run the company's risk controls against a batch and record the findings."""
    batch = owned_batch(db, company_id, batch_id)
    with request.app.state.emitter.batch(), unit_of_work(db):
        result = evaluator.evaluate(batch)
    return EvaluationResponse(
        action=result.action,
        requires_approval=result.requires_approval,
        hard_stop_reasons=result.hard_stop_reasons,
        hold_until=result.hold_until,
        events=[RiskEventResponse.model_validate(e) for e in result.events],
    )


@router.post(
    "/{batch_id}/submit",
    response_model=SubmissionResponse,
    responses={
        404: {"model": ErrorResponse},
        412: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def submit_batch(
    db: DbSession,
    company_id: CompanyId,
    gateway: Gateway,
    batch_id: Annotated[UUID, Path()],
    payload: SubmitRequest | None = None,
) -> SubmissionResponse:
    """Submit an approved batch to a payment provider."""
    owned_batch(db, company_id, batch_id)
    payload = payload or SubmitRequest()
    outcome = gateway.submit_to_provider(
        batch_id, provider_id=payload.provider_id, actor=payload.actor
    )
    return SubmissionResponse(
        success=outcome.success,
        batch_id=outcome.batch_id,
        submission_status=outcome.submission_status,
        provider_batch_id=outcome.provider_batch_id,
        confirmation_number=outcome.confirmation_number,
        estimated_settlement_date=outcome.estimated_settlement_date,
        errors=list(outcome.errors),
        warnings=list(outcome.warnings),
        rejected_entries=outcome.rejected_entries,
    )


@router.post(
    "/{batch_id}/reconcile",
    response_model=BatchResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def reconcile_batch(
    db: DbSession,
    company_id: CompanyId,
    gateway: Gateway,
    batch_id: Annotated[UUID, Path()],
) -> BatchResponse:
    """Poll the provider for a batch whose submission outcome is unknown."""
    owned_batch(db, company_id, batch_id)
    return BatchResponse.model_validate(gateway.reconcile(batch_id))


@router.get(
    "/{batch_id}/nacha",
    response_model=NachaResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_nacha_file(
    db: DbSession,
    company_id: CompanyId,
    gateway: Gateway,
    batch_id: Annotated[UUID, Path()],
) -> NachaResponse:
    """Render the batch as a NACHA file without submitting it."""
    nacha = gateway.generate_nacha_file(owned_batch(db, company_id, batch_id))
    return NachaResponse(
        content=nacha.content,
        content_hash=nacha.content_hash,
        entry_hash=nacha.entry_hash,
        entry_count=nacha.entry_count,
        total_debit=nacha.total_debit,
        total_credit=nacha.total_credit,
    )
