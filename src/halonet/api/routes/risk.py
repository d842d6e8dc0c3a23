"""Risk control and risk event API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from halonet.api.dependencies import CompanyId, Recorder, RiskControls, require_owned
from halonet.api.schemas import (
    ErrorResponse,
    ResolveRequest,
    RiskControlCreate,
    RiskControlResponse,
    RiskControlUpdate,
    RiskEventResponse,
)

router = APIRouter(prefix="/risk", tags=["risk"])


# ============================================================================
# Risk controls
# ============================================================================


@router.post(
    "/controls",
    response_model=RiskControlResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
def create_control(
    company_id: CompanyId,
    controls: RiskControls,
    payload: RiskControlCreate,
) -> RiskControlResponse:
    """Create a risk control for the company."""
    control = controls.create(company_id, **payload.model_dump())
    return RiskControlResponse.model_validate(control)


@router.get("/controls", response_model=list[RiskControlResponse])
def list_controls(
    company_id: CompanyId,
    controls: RiskControls,
    active_only: bool = False,
) -> list[RiskControlResponse]:
    """List the company's risk controls in evaluation order."""
    return [
        RiskControlResponse.model_validate(c)
        for c in controls.list(company_id, active_only=active_only)
    ]


@router.patch(
    "/controls/{control_id}",
    response_model=RiskControlResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def update_control(
    company_id: CompanyId,
    controls: RiskControls,
    control_id: Annotated[UUID, Path()],
    payload: RiskControlUpdate,
) -> RiskControlResponse:
    """Partially update a risk control."""
    require_owned(controls.get(control_id), company_id, "RiskControl", control_id)
    control = controls.update(control_id, **payload.model_dump(exclude_unset=True))
    return RiskControlResponse.model_validate(control)


# ============================================================================
# Risk events
# ============================================================================


@router.get("/events", response_model=list[RiskEventResponse])
def list_events(
    company_id: CompanyId,
    recorder: Recorder,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    batch_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[RiskEventResponse]:
    """List risk events, most recent first."""
    events = recorder.list_events(company_id, status=status_filter, batch_id=batch_id, limit=limit)
    return [RiskEventResponse.model_validate(e) for e in events]


@router.post(
    "/events/{event_id}/resolve",
    response_model=RiskEventResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def resolve_event(
    company_id: CompanyId,
    recorder: Recorder,
    event_id: Annotated[UUID, Path()],
    payload: ResolveRequest,
) -> RiskEventResponse:
    """Close an active risk event."""
    require_owned(recorder.get_event(event_id), company_id, "RiskEvent", event_id)
    event = recorder.resolve(
        event_id, payload.resolver, notes=payload.notes, status=payload.status
    )
    return RiskEventResponse.model_validate(event)
