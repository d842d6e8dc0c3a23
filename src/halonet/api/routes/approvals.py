"""Approval workflow API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from halonet.api.dependencies import Approvals, CompanyId, DbSession, owned_batch, require_owned
from halonet.api.schemas import (
    ApprovalCreate,
    ApprovalResponse,
    ApproveRequest,
    ErrorResponse,
    RejectRequest,
    TwoFactorCodeRequest,
    TwoFactorCodeResponse,
)

router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.post(
    "",
    response_model=ApprovalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def request_approval(
    db: DbSession,
    company_id: CompanyId,
    workflow: Approvals,
    payload: ApprovalCreate,
) -> ApprovalResponse:
    """Open an approval request for a batch."""
    owned_batch(db, company_id, payload.batch_id)
    approval = workflow.request_approval(
        payload.batch_id,
        reason=payload.reason,
        requested_by=payload.requested_by,
        required_approvers=payload.required_approvers,
        approval_threshold=payload.approval_threshold,
        requires_2fa=payload.requires_2fa,
        request_type=payload.request_type,
    )
    return ApprovalResponse.model_validate(approval)


@router.get("/pending", response_model=list[ApprovalResponse])
def list_pending(
    company_id: CompanyId,
    workflow: Approvals,
) -> list[ApprovalResponse]:
    """List live pending approval requests, oldest first."""
    return [ApprovalResponse.model_validate(r) for r in workflow.list_pending(company_id)]


@router.get(
    "/{request_id}",
    response_model=ApprovalResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_approval(
    company_id: CompanyId,
    workflow: Approvals,
    request_id: Annotated[UUID, Path()],
) -> ApprovalResponse:
    """Get an approval request with its recorded decisions."""
    approval = require_owned(
        workflow.get_request(request_id), company_id, "ApprovalRequest", request_id
    )
    return ApprovalResponse.model_validate(approval)


@router.post(
    "/{request_id}/2fa-code",
    response_model=TwoFactorCodeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
    },
)
def issue_two_factor_code(
    company_id: CompanyId,
    workflow: Approvals,
    request_id: Annotated[UUID, Path()],
    payload: TwoFactorCodeRequest,
) -> TwoFactorCodeResponse:
    """Issue a one-time code for a required approver.

    The code comes back in the response for the caller to deliver to the
    approver out of band. A new code replaces any outstanding one.
    """
    require_owned(workflow.get_request(request_id), company_id, "ApprovalRequest", request_id)
    code = workflow.issue_two_factor_code(request_id, payload.approver)
    return TwoFactorCodeResponse(request_id=request_id, approver=payload.approver, code=code)


@router.post(
    "/{request_id}/approve",
    response_model=ApprovalResponse,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
    },
)
def approve(
    company_id: CompanyId,
    workflow: Approvals,
    request_id: Annotated[UUID, Path()],
    payload: ApproveRequest,
) -> ApprovalResponse:
    """Record one approver's approval."""
    require_owned(workflow.get_request(request_id), company_id, "ApprovalRequest", request_id)
    approval = workflow.approve(
        request_id,
        payload.approver,
        comments=payload.comments,
        two_factor_code=payload.two_factor_code,
    )
    return ApprovalResponse.model_validate(approval)


@router.post(
    "/{request_id}/reject",
    response_model=ApprovalResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
    },
)
def reject(
    company_id: CompanyId,
    workflow: Approvals,
    request_id: Annotated[UUID, Path()],
    payload: RejectRequest,
) -> ApprovalResponse:
    """Reject an approval request. Comments are required."""
    require_owned(workflow.get_request(request_id), company_id, "ApprovalRequest", request_id)
    approval = workflow.reject(request_id, payload.approver, payload.comments)
    return ApprovalResponse.model_validate(approval)
