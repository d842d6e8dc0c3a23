"""Payment entry API endpoints: voids and ACH returns."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from halonet.api.dependencies import CompanyId, DbSession, Gateway, require_owned
from halonet.api.schemas import EntryResponse, ErrorResponse, ReturnRequest, VoidRequest
from halonet.models import PaymentEntry

router = APIRouter(prefix="/entries", tags=["entries"])


def _owned_entry(db, company_id: UUID, entry_id: UUID) -> PaymentEntry:
    entry = db.get(PaymentEntry, entry_id)
    require_owned(entry.batch if entry is not None else None, company_id, "PaymentEntry", entry_id)
    return entry


@router.post(
    "/{entry_id}/void",
    response_model=EntryResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def void_entry(
    db: DbSession,
    company_id: CompanyId,
    gateway: Gateway,
    entry_id: Annotated[UUID, Path()],
    payload: VoidRequest,
) -> EntryResponse:
    """Void one entry that has not settled."""
    _owned_entry(db, company_id, entry_id)
    entry = gateway.void_payment(entry_id, payload.reason, actor=payload.actor)
    return EntryResponse.model_validate(entry)


@router.post(
    "/{entry_id}/return",
    response_model=EntryResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def return_entry(
    db: DbSession,
    company_id: CompanyId,
    gateway: Gateway,
    entry_id: Annotated[UUID, Path()],
    payload: ReturnRequest,
) -> EntryResponse:
    """Record an ACH return against one entry."""
    _owned_entry(db, company_id, entry_id)
    entry = gateway.process_return(
        entry_id, payload.return_code, reason=payload.reason, nsf_fee=payload.nsf_fee
    )
    return EntryResponse.model_validate(entry)
