"""Company payment settings endpoints."""

from fastapi import APIRouter

from halonet.api.dependencies import CompanyId, CompanySettings
from halonet.api.schemas import CompanySettingsResponse, CompanySettingsUpdate, ErrorResponse
from halonet.exceptions import NotFoundError

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get(
    "",
    response_model=CompanySettingsResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_settings(
    company_id: CompanyId,
    service: CompanySettings,
) -> CompanySettingsResponse:
    settings = service.get(company_id)
    if settings is None:
        raise NotFoundError("CompanyPaymentSettings", company_id)
    return CompanySettingsResponse.model_validate(settings)


@router.put(
    "",
    response_model=CompanySettingsResponse,
    responses={422: {"model": ErrorResponse}},
)
def update_settings(
    company_id: CompanyId,
    service: CompanySettings,
    payload: CompanySettingsUpdate,
) -> CompanySettingsResponse:
    """Create or partially update approval, garnishment and submission settings."""
    settings = service.upsert(company_id, **payload.model_dump(exclude_unset=True))
    return CompanySettingsResponse.model_validate(settings)
