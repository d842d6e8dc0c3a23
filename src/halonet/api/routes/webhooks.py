"""Webhook registration and provider callback endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, Path, Request, status

from halonet.api.dependencies import CompanyId, Webhooks, require_owned
from halonet.api.schemas import (
    BatchResponse,
    ErrorResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
)
from halonet.models import WebhookRegistration

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
def register_webhook(
    company_id: CompanyId,
    webhooks: Webhooks,
    payload: WebhookCreate,
) -> WebhookCreatedResponse:
    """Register a provider callback endpoint. The secret is returned only here."""
    registration = webhooks.register(
        company_id, payload.webhook_url, event_types=payload.event_types, secret=payload.secret
    )
    return WebhookCreatedResponse.model_validate(registration)


@router.get("", response_model=list[WebhookResponse])
def list_webhooks(
    company_id: CompanyId,
    webhooks: Webhooks,
    active_only: bool = True,
) -> list[WebhookResponse]:
    return [
        WebhookResponse.model_validate(r) for r in webhooks.list(company_id, active_only=active_only)
    ]


@router.delete(
    "/{registration_id}",
    response_model=WebhookResponse,
    responses={404: {"model": ErrorResponse}},
)
def deactivate_webhook(
    company_id: CompanyId,
    webhooks: Webhooks,
    registration_id: Annotated[UUID, Path()],
) -> WebhookResponse:
    """Deactivate a registration; it stops authenticating callbacks."""
    require_owned(
        webhooks.db.get(WebhookRegistration, registration_id),
        company_id,
        "WebhookRegistration",
        registration_id,
    )
    return WebhookResponse.model_validate(webhooks.deactivate(registration_id))


@router.post(
    "/provider",
    response_model=BatchResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def provider_callback(
    request: Request,
    company_id: CompanyId,
    webhooks: Webhooks,
    x_signature: Annotated[str | None, Header()] = None,
) -> BatchResponse:
    """Apply a signed status callback from the payment provider.

    The signature covers the raw request body, so the body is read
    before any JSON parsing.
    """
    body = await request.body()
    batch = webhooks.handle_provider_callback(company_id, body, x_signature)
    return BatchResponse.model_validate(batch)
