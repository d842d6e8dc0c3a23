"""Provider webhook registrations and signed callback handling.

Callbacks are authenticated with an HMAC-SHA256 hex digest of the raw
request body, keyed by the registration's shared secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from halonet.exceptions import AuthorizationError, NotFoundError, ValidationError
from halonet.models import PaymentBatch, WebhookRegistration
from halonet.providers import EntryUpdate
from halonet.services.submission_gateway import SubmissionGateway
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

CALLBACK_EVENT_TYPES = ("batch_status", "entry_return")

SIGNATURE_PREFIX = "sha256="


def build_signature(secret: str, payload: bytes) -> str:
    """HMAC SHA256 hex signature of a webhook body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    """Constant-time check of a signature, with or without a ``sha256=`` prefix."""
    if not signature:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(build_signature(secret, payload), signature.lower())


class CallbackEntryUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entry_id: UUID
    status: Literal["processing", "completed", "returned", "failed"]
    return_code: str | None = Field(default=None, pattern=r"^R\d{2}$")
    reason: str | None = None


class ProviderCallback(BaseModel):
    """Body of a provider status callback."""

    model_config = ConfigDict(extra="ignore")

    event_type: Literal["batch_status", "entry_return"] = "batch_status"
    batch_id: UUID
    status: Literal["accepted", "processing", "completed", "failed"] = "accepted"
    entry_updates: list[CallbackEntryUpdate] = Field(default_factory=list)


class WebhookService:
    """Registers webhook endpoints and applies signed provider callbacks."""

    def __init__(self, db: Session, gateway: SubmissionGateway):
        self.db = db
        self.gateway = gateway

    def register(
        self,
        company_id: UUID,
        webhook_url: str,
        event_types: list[str] | None = None,
        secret: str | None = None,
    ) -> WebhookRegistration:
        """Register an endpoint; a secret is generated when none is given."""
        if not webhook_url.startswith(("https://", "http://")):
            raise ValidationError("webhook_url must be an http(s) URL")
        event_types = list(event_types or CALLBACK_EVENT_TYPES)
        unknown = [t for t in event_types if t not in CALLBACK_EVENT_TYPES]
        if unknown:
            raise ValidationError(f"Unknown webhook event types: {', '.join(unknown)}")

        with unit_of_work(self.db):
            registration = WebhookRegistration(
                company_id=company_id,
                webhook_url=webhook_url,
                event_types=event_types,
                secret=secret or secrets.token_hex(32),
                is_active=True,
            )
            self.db.add(registration)
            self.db.flush()

        logger.info("Registered webhook %s for company %s", webhook_url, company_id)
        return registration

    def list(self, company_id: UUID, active_only: bool = True) -> list[WebhookRegistration]:
        stmt = select(WebhookRegistration).where(WebhookRegistration.company_id == company_id)
        if active_only:
            stmt = stmt.where(WebhookRegistration.is_active.is_(True))
        return list(self.db.scalars(stmt.order_by(WebhookRegistration.created_at)))

    def deactivate(self, registration_id: UUID) -> WebhookRegistration:
        with unit_of_work(self.db):
            registration = self.db.get(WebhookRegistration, registration_id)
            if registration is None:
                raise NotFoundError("WebhookRegistration", registration_id)
            registration.is_active = False
            self.db.flush()
        return registration

    def handle_provider_callback(
        self,
        company_id: UUID,
        body: bytes,
        signature: str | None,
    ) -> PaymentBatch:
        """Authenticate and apply a provider status callback.

        Raises:
            AuthorizationError: no active registration's secret matches.
            ValidationError: malformed body or an event type the matching
                registration does not accept.
            NotFoundError: the batch does not belong to the company.
        """
        registration = self._match_registration(company_id, body, signature)

        try:
            callback = ProviderCallback.model_validate(json.loads(body))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            raise ValidationError(f"Malformed provider callback: {exc}") from exc

        if callback.event_type not in registration.event_types:
            raise ValidationError(
                f"Registration does not accept {callback.event_type} callbacks"
            )

        batch = self.db.get(PaymentBatch, callback.batch_id)
        if batch is None or batch.company_id != company_id:
            raise NotFoundError("PaymentBatch", callback.batch_id)

        updates = [
            EntryUpdate(
                entry_id=str(u.entry_id),
                status=u.status,
                return_code=u.return_code,
                reason=u.reason,
            )
            for u in callback.entry_updates
        ]
        logger.info(
            "Provider callback %s for batch %s: status=%s updates=%d",
            callback.event_type,
            batch.batch_number,
            callback.status,
            len(updates),
        )
        return self.gateway.apply_provider_update(batch.id, callback.status, updates)

    def _match_registration(
        self, company_id: UUID, body: bytes, signature: str | None
    ) -> WebhookRegistration:
        for registration in self.list(company_id):
            if verify_signature(registration.secret, body, signature):
                return registration
        logger.warning("Rejected provider callback for company %s: bad signature", company_id)
        raise AuthorizationError("Webhook signature verification failed")

