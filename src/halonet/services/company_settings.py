"""Company payment settings lookup and maintenance."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from halonet.exceptions import ValidationError
from halonet.models import CompanyPaymentSettings
from halonet.services.garnishment import POLICIES
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

SETTINGS_FIELDS = frozenset(
    {
        "approvers",
        "approval_threshold",
        "requires_2fa",
        "approval_ttl_hours",
        "default_approver",
        "garnishment_policy",
        "allow_partial_acceptance",
    }
)


def get_company_settings(db: Session, company_id: UUID) -> CompanyPaymentSettings | None:
    return db.scalars(
        select(CompanyPaymentSettings).where(CompanyPaymentSettings.company_id == company_id)
    ).one_or_none()


class CompanySettingsService:
    """Reads and writes per-company payment policy."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, company_id: UUID) -> CompanyPaymentSettings | None:
        return get_company_settings(self.db, company_id)

    def upsert(self, company_id: UUID, **values: Any) -> CompanyPaymentSettings:
        """Create or partially update a company's settings."""
        unknown = set(values) - SETTINGS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if "garnishment_policy" in values and values["garnishment_policy"] not in POLICIES:
            raise ValidationError(
                f"garnishment_policy must be one of {', '.join(POLICIES)}"
            )

        with unit_of_work(self.db):
            settings = self.get(company_id)
            if settings is None:
                settings = CompanyPaymentSettings(company_id=company_id)
                self.db.add(settings)
            for name, value in values.items():
                setattr(settings, name, value)

            approvers = list(settings.approvers or [])
            threshold = settings.approval_threshold
            if threshold is not None and threshold < 1:
                raise ValidationError("approval_threshold must be at least 1")
            if threshold is not None and approvers and threshold > len(approvers):
                raise ValidationError(
                    f"approval_threshold {threshold} exceeds {len(approvers)} approvers"
                )
            if settings.approval_ttl_hours is not None and settings.approval_ttl_hours < 1:
                raise ValidationError("approval_ttl_hours must be at least 1")
            self.db.flush()

        logger.info("Updated payment settings for company %s: %s", company_id, sorted(values))
        return settings
