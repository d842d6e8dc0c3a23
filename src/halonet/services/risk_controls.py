"""Risk control management.

Configuration is validated against the typed variants in
``halonet.risk_rules`` before it is stored, so the evaluator never meets a
malformed control.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from halonet.exceptions import NotFoundError, ValidationError
from halonet.models import RiskControl
from halonet.risk_rules import dump_config, parse_action_config, parse_threshold_config
from halonet.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"name", "is_active", "threshold_config", "action_type", "action_config", "priority"}
)


class RiskControlService:
    """Create, update and list company risk controls."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        company_id: UUID,
        control_type: str,
        name: str,
        threshold_config: dict[str, Any],
        action_type: str,
        action_config: dict[str, Any] | None = None,
        priority: int = 100,
        is_active: bool = True,
    ) -> RiskControl:
        """Validate and store a new control.

        Raises:
            ValidationError: unknown type, or configuration that does not
                match the control or action type.
        """
        if not name:
            raise ValidationError("Risk control name is required")
        threshold = parse_threshold_config(control_type, threshold_config)
        action = parse_action_config(action_type, action_config)

        with unit_of_work(self.db):
            control = RiskControl(
                company_id=company_id,
                control_type=control_type,
                name=name,
                is_active=is_active,
                threshold_config=dump_config(threshold),
                action_type=action_type,
                action_config=dump_config(action),
                priority=priority,
            )
            self.db.add(control)
            self.db.flush()

        logger.info(
            "Created risk control %s (%s -> %s) for company %s",
            name,
            control_type,
            action_type,
            company_id,
        )
        return control

    def get(self, control_id: UUID) -> RiskControl | None:
        return self.db.get(RiskControl, control_id)

    def update(self, control_id: UUID, **changes: Any) -> RiskControl:
        """Apply a partial update, revalidating the resulting configuration."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with unit_of_work(self.db):
            control = self.get(control_id)
            if control is None:
                raise NotFoundError("RiskControl", control_id)

            threshold = parse_threshold_config(
                control.control_type,
                changes.get("threshold_config", control.threshold_config),
            )
            action_type = changes.get("action_type", control.action_type)
            # Action options do not carry over to a different action type
            default_action_config = (
                control.action_config if action_type == control.action_type else {}
            )
            action = parse_action_config(
                action_type, changes.get("action_config", default_action_config)
            )

            control.threshold_config = dump_config(threshold)
            control.action_type = action_type
            control.action_config = dump_config(action)
            if "name" in changes:
                control.name = changes["name"]
            if "is_active" in changes:
                control.is_active = bool(changes["is_active"])
            if "priority" in changes:
                control.priority = int(changes["priority"])
            self.db.flush()

        logger.info("Updated risk control %s: %s", control_id, sorted(changes))
        return control

    def list(self, company_id: UUID, active_only: bool = False) -> list[RiskControl]:
        stmt = select(RiskControl).where(RiskControl.company_id == company_id)
        if active_only:
            stmt = stmt.where(RiskControl.is_active.is_(True))
        stmt = stmt.order_by(RiskControl.priority, RiskControl.created_at)
        return list(self.db.scalars(stmt))
