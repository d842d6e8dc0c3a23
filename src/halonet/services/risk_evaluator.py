"""Risk control evaluator.

Runs a company's active risk controls against a batch. Controls are read
fresh on every call, in ascending priority, so a control edited between
batch creation and submission is honoured at submission time.

Outcome precedence is block > delay > flag > allow. A ``require_approval``
control ranks as ``flag`` and additionally marks the batch as needing
approval. The first ``block`` control to fire ends the evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Protocol, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from halonet.models import PaymentBatch, PaymentEntry, RiskControl, RiskEvent, ensure_utc, utcnow
from halonet.risk_rules import (
    AccountValidationConfig,
    AmountThresholdConfig,
    TimeRestrictionConfig,
    VelocityCheckConfig,
    parse_action_config,
    parse_threshold_config,
)
from halonet.services.risk_events import RiskEventRecorder
from halonet.services.state_machine import BatchStatus
from halonet.validation import is_valid_account_number, is_valid_routing_number

logger = logging.getLogger(__name__)

ACTION_RANK: dict[str, int] = {"allow": 0, "flag": 1, "delay": 2, "block": 3}

SEVERITY_SCORE: dict[str, int] = {"low": 25, "medium": 50, "high": 75, "critical": 90}


def rail_action(action_type: str) -> str:
    """Map a control action onto the allow/flag/delay/block scale."""
    return "flag" if action_type == "require_approval" else action_type


def risk_score(severity: str, overage_ratio: Decimal | None = None) -> int:
    """Severity base score, raised by up to 10 points for large overages."""
    score = SEVERITY_SCORE[severity]
    if overage_ratio is not None and overage_ratio > 1:
        score += min(10, int((overage_ratio - 1) * 10))
    return min(100, score)


@dataclass
class EvaluationResult:
    """Outcome of one evaluation pass."""

    action: str = "allow"
    events: list[RiskEvent] = field(default_factory=list)
    requires_approval: bool = False
    hard_stop_reasons: list[str] = field(default_factory=list)
    hold_until: datetime | None = None

    @property
    def blocked(self) -> bool:
        """Whether the provider must not be called."""
        return self.action == "block" or bool(self.hard_stop_reasons)


@dataclass(frozen=True)
class Finding:
    """A single control firing before it is recorded."""

    factors: list[dict[str, Any]]
    overage_ratio: Decimal | None = None
    entry: PaymentEntry | None = None


class BatchHistory(Protocol):
    """Read access to a company's recent batch activity."""

    def window_totals(
        self,
        company_id: UUID,
        since: datetime,
        exclude_batch_id: UUID | None = None,
    ) -> tuple[int, Decimal]:
        """Count and total amount of batches created since ``since``."""
        ...


class SqlBatchHistory:
    """BatchHistory backed by the payment_batch table."""

    def __init__(self, db: Session):
        self.db = db

    def window_totals(
        self,
        company_id: UUID,
        since: datetime,
        exclude_batch_id: UUID | None = None,
    ) -> tuple[int, Decimal]:
        stmt = select(
            func.count(PaymentBatch.id),
            func.coalesce(func.sum(PaymentBatch.total_amount), 0),
        ).where(
            PaymentBatch.company_id == company_id,
            PaymentBatch.created_at >= since,
            PaymentBatch.status != BatchStatus.CANCELLED.value,
        )
        if exclude_batch_id is not None:
            stmt = stmt.where(PaymentBatch.id != exclude_batch_id)
        count, total = self.db.execute(stmt).one()
        return int(count), Decimal(str(total)).quantize(Decimal("0.01"))


class RiskControlEvaluator:
    """Evaluates active risk controls against a batch and its entries."""

    def __init__(
        self,
        db: Session,
        recorder: RiskEventRecorder | None = None,
        history: BatchHistory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.recorder = recorder or RiskEventRecorder(db, clock=clock)
        self.history = history or SqlBatchHistory(db)
        self.clock = clock

    def active_controls(self, company_id: UUID) -> list[RiskControl]:
        """Active controls for a company in evaluation order."""
        stmt = (
            select(RiskControl)
            .where(RiskControl.company_id == company_id, RiskControl.is_active.is_(True))
            .order_by(RiskControl.priority, RiskControl.created_at, RiskControl.id)
        )
        return list(self.db.scalars(stmt))

    def evaluate(
        self,
        batch: PaymentBatch,
        entries: Sequence[PaymentEntry] | None = None,
    ) -> EvaluationResult:
        """Run every active control and persist the outcome on the batch.

        Args:
            batch: Batch under evaluation.
            entries: Entries to check; defaults to the batch's own entries.

        Returns:
            EvaluationResult. Recorded events and the batch's risk fields are
            flushed, not committed.
        """
        entries = list(batch.entries if entries is None else entries)
        now = self.clock()
        result = EvaluationResult()
        delay_hours = 0

        for control in self.active_controls(batch.company_id):
            threshold = parse_threshold_config(control.control_type, control.threshold_config)
            action = parse_action_config(control.action_type, control.action_config)

            finding = self._check(control, threshold, batch, entries, now)
            if finding is None:
                continue

            severity = action.effective_severity
            event = self.recorder.record(
                control,
                batch,
                finding.entry,
                score=risk_score(severity, finding.overage_ratio),
                factors=finding.factors,
                severity=severity,
                action_taken=control.action_type,
            )
            result.events.append(event)

            mapped = rail_action(control.action_type)
            if ACTION_RANK[mapped] > ACTION_RANK[result.action]:
                result.action = mapped
            if control.action_type == "require_approval":
                result.requires_approval = True
            if control.action_type == "delay":
                delay_hours = max(delay_hours, action.effective_delay_hours)
            if control.control_type == "account_validation":
                result.hard_stop_reasons.extend(
                    f"{control.name}: {f['reason']}" for f in finding.factors
                )

            if control.action_type == "block":
                logger.info(
                    "Batch %s blocked by control %s; skipping remaining controls",
                    batch.batch_number,
                    control.name,
                )
                break

        self._persist(batch, result, now, delay_hours)
        logger.info(
            "Evaluated batch %s: action=%s events=%d requires_approval=%s",
            batch.batch_number,
            result.action,
            len(result.events),
            result.requires_approval,
        )
        return result

    def approval_required(
        self,
        company_id: UUID,
        total_amount: Decimal,
        entry_count: int,
        largest_entry: Decimal | None = None,
    ) -> bool:
        """Whether an amount threshold with a require_approval action would fire.

        Read-only; used when a batch is created, before any row exists.
        """
        for control in self.active_controls(company_id):
            if control.control_type != "amount_threshold":
                continue
            if control.action_type != "require_approval":
                continue
            config = parse_threshold_config(control.control_type, control.threshold_config)
            if config.max_batch_amount is not None and total_amount > config.max_batch_amount:
                return True
            if config.max_entry_count is not None and entry_count > config.max_entry_count:
                return True
            if (
                config.max_entry_amount is not None
                and largest_entry is not None
                and largest_entry > config.max_entry_amount
            ):
                return True
        return False

    def _persist(
        self,
        batch: PaymentBatch,
        result: EvaluationResult,
        now: datetime,
        delay_hours: int,
    ) -> None:
        batch.risk_action = result.action
        batch.risk_evaluated_at = now
        if result.action == "delay":
            # A hold is placed once; later evaluations keep the original deadline
            if batch.hold_until is None:
                batch.hold_until = now + timedelta(hours=delay_hours)
            result.hold_until = ensure_utc(batch.hold_until)
        if result.requires_approval and batch.status == BatchStatus.DRAFT:
            batch.requires_approval = True
        self.db.flush()

    # ------------------------------------------------------------------
    # Per control type checks
    # ------------------------------------------------------------------

    def _check(
        self,
        control: RiskControl,
        threshold: Any,
        batch: PaymentBatch,
        entries: list[PaymentEntry],
        now: datetime,
    ) -> Finding | None:
        if isinstance(threshold, AmountThresholdConfig):
            return self._check_amount(threshold, batch, entries)
        if isinstance(threshold, VelocityCheckConfig):
            return self._check_velocity(threshold, batch, now)
        if isinstance(threshold, AccountValidationConfig):
            return self._check_accounts(threshold, entries)
        if isinstance(threshold, TimeRestrictionConfig):
            return self._check_time(threshold, batch, now)
        raise TypeError(f"Unhandled control type {control.control_type}")

    def _check_amount(
        self,
        config: AmountThresholdConfig,
        batch: PaymentBatch,
        entries: list[PaymentEntry],
    ) -> Finding | None:
        factors: list[dict[str, Any]] = []
        ratios: list[Decimal] = []
        offenders: list[PaymentEntry] = []

        if config.max_batch_amount is not None and batch.total_amount > config.max_batch_amount:
            factors.append({
                "check": "max_batch_amount",
                "limit": str(config.max_batch_amount),
                "observed": str(batch.total_amount),
            })
            ratios.append(batch.total_amount / config.max_batch_amount)

        if config.max_entry_count is not None and len(entries) > config.max_entry_count:
            factors.append({
                "check": "max_entry_count",
                "limit": config.max_entry_count,
                "observed": len(entries),
            })
            ratios.append(Decimal(len(entries)) / config.max_entry_count)

        if config.max_entry_amount is not None:
            for entry in entries:
                if entry.amount > config.max_entry_amount:
                    offenders.append(entry)
                    factors.append({
                        "check": "max_entry_amount",
                        "limit": str(config.max_entry_amount),
                        "observed": str(entry.amount),
                        "entry_id": str(entry.id),
                        "sequence": entry.sequence,
                    })
                    ratios.append(entry.amount / config.max_entry_amount)

        if not factors:
            return None
        return Finding(
            factors=factors,
            overage_ratio=max(ratios),
            entry=offenders[0] if len(offenders) == 1 and len(factors) == 1 else None,
        )

    def _check_velocity(
        self,
        config: VelocityCheckConfig,
        batch: PaymentBatch,
        now: datetime,
    ) -> Finding | None:
        since = now - timedelta(hours=config.window_hours)
        prior_count, prior_total = self.history.window_totals(
            batch.company_id, since, exclude_batch_id=batch.id
        )
        count = prior_count + 1
        total = prior_total + batch.total_amount

        factors: list[dict[str, Any]] = []
        ratios: list[Decimal] = []
        if config.max_batches is not None and count > config.max_batches:
            factors.append({
                "check": "max_batches",
                "window_hours": config.window_hours,
                "limit": config.max_batches,
                "observed": count,
            })
            ratios.append(Decimal(count) / config.max_batches)
        if config.max_total_amount is not None and total > config.max_total_amount:
            factors.append({
                "check": "max_total_amount",
                "window_hours": config.window_hours,
                "limit": str(config.max_total_amount),
                "observed": str(total),
            })
            ratios.append(total / config.max_total_amount)

        if not factors:
            return None
        return Finding(factors=factors, overage_ratio=max(ratios))

    def _check_accounts(
        self,
        config: AccountValidationConfig,
        entries: list[PaymentEntry],
    ) -> Finding | None:
        factors: list[dict[str, Any]] = []
        offenders: list[PaymentEntry] = []
        blocked = set(config.blocked_routing_numbers)

        for entry in entries:
            reasons: list[str] = []
            if config.check_routing_checksum and not is_valid_routing_number(entry.routing_number):
                reasons.append("routing number fails ABA checksum")
            if entry.routing_number in blocked:
                reasons.append("routing number is blocked")
            if not is_valid_account_number(
                entry.account_number,
                config.min_account_length,
                config.max_account_length,
            ):
                reasons.append("account number format is invalid")
            if reasons:
                offenders.append(entry)
                for reason in reasons:
                    factors.append({
                        "check": "account_validation",
                        "entry_id": str(entry.id),
                        "sequence": entry.sequence,
                        "account": entry.masked_account_number,
                        "reason": f"entry {entry.sequence}: {reason}",
                    })

        if not factors:
            return None
        return Finding(factors=factors, entry=offenders[0] if len(offenders) == 1 else None)

    def _check_time(
        self,
        config: TimeRestrictionConfig,
        batch: PaymentBatch,
        now: datetime,
    ) -> Finding | None:
        local = now.astimezone(ZoneInfo(config.timezone))
        factors: list[dict[str, Any]] = []

        if local.weekday() not in config.allowed_weekdays:
            factors.append({
                "check": "weekday",
                "observed": local.strftime("%A"),
                "timezone": config.timezone,
            })
        elif not (config.start_hour <= local.hour < config.end_hour):
            factors.append({
                "check": "hour",
                "observed": local.strftime("%H:%M"),
                "window": f"{config.start_hour:02d}:00-{config.end_hour:02d}:00",
                "timezone": config.timezone,
            })

        if not config.allow_weekend_effective_date and batch.effective_date.weekday() >= 5:
            factors.append({
                "check": "weekend_effective_date",
                "observed": batch.effective_date.isoformat(),
            })

        if not factors:
            return None
        return Finding(factors=factors)
