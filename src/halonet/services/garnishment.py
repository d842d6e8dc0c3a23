"""Garnishment allocation against an employee's net pay.

Two company policies:
- priority: orders are paid in ascending priority until net pay runs out
- pro_rata: when orders exceed net pay, each is scaled by the same factor
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Sequence

from halonet.exceptions import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

POLICIES = ("priority", "pro_rata")


@dataclass(frozen=True)
class GarnishmentInput:
    """A withholding order to pay out of an employee's net pay."""

    payment_type: str  # garnishment, child_support, tax_levy
    amount: Decimal
    priority: int
    recipient_name: str
    routing_number: str
    account_number: str
    account_type: str = "checking"
    court_order_number: str | None = None


@dataclass(frozen=True)
class Allocation:
    order: GarnishmentInput
    amount: Decimal

    @property
    def shortfall(self) -> Decimal:
        return self.order.amount - self.amount


def _ordered(garnishments: Sequence[GarnishmentInput]) -> list[GarnishmentInput]:
    # Stable: equal priorities keep their input order
    return sorted(garnishments, key=lambda g: g.priority)


def allocate_by_priority(
    net_pay: Decimal, garnishments: Sequence[GarnishmentInput]
) -> list[Allocation]:
    remaining = net_pay
    allocations = []
    for order in _ordered(garnishments):
        amount = min(order.amount, remaining)
        allocations.append(Allocation(order, amount))
        remaining -= amount
    return allocations


def allocate_pro_rata(
    net_pay: Decimal, garnishments: Sequence[GarnishmentInput]
) -> list[Allocation]:
    ordered = _ordered(garnishments)
    requested = sum((g.amount for g in ordered), Decimal("0"))
    if requested <= net_pay:
        return [Allocation(g, g.amount) for g in ordered]

    factor = net_pay / requested
    amounts = [(g.amount * factor).quantize(CENT, rounding=ROUND_DOWN) for g in ordered]

    # Hand the rounding remainder out a cent at a time, highest priority first
    leftover = net_pay - sum(amounts, Decimal("0"))
    i = 0
    while leftover > 0 and ordered:
        if amounts[i] < ordered[i].amount:
            amounts[i] += CENT
            leftover -= CENT
        i = (i + 1) % len(ordered)

    return [Allocation(g, a) for g, a in zip(ordered, amounts)]


def allocate(
    net_pay: Decimal,
    garnishments: Sequence[GarnishmentInput],
    policy: str = "priority",
) -> list[Allocation]:
    """Split net pay across garnishment orders.

    Returns one allocation per order, in ascending priority. Allocations
    never exceed the ordered amount and never sum to more than net pay.
    """
    if policy not in POLICIES:
        raise ValidationError(f"Unknown garnishment policy {policy!r}")
    if net_pay < 0:
        raise ValidationError("net_pay cannot be negative")
    for order in garnishments:
        if order.amount <= 0:
            raise ValidationError(
                f"Garnishment {order.court_order_number or order.payment_type} "
                f"amount must be positive, got {order.amount}"
            )

    if policy == "pro_rata":
        allocations = allocate_pro_rata(net_pay, garnishments)
    else:
        allocations = allocate_by_priority(net_pay, garnishments)

    for alloc in allocations:
        if alloc.shortfall > 0:
            logger.warning(
                "Garnishment %s (priority %d) short by %s under %s policy",
                alloc.order.court_order_number or alloc.order.payment_type,
                alloc.order.priority,
                alloc.shortfall,
                policy,
            )
    return allocations
