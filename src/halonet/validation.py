"""Structural checks for bank routing and account numbers."""

from __future__ import annotations

import re

_ACCOUNT_RE = re.compile(r"^\d+$")

# ABA checksum weights, repeated across the 9 digits
ABA_WEIGHTS = (3, 7, 1, 3, 7, 1, 3, 7, 1)


def is_valid_routing_number(routing_number: str | None) -> bool:
    """Check a 9-digit ABA routing number against its checksum digit."""
    if not routing_number or len(routing_number) != 9 or not routing_number.isdigit():
        return False
    total = sum(int(d) * w for d, w in zip(routing_number, ABA_WEIGHTS))
    return total % 10 == 0


def is_valid_account_number(
    account_number: str | None,
    min_length: int = 4,
    max_length: int = 17,
) -> bool:
    """Check an account number is all digits within NACHA's 17 character field."""
    if not account_number or not _ACCOUNT_RE.match(account_number):
        return False
    return min_length <= len(account_number) <= max_length


def routing_number_errors(routing_number: str | None) -> list[str]:
    """Describe what is wrong with a routing number (empty if valid)."""
    if not routing_number:
        return ["routing number is required"]
    if len(routing_number) != 9 or not routing_number.isdigit():
        return ["routing number must be 9 digits"]
    if not is_valid_routing_number(routing_number):
        return ["routing number fails ABA checksum"]
    return []
