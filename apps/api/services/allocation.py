"""Allocation policy: decides whether a booking fits a customer's entitlement.

The functions here are pure apart from the annual reset, which is applied to
the entitlement object passed in. Callers hold the per-customer lock and flush
the reset before acting on the decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from config import settings
from models.entitlement import Entitlement


DENIED_INSUFFICIENT_BALANCE = "InsufficientBalance"


@dataclass(frozen=True)
class AllocationDecision:
    allowed: bool
    balance: int
    expiry: date
    reset_applied: bool = False
    reason: Optional[str] = None


def _as_date(now: Union[date, datetime]) -> date:
    return now.date() if isinstance(now, datetime) else now


def add_one_year(start: Union[date, datetime]) -> date:
    """Return the same calendar day one year later (Feb 29 maps to Feb 28)."""
    day = _as_date(start)
    try:
        return day.replace(year=day.year + 1)
    except ValueError:
        return day.replace(year=day.year + 1, day=28)


def annual_quota() -> int:
    return max(int(settings.ANNUAL_CYLINDER_QUOTA), 0)


def is_expired(entitlement: Entitlement, now: Union[date, datetime]) -> bool:
    return entitlement.expiry <= _as_date(now)


def reset_entitlement(entitlement: Entitlement, now: Union[date, datetime]) -> Entitlement:
    """Restore the annual quota and open a fresh one-year window from ``now``."""
    entitlement.balance = annual_quota()
    entitlement.expiry = add_one_year(now)
    return entitlement


def can_book(
    entitlement: Entitlement,
    requested_count: int,
    now: Union[date, datetime],
) -> AllocationDecision:
    """Evaluate a booking request, resetting an expired entitlement first."""
    reset_applied = False
    if is_expired(entitlement, now):
        reset_entitlement(entitlement, now)
        reset_applied = True

    balance = int(entitlement.balance or 0)
    if balance < int(requested_count):
        return AllocationDecision(
            allowed=False,
            balance=balance,
            expiry=entitlement.expiry,
            reset_applied=reset_applied,
            reason=DENIED_INSUFFICIENT_BALANCE,
        )
    return AllocationDecision(
        allowed=True,
        balance=balance,
        expiry=entitlement.expiry,
        reset_applied=reset_applied,
    )


def deduct(entitlement: Entitlement, count: int) -> int:
    """Subtract ``count`` from an entitlement already cleared by ``can_book``."""
    remaining = int(entitlement.balance) - int(count)
    if remaining < 0:
        raise ValueError("deduction would make the entitlement balance negative")
    entitlement.balance = remaining
    return remaining
