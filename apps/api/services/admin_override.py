"""Admin override: manual, policy-free balance adjustments."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.entitlement import Entitlement
from services.allocation import reset_entitlement
from services.capabilities import (
    ENTITLEMENT_ADJUST,
    ENTITLEMENT_RESET,
    ENTITLEMENT_VIEW_ANY,
    Actor,
    require_capability,
)
from services.entitlements import customer_entitlement_lock, get_entitlement, utcnow
from services.errors import InvalidRequest
from services.event_log import append_log_entry
from services.notifications import emit_balance_notification


async def view_entitlement(db: AsyncSession, actor: Actor, customer_id: str) -> Entitlement:
    require_capability(actor.role, ENTITLEMENT_VIEW_ANY)
    return await get_entitlement(db, customer_id)


async def adjust_balance(
    db: AsyncSession,
    actor: Actor,
    customer_id: str,
    delta: int,
    *,
    reason: Optional[str] = None,
) -> Entitlement:
    """Set ``balance = max(0, balance + delta)``. Not bounded by the annual quota."""
    require_capability(actor.role, ENTITLEMENT_ADJUST)
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidRequest("delta must be an integer.")

    async with customer_entitlement_lock(customer_id):
        entitlement = await get_entitlement(db, customer_id, for_update=True)
        previous = int(entitlement.balance)
        entitlement.balance = max(0, previous + delta)
        await db.flush()
        await append_log_entry(
            db,
            actor_id=actor.actor_id,
            action="entitlement.admin_adjust",
            entity_id=customer_id,
            metadata={"delta": delta, "previous": previous, "balance": entitlement.balance, "reason": reason},
        )
        await db.commit()

    await emit_balance_notification(
        db,
        customer_id=customer_id,
        booking_id=None,
        new_balance=entitlement.balance,
        expiry=entitlement.expiry,
    )
    return entitlement


async def reset_balance(
    db: AsyncSession,
    actor: Actor,
    customer_id: str,
    *,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Restore the annual quota and start a new one-year window immediately."""
    require_capability(actor.role, ENTITLEMENT_RESET)
    current = now or utcnow()

    async with customer_entitlement_lock(customer_id):
        entitlement = await get_entitlement(db, customer_id, for_update=True)
        previous = {"balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()}
        reset_entitlement(entitlement, current)
        await db.flush()
        await append_log_entry(
            db,
            actor_id=actor.actor_id,
            action="entitlement.admin_reset",
            entity_id=customer_id,
            metadata={"previous": previous, "balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()},
        )
        await db.commit()

    await emit_balance_notification(
        db,
        customer_id=customer_id,
        booking_id=None,
        new_balance=entitlement.balance,
        expiry=entitlement.expiry,
    )
    return entitlement
