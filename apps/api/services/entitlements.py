"""Entitlement data access and per-customer serialization."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.entitlement import Entitlement
from services.allocation import add_one_year, annual_quota, is_expired, reset_entitlement
from services.errors import EntitlementBusy, NotFound
from services.event_log import SYSTEM_ACTOR, append_log_entry


class _CustomerLock:
    """A customer's lock plus the number of tasks holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


_customer_locks: Dict[str, _CustomerLock] = {}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clear_customer_locks() -> None:
    """Drop idle per-customer locks left behind by a cancelled event loop."""
    for customer_id, entry in list(_customer_locks.items()):
        if not entry.lock.locked():
            _customer_locks.pop(customer_id, None)


async def _acquire(lock: asyncio.Lock, timeout: float) -> bool:
    acquired = False
    try:
        async with asyncio.timeout(timeout):
            await lock.acquire()
            acquired = True
    except TimeoutError:
        if acquired:
            lock.release()
        return False
    return True


@asynccontextmanager
async def customer_entitlement_lock(customer_id: str) -> AsyncIterator[None]:
    """Serialize balance-affecting work for one customer within this process.

    Combined with ``SELECT ... FOR UPDATE`` in :func:`get_entitlement` this
    covers both concurrent requests in one worker and across workers. The wait
    is bounded by ``ENTITLEMENT_LOCK_TIMEOUT_SECONDS``. The entry is dropped
    once no task holds or waits on it.
    """
    entry = _customer_locks.get(customer_id)
    if entry is None:
        entry = _customer_locks[customer_id] = _CustomerLock()
    entry.users += 1
    try:
        timeout = max(float(settings.ENTITLEMENT_LOCK_TIMEOUT_SECONDS), 0.01)
        if not await _acquire(entry.lock, timeout):
            raise EntitlementBusy(customer_id)
        try:
            yield
        finally:
            entry.lock.release()
    finally:
        entry.users -= 1
        if entry.users == 0 and _customer_locks.get(customer_id) is entry:
            del _customer_locks[customer_id]


async def get_entitlement(
    db: AsyncSession,
    customer_id: str,
    *,
    for_update: bool = False,
) -> Entitlement:
    query = select(Entitlement).where(Entitlement.customer_id == customer_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    entitlement = result.scalar_one_or_none()
    if entitlement is None:
        raise NotFound(f"No entitlement found for customer {customer_id}.")
    return entitlement


async def create_entitlement(
    db: AsyncSession,
    customer_id: str,
    *,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Open a customer's entitlement at registration: full quota for one year."""
    current = now or utcnow()
    entitlement = Entitlement(
        customer_id=customer_id,
        balance=annual_quota(),
        expiry=add_one_year(current),
    )
    db.add(entitlement)
    await db.flush()
    await append_log_entry(
        db,
        actor_id=actor_id or customer_id,
        action="entitlement.created",
        entity_id=customer_id,
        metadata={"balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()},
    )
    return entitlement


async def apply_due_reset(
    db: AsyncSession,
    entitlement: Entitlement,
    *,
    now: datetime,
    actor_id: str = SYSTEM_ACTOR,
) -> bool:
    """Reset an expired entitlement and log it. Caller holds the customer lock."""
    if not is_expired(entitlement, now):
        return False
    previous = {"balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()}
    reset_entitlement(entitlement, now)
    await db.flush()
    await log_annual_reset(db, entitlement, previous=previous, actor_id=actor_id)
    return True


async def log_annual_reset(
    db: AsyncSession,
    entitlement: Entitlement,
    *,
    previous: Dict[str, Any],
    actor_id: str = SYSTEM_ACTOR,
) -> None:
    await append_log_entry(
        db,
        actor_id=actor_id,
        action="entitlement.annual_reset",
        entity_id=entitlement.customer_id,
        metadata={
            "previous": previous,
            "balance": entitlement.balance,
            "expiry": entitlement.expiry.isoformat(),
        },
    )


async def refresh_entitlement(
    db: AsyncSession,
    customer_id: str,
    *,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Return the entitlement, applying and persisting a due annual reset."""
    current = now or utcnow()
    async with customer_entitlement_lock(customer_id):
        entitlement = await get_entitlement(db, customer_id, for_update=True)
        if await apply_due_reset(db, entitlement, now=current):
            await db.commit()
        return entitlement


def serialize_entitlement(entitlement: Entitlement) -> Dict[str, Any]:
    return {
        "customer_id": entitlement.customer_id,
        "balance": int(entitlement.balance),
        "expiry": entitlement.expiry.isoformat(),
        "annual_quota": annual_quota(),
    }
