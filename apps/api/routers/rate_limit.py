"""Per-customer request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def rate_limit_key(prefix: str, customer_id: str) -> str:
    return f"gas:rate:{prefix}:{customer_id}"


def _evict_expired(now: float) -> None:
    expired = [key for key, (_, reset_at) in _local_counters.items() if reset_at <= now]
    for key in expired:
        del _local_counters[key]


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        _evict_expired(now)
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
    finally:
        await redis_client.aclose()
    return current <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable:
    """Return a dependency capping how often one signed-in account may call an endpoint.

    Quotas follow the authenticated user id, so customers behind a shared
    address (an agency counter, a mobile carrier NAT) do not throttle each other.
    """

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = rate_limit_key(prefix, auth.user_id)
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except Exception:
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix.replace('_', ' ')} requests for this account. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
