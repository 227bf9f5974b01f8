from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from routers import rate_limit
from routers.auth_scope import AuthContext


def _request(disabled=False):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(disable_rate_limits=disabled)))


@pytest.fixture
def offline_redis(monkeypatch):
    def _unreachable(*args, **kwargs):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(rate_limit.redis, "from_url", _unreachable)


@pytest.fixture
def clock(monkeypatch):
    now = [1_000.0]
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(time=lambda: now[0]))
    return now


@pytest.mark.asyncio
async def test_quota_is_per_customer(offline_redis, clock):
    limiter = rate_limit.rate_limit("booking_create", limit=2, window_seconds=60)
    alice = AuthContext(user_id="alice")
    bob = AuthContext(user_id="bob")

    await limiter(_request(), alice)
    await limiter(_request(), alice)
    with pytest.raises(HTTPException) as exc_info:
        await limiter(_request(), alice)
    assert exc_info.value.status_code == 429
    assert exc_info.value.headers["Retry-After"] == "60"

    await limiter(_request(), bob)


@pytest.mark.asyncio
async def test_window_expiry_resets_and_evicts_counters(offline_redis, clock):
    limiter = rate_limit.rate_limit("booking_create", limit=1, window_seconds=60)

    await limiter(_request(), AuthContext(user_id="alice"))
    assert rate_limit.rate_limit_key("booking_create", "alice") in rate_limit._local_counters

    clock[0] += 61
    await limiter(_request(), AuthContext(user_id="bob"))
    assert rate_limit.rate_limit_key("booking_create", "alice") not in rate_limit._local_counters

    await limiter(_request(), AuthContext(user_id="alice"))


@pytest.mark.asyncio
async def test_disabled_limits_skip_counting(offline_redis, clock):
    limiter = rate_limit.rate_limit("auth_register", limit=1, window_seconds=60)
    for _ in range(3):
        await limiter(_request(disabled=True), AuthContext(user_id="alice"))
    assert rate_limit._local_counters == {}
