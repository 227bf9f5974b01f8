import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-gateway-webhook-secret")

from datetime import date, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.entitlement import Entitlement
from models.user import ROLE_ADMIN, ROLE_CUSTOMER, User
from routers import rate_limit
from services import entitlements


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_customer_locks():
    """Locks bind to the event loop of their first contended wait."""
    entitlements.clear_customer_locks()
    yield
    entitlements.clear_customer_locks()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def seed_customer(session_maker):
    """Create a user plus entitlement with an explicit balance and expiry."""

    async def _seed(
        customer_id: str,
        *,
        balance: int = 12,
        expiry: date = None,
        role: str = ROLE_CUSTOMER,
    ) -> None:
        async with session_maker() as session:
            session.add(User(id=customer_id, email=f"{customer_id}@example.com", role=role))
            if role == ROLE_CUSTOMER:
                session.add(
                    Entitlement(
                        customer_id=customer_id,
                        balance=balance,
                        expiry=expiry or date.today() + timedelta(days=365),
                    )
                )
            await session.commit()

    return _seed


@pytest.fixture
def seed_admin(seed_customer):
    async def _seed(admin_id: str = "admin-1") -> None:
        await seed_customer(admin_id, role=ROLE_ADMIN)

    return _seed
