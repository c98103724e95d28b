"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.

The database is a per-test SQLite file rather than :memory:, so that
several sessions opened concurrently (one per simulated instance) see the
same store, and the partial unique index behaves as in production.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from basketstats.core import deps
from basketstats.core.config import settings
from basketstats.db.session import get_db, get_session_factory
from basketstats.models.base import Base
from basketstats.services.notification_service import SubscriptionNotifier
from basketstats.services.plan_catalog import PlanCatalog
from basketstats.services.webhook_verifier import PaytechWebhookVerifier
from tests.factories import TEST_ADMIN_TOKEN, TEST_API_KEY, TEST_API_SECRET


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """
    Create a test database engine backed by a temporary file.

    WHY: Function scope ensures each test gets a fresh database state.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    """Session factory bound to the test engine, configured like production."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Factories commit through this session, so services running on their
    own sessions see the data.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def plans(session_factory):
    """Seed the four default plans, keyed by PlanType."""
    async with session_factory() as session:
        seeded = await PlanCatalog(session).initialize_default_plans()
        await session.commit()
    return {plan.type: plan for plan in seeded}


@pytest.fixture
def verifier() -> PaytechWebhookVerifier:
    return PaytechWebhookVerifier(api_key=TEST_API_KEY, api_secret=TEST_API_SECRET)


@pytest.fixture
def notifier():
    """Notifier double; dispatch is asserted, never performed."""
    mock = MagicMock(spec=SubscriptionNotifier)
    mock.send_safe = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def paytech_client():
    """PayTech API client double for checkout tests."""
    return MagicMock()


@pytest_asyncio.fixture
async def client(
    session_factory,
    verifier,
    notifier,
    paytech_client,
    monkeypatch,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient over ASGITransport exercises the real routing, exception
    handlers and middleware without a server. Background tasks (notification
    dispatch) complete before the response is returned.
    """
    from basketstats.main import app

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", TEST_ADMIN_TOKEN)
    monkeypatch.setattr(settings, "WEBHOOK_ACK_MALFORMED", True)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_verifier] = lambda: verifier
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_paytech_client] = lambda: paytech_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Token": TEST_ADMIN_TOKEN, "X-Admin-Actor": "ops@basketstats.test"}
