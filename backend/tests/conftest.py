"""Shared test configuration and fixtures.

Each test gets a fresh database so that code opening its own sessions
(webhooks, the lifecycle job, the access guard) sees exactly what the test
committed:
- By default a throwaway SQLite file under the pytest tmp_path.
- Set ``TEST_DATABASE_URL`` to run against PostgreSQL instead.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import holiday_programs.models  # noqa: F401  (registers tables on Base.metadata)
from holiday_programs.billing.stripe_client import get_stripe_gateway
from holiday_programs.billing.webhooks import WebhookReconciler, get_webhook_reconciler
from holiday_programs.database import Base, get_db, get_session_factory
from holiday_programs.main import app
from holiday_programs.models.user import User
from holiday_programs.services.notification_service import get_notifier
from tests.factories import (
    WEBHOOK_SECRET,
    FakeStripeGateway,
    RecordingNotifier,
    auth_headers_for,
    create_user,
)

# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create an engine with all tables for a single test."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"
    engine = create_async_engine(url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session used by the test body to arrange and inspect rows."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_factory, fake_gateway, notifier
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and fakes."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_webhook_reconciler] = lambda: WebhookReconciler(
        fake_gateway, WEBHOOK_SECRET
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and commit a parent account with no subscription."""
    user = await create_user(db_session, name="Test Parent")
    await db_session.commit()
    return user


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return auth_headers_for(test_user)
