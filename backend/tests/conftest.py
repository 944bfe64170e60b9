"""
Runner Control Plane - Test Fixtures
====================================

Shared pytest fixtures for all tests.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from control_plane.api.main import app
from control_plane.core.clock import utcnow
from control_plane.core.database import Base, get_db
from control_plane.core.fleet.events import EventChannel, get_event_channel
from control_plane.core.fleet.runners import RunnerRegistry
from control_plane.core.models import Infrastructure, Runner


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

RUNNER_TOKEN = "runner-token-0001"


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def channel() -> EventChannel:
    """A private change channel so tests never see each other's events."""
    return EventChannel()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, channel: EventChannel) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and channel overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_channel] = lambda: channel

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Fleet Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def infrastructure(db_session: AsyncSession) -> Infrastructure:
    """A declared VPS with nothing installed."""
    infra = Infrastructure(
        name="vps-test-01",
        os="linux",
        distribution="ubuntu-22.04",
        capabilities={"provider": "hetzner"},
    )
    db_session.add(infra)
    await db_session.commit()
    await db_session.refresh(infra)
    return infra


@pytest_asyncio.fixture
async def runner(db_session: AsyncSession, infrastructure: Infrastructure, channel: EventChannel) -> Runner:
    """
    A registered runner bound to the test infrastructure.

    Token: RUNNER_TOKEN
    """
    registry = RunnerRegistry(db_session, channel)
    runner = await registry.register("runner-01", RUNNER_TOKEN, host_info={"hostname": "vps-test-01"})
    return await registry.associate(runner.id, infrastructure.id)


@pytest_asyncio.fixture
async def offline_runner(db_session: AsyncSession, infrastructure: Infrastructure) -> Runner:
    """A runner bound to the test infrastructure that stopped heartbeating."""
    runner = Runner(
        name="runner-stale",
        token_hash="0" * 64,
        infrastructure_id=infrastructure.id,
        last_seen_at=utcnow() - timedelta(minutes=10),
    )
    db_session.add(runner)
    await db_session.commit()
    await db_session.refresh(runner)
    return runner


@pytest.fixture
def runner_headers(runner: Runner) -> dict[str, str]:
    """Token header for the test runner."""
    return {"X-Runner-Token": RUNNER_TOKEN}
