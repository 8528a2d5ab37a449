"""
Pytest configuration and shared fixtures.

The suite runs against a throwaway SQLite file per test by default. Set
TEST_DATABASE_URL to a PostgreSQL URL to run the same tests there
(tables are truncated between tests).
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
import sqlalchemy as sa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Test database URL - PostgreSQL when provided, SQLite otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Set DATABASE_URL environment variable BEFORE any imports that might initialize the database
os.environ.setdefault(
    "DATABASE_URL",
    TEST_DATABASE_URL
    or f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'jobcore_app.db'}",
)

from jobcore.api.auth import create_access_token  # noqa: E402
from jobcore.api.main import create_app  # noqa: E402
from jobcore.constants import TenantStatus  # noqa: E402
from jobcore.db import create_session_factory, get_async_session  # noqa: E402
from jobcore.db.models import Base, Job  # noqa: E402
from jobcore.db.tenants import TenantRepository  # noqa: E402
from jobcore.utils import utcnow  # noqa: E402


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    if TEST_DATABASE_URL:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'jobcore_test.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    connect_args = {"timeout": 30} if database_url.startswith("sqlite") else {}
    engine = create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if engine.dialect.name == "postgresql":
            await conn.execute(
                sa.text("TRUNCATE TABLE jobs, dead_letters, tenants RESTART IDENTITY CASCADE")
            )

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest_asyncio.fixture
async def app(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app whose sessions come from the test engine."""
    app = create_app()

    async def override_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_async_session] = override_session
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_tenant_id() -> str:
    """Generate a test tenant ID."""
    return f"test-tenant-{uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def active_tenant(db_session: AsyncSession, test_tenant_id: str) -> str:
    """Register an active tenant and return its ID."""
    await TenantRepository(db_session).upsert(test_tenant_id, TenantStatus.ACTIVE)
    await db_session.commit()
    return test_tenant_id


@pytest.fixture
def auth_headers(test_tenant_id: str) -> dict[str, str]:
    """Create producer authentication headers for testing."""
    token = create_access_token(tenant_id=test_tenant_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def operator_headers() -> dict[str, str]:
    """Create operator authentication headers for testing."""
    token = create_access_token(tenant_id="ops", operator=True)
    return {"Authorization": f"Bearer {token}"}


async def _make_due(session: AsyncSession, job_id: UUID) -> None:
    """Pull a job's scheduled_for into the past so it is claimable now."""
    await session.execute(
        sa.update(Job)
        .where(Job.id == job_id)
        .values(scheduled_for=utcnow() - timedelta(seconds=1))
    )
    await session.commit()


async def _backdate_lease(session: AsyncSession, job_id: UUID, age: timedelta) -> None:
    """Make a processing job look like it was claimed `age` ago."""
    await session.execute(
        sa.update(Job)
        .where(Job.id == job_id)
        .values(started_at=utcnow() - age)
    )
    await session.commit()


@pytest.fixture
def make_due():
    return _make_due


@pytest.fixture
def backdate_lease():
    return _backdate_lease
