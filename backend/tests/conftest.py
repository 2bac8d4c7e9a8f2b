"""Shared test fixtures for backend tests."""

import os

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["META_APP_SECRET"] = "test-meta-secret"
os.environ["AUTOMATION_HMAC_SECRET"] = "test-automation-secret"
os.environ["ENVIRONMENT"] = "test"

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ouvidoria.database import Base  # noqa: E402
from ouvidoria.main import app  # noqa: E402
from ouvidoria.api.deps import (  # noqa: E402
    get_automation,
    get_db,
    get_delayed_delivery,
    get_outbound,
    get_public_limiter,
)
from tests.fakes import FakeAutomation, FakeDelivery, FakeLimiter, FakeOutbound  # noqa: E402


engine = create_async_engine(
    "sqlite+aiosqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
@event.listens_for(engine.sync_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh schema per test on a shared in-memory SQLite connection."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with TestSession() as session:
        yield session
        await session.rollback()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation()


@pytest.fixture
def outbound() -> FakeOutbound:
    return FakeOutbound()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def limiter() -> FakeLimiter:
    return FakeLimiter()


# ── HTTP client ──────────────────────────────────────────────────────────────

def _override_db(session: AsyncSession):
    """Create a dependency override for get_db."""
    async def _get_db():
        yield session
    return _get_db


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    automation: FakeAutomation,
    outbound: FakeOutbound,
    delivery: FakeDelivery,
    limiter: FakeLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated HTTP client; pass `headers=auth_header(...)` per request."""
    app.dependency_overrides[get_db] = _override_db(db_session)
    app.dependency_overrides[get_automation] = lambda: automation
    app.dependency_overrides[get_outbound] = lambda: outbound
    app.dependency_overrides[get_delayed_delivery] = lambda: delivery
    app.dependency_overrides[get_public_limiter] = lambda: limiter
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
