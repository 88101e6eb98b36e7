import os
from collections.abc import Callable
from datetime import datetime, timezone
from itertools import count
from typing import Any, AsyncGenerator
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

# Set test env vars before importing app modules
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["REDIS_URL"] = "memory://"
os.environ["REPLAY_ON_STARTUP"] = "false"

# Shared FakeServer holds state; each call creates a fresh client
# bound to the current event loop (avoids pytest-asyncio loop mismatch).
_fake_server = fakeredis.FakeServer()


async def _mock_get_redis():
    return fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)


# Patch the module-level get_redis() used as fallback in non-DI contexts
_redis_patcher = patch("pulse.core.redis.get_redis", _mock_get_redis)
_redis_patcher.start()

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestingSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _make_fake_redis():
    """Create a fakeredis instance bound to the shared server."""
    return fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)


@pytest.fixture(autouse=True)
async def setup_database():
    from pulse.core.limiter import limiter
    from pulse.db.base import Base
    from pulse.models import anomaly, event  # noqa: F401

    # Disable rate limiting in tests
    limiter.enabled = False

    # Clear fakeredis for each test
    r = fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)
    await r.flushall()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def fake_redis():
    """Provide a fakeredis instance for direct use in tests."""
    return _make_fake_redis()


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return TestingSessionLocal


@pytest.fixture
def make_settings() -> Callable[..., Any]:
    """Settings with test defaults; keyword arguments override fields."""
    from pulse.core.config import Settings

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "DATABASE_URL": TEST_DATABASE_URL,
            "REDIS_URL": "memory://",
            "REPLAY_ON_STARTUP": False,
            "STORE_RETRY_WAIT_MAX": 0.01,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_engine(make_settings) -> Callable[..., Any]:
    """Build an AnalyticsEngine against the test database (not started)."""
    from pulse.services.pipeline import AnalyticsEngine

    def _make(redis=None, **overrides: Any) -> AnalyticsEngine:
        return AnalyticsEngine(make_settings(**overrides), TestingSessionLocal, redis=redis)

    return _make


@pytest.fixture
def analytics_engine(make_engine):
    return make_engine()


@pytest.fixture
def make_record() -> Callable[..., Any]:
    """Factory for stored-event records used by the in-memory components."""
    from pulse.schemas.event import EventRecord

    ids = count(1)

    def _make(
        session_id: str = "sess_1",
        url: str = "https://example.com/",
        timestamp: datetime | None = None,
        project_id: str = "proj_1",
        **fields: Any,
    ) -> EventRecord:
        return EventRecord(
            id=next(ids),
            project_id=project_id,
            session_id=session_id,
            url=url,
            timestamp=timestamp or datetime.now(timezone.utc),
            **fields,
        )

    return _make


@pytest.fixture
async def client(
    db_session: AsyncSession, analytics_engine
) -> AsyncGenerator[AsyncClient, None]:
    from pulse.db.session import get_db
    from pulse.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    # The lifespan does not run under ASGITransport; hand the app an engine
    app.state.engine = analytics_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
