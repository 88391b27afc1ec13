"""
Clawstrate - Test Fixtures
==========================

Shared pytest fixtures for all tests.
"""

import fnmatch
from collections.abc import AsyncGenerator
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clawstrate.api.deps import get_redis, get_stage_registry
from clawstrate.api.main import app
from clawstrate.core.config import settings
from clawstrate.core.database import Base, get_db
from clawstrate.core.locks import RELEASE_SCRIPT, LockManager
from clawstrate.core.pipeline import PIPELINE_STAGE_ORDER, StageRegistry


TEST_CRON_SECRET = "test-cron-secret"


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


# ==========================================================================
# Redis Test Double
# ==========================================================================

class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio client.

    Implements only the commands the service issues. ``eval`` understands
    the lock release script and nothing else.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.set_calls: list[dict[str, Any]] = []

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        self.set_calls.append({"key": key, "value": value, "nx": nx, "ex": ex})
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def ttl(self, key: str) -> int:
        if key not in self.store:
            return -2
        return self.ttls.get(key, -1)

    async def eval(self, script: str, numkeys: int, *args: str) -> int:
        assert script == RELEASE_SCRIPT, "FakeRedis only evaluates the lock release script"
        key, token = args[0], args[1]
        if self.store.get(key) == token:
            return await self.delete(key)
        return 0

    async def scan_iter(self, match: str = "*", count: Optional[int] = None):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    def expire_now(self, key: str) -> None:
        """Simulate TTL expiry of a key."""
        self.store.pop(key, None)
        self.ttls.pop(key, None)


# ==========================================================================
# Settings
# ==========================================================================

@pytest.fixture(autouse=True)
def cron_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Known scheduler secret and monolithic pipeline mode for every test."""
    monkeypatch.setattr(settings, "CRON_SECRET", TEST_CRON_SECRET)
    monkeypatch.setattr(settings, "PIPELINE_SPLIT_JOBS", False)


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


# ==========================================================================
# Redis / Lock Fixtures
# ==========================================================================

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def lock_manager(fake_redis: FakeRedis) -> LockManager:
    return LockManager(fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def invalidate_caches() -> AsyncMock:
    return AsyncMock(return_value=0)


# ==========================================================================
# Stage Fixtures
# ==========================================================================

@pytest.fixture
def stage_mocks() -> dict[str, AsyncMock]:
    """One AsyncMock per pipeline stage, each succeeding with an empty errors list."""
    return {
        stage.value: AsyncMock(return_value={"stage": stage.value, "errors": []})
        for stage in PIPELINE_STAGE_ORDER
    }


@pytest.fixture
def stage_registry(stage_mocks: dict[str, AsyncMock]) -> StageRegistry:
    return StageRegistry(stage_mocks)


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    fake_redis: FakeRedis,
    stage_registry: StageRegistry,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database, Redis and stage overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_stage_registry] = lambda: stage_registry
    app.state.redis = fake_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authorization header carrying the scheduler secret."""
    return {"Authorization": f"Bearer {TEST_CRON_SECRET}"}
