"""Shared pytest fixtures for service, database, cache and API tests.

The store is a temporary SQLite file (aiosqlite) created per test; the cache is an
``AsyncMock(spec=redis.Redis)`` whose commands are backed by a plain dict so
tests can inspect and pre-seed keys.
"""

import os

# Module-level engine/Redis setup in app.* reads these on first import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_URL"] = ""
os.environ["HOSTING_PROVIDER_TOKEN"] = ""
os.environ["HOSTING_PROVIDER_PROJECT_ID"] = ""

import logging
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.background import BackgroundTaskRunner
from app.config import Settings
from app.credentials import issue_api_key
from app.database import Base, get_db
from app.dependencies import ServiceManager, get_service_manager
from app.hosting_provider import HostingProviderClient
from app.main import app
from app.models import ShortCodeMapping


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        APP_ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'qrlink.db'}",
        REDIS_URL="",
        IP_HASH_SALT="test-salt",
        HOSTING_PROVIDER_TOKEN="",
        HOSTING_PROVIDER_PROJECT_ID="",
        BACKGROUND_TASK_GRACE_SECONDS=5.0,
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("qrlink.tests")


# ============================================================================
# DATABASE
# ============================================================================


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(settings.DATABASE_URL, echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# CACHE
# ============================================================================


@pytest.fixture
def cache_store() -> dict[str, Any]:
    return {}


@pytest.fixture
def mock_redis(cache_store: dict[str, Any]) -> AsyncMock:
    """Redis double backed by ``cache_store``."""

    async def _get(key):
        return cache_store.get(key)

    async def _set(key, value, ex=None, **kwargs):
        cache_store[key] = value
        return True

    async def _incr(key, amount=1):
        cache_store[key] = int(cache_store.get(key, 0)) + amount
        return cache_store[key]

    async def _delete(*keys):
        return sum(1 for key in keys if cache_store.pop(key, None) is not None)

    redis_client = AsyncMock(spec=redis.Redis)
    redis_client.get = AsyncMock(side_effect=_get)
    redis_client.set = AsyncMock(side_effect=_set)
    redis_client.incr = AsyncMock(side_effect=_incr)
    redis_client.expire = AsyncMock(return_value=True)
    redis_client.delete = AsyncMock(side_effect=_delete)
    redis_client.ping = AsyncMock(return_value=True)
    redis_client.aclose = AsyncMock(return_value=None)
    return redis_client


# ============================================================================
# SHARED RESOURCES
# ============================================================================


@pytest_asyncio.fixture
async def tasks(logger: logging.Logger) -> AsyncGenerator[BackgroundTaskRunner, None]:
    runner = BackgroundTaskRunner(logger)
    yield runner
    await runner.drain(timeout=5.0)


@pytest_asyncio.fixture
async def hosting_provider(settings: Settings) -> AsyncGenerator[HostingProviderClient, None]:
    client = HostingProviderClient.from_settings(settings)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def manager(
    settings: Settings,
    mock_redis: AsyncMock,
    session_factory: async_sessionmaker[AsyncSession],
    hosting_provider: HostingProviderClient,
) -> AsyncGenerator[ServiceManager, None]:
    service_manager = ServiceManager()
    service_manager.configure(
        settings=settings,
        cache=mock_redis,
        session_factory=session_factory,
        hosting_provider=hosting_provider,
    )
    yield service_manager
    await service_manager.cleanup()


@pytest_asyncio.fixture
async def client(
    manager: ServiceManager,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_service_manager() -> ServiceManager:
        return manager

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# SEED DATA
# ============================================================================


@pytest_asyncio.fixture
async def make_mapping(db_session: AsyncSession):
    async def _make(
        short_code: str = "X7kP2m",
        destination_url: str = "https://example.com",
        organization_id: str | None = "org-1",
        is_active: bool = True,
    ) -> ShortCodeMapping:
        mapping = ShortCodeMapping(
            short_code=short_code,
            destination_url=destination_url,
            organization_id=organization_id,
            is_active=is_active,
        )
        db_session.add(mapping)
        await db_session.commit()
        await db_session.refresh(mapping)
        return mapping

    return _make


@pytest_asyncio.fixture
async def api_key(db_session: AsyncSession) -> str:
    """Raw key for organization ``org-1`` with a limit of 1000 calls per day."""
    _, raw_key = await issue_api_key(db_session, "org-1", "test key")
    return raw_key
