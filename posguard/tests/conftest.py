from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from posguard.core.config import Settings
from posguard.domain.models import Base
from posguard.persistence.db import create_session_factory
from posguard.tests.utils.clock import FrozenClock
from posguard.tests.utils.redis import FakeRedis


TEST_SECRET = "test-elevation-secret-0123456789abcdef"


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    # One shared in-memory database per test; StaticPool keeps every session on it.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def broken_session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # Points at a directory that does not exist, so every connect fails.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/db.sqlite")
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        elevation_token_secret=TEST_SECRET,
        admin_api_key="test-admin-key",
        database_url="sqlite+aiosqlite:///:memory:",
    )
