"""
Global pytest fixtures for the Strata test suite.

Provides:
- A temporary SQLite database per test with every inventory table created
- Session factory bound to that database
- Deterministic clock for collected_at / valid-time assertions
"""
import os
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment BEFORE any strata imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from strata.shared.adapters.rate_limiter import reset_rate_limiters  # noqa: E402
from strata.shared.core.config import get_settings  # noqa: E402
from strata.shared.db.base import Base  # noqa: E402
from strata.shared.db.session import register_engine_event_listeners  # noqa: E402
from tests.helpers import FakeClock  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    reset_rate_limiters()
    yield
    get_settings.cache_clear()
    reset_rate_limiters()


@pytest_asyncio.fixture
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create async SQLite engine for testing using a temporary file."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'strata_test.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    register_engine_event_listeners(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
