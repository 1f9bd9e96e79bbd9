import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from strata.shared.core.config import get_settings
from strata.shared.db.base import Base

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `strata/main.py`.
import strata.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if not getattr(settings_obj, "TESTING", False):
        return db_url
    if not db_url:
        return "sqlite+aiosqlite:///:memory:"
    if "sqlite" not in db_url and not getattr(settings_obj, "ALLOW_TEST_DATABASE_URL", False):
        # Safety: protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        if ":memory:" in effective_url:
            # One shared connection, or every session would see an empty database.
            pool_config["poolclass"] = StaticPool
        else:
            # Concurrent kinds of a group wait on the file lock instead of failing.
            pool_config["connect_args"] = {"timeout": 30}
        return pool_config
    pool_config.update(
        {
            "pool_size": int(settings_obj.DB_POOL_SIZE),
            "max_overflow": int(settings_obj.DB_MAX_OVERFLOW),
            "pool_timeout": int(settings_obj.DB_POOL_TIMEOUT),
            "pool_recycle": int(settings_obj.DB_POOL_RECYCLE),
        }
    )
    return pool_config


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def register_engine_event_listeners(engine: AsyncEngine) -> None:
    """Child history rows reference their parent version; SQLite only enforces that on request."""
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = _resolve_effective_url(settings_obj)
    if not effective_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine = create_async_engine(
        effective_url, **_build_pool_config(settings_obj, effective_url)
    )
    register_engine_event_listeners(engine)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine, session_maker=session_maker, effective_url=effective_url
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the active session factory."""
    return _get_db_runtime().session_maker


async def init_db() -> None:
    """Create inventory tables that do not exist yet."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ready", tables=len(Base.metadata.tables))


async def health_check() -> Dict[str, Any]:
    """Database health check for monitoring."""
    start_time = time.perf_counter()
    try:
        db_engine = get_engine()
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))

        latency = (time.perf_counter() - start_time) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency, 2),
            "engine": db_engine.dialect.name,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "down",
            "error": str(e),
            "latency_ms": (time.perf_counter() - start_time) * 1000,
        }
