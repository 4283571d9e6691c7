"""
Async database runtime.

The engine and session factory are built lazily on first use, so importing
this module never opens a connection. Workers receive the factory through
their WorkerContext.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _engine_options(settings_obj: Any, url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": bool(settings_obj.DB_ECHO)}
    if "sqlite" in url:
        options["poolclass"] = StaticPool
        return options
    if settings_obj.DB_USE_NULL_POOL:
        options["poolclass"] = NullPool
        return options
    options.update(
        pool_recycle=int(settings_obj.DB_POOL_RECYCLE),
        pool_size=int(settings_obj.DB_POOL_SIZE),
        max_overflow=int(settings_obj.DB_MAX_OVERFLOW),
        pool_timeout=int(settings_obj.DB_POOL_TIMEOUT),
    )
    return options


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    url = normalize_db_url(settings_obj.DATABASE_URL or "")
    if not url:
        raise ConfigurationError("DATABASE_URL is not set. The worker cannot start.")

    engine = create_async_engine(url, **_engine_options(settings_obj, url))
    event.listen(engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", _after_cursor_execute)
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return _DBRuntime(
        engine=engine,
        session_maker=async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
    )


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _db_runtime
    with _db_runtime_lock:
        if _db_runtime is None:
            _db_runtime = _build_db_runtime()
        return _db_runtime.session_maker


async def dispose_engine() -> None:
    """Drop pooled connections bound to the current event loop; the engine stays usable."""
    runtime = _db_runtime
    if runtime is None:
        return
    await runtime.engine.dispose()
    logger.debug("database_engine_disposed")


def _before_cursor_execute(
    conn: Connection, _cursor: Any, _statement: str, _parameters: Any, _context: Any, _many: bool
) -> None:
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def _after_cursor_execute(
    conn: Connection, _cursor: Any, statement: str, _parameters: Any, _context: Any, _many: bool
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    threshold = float(get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS)
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200],
        )


def session_backend(session: AsyncSession) -> str:
    """Dialect name behind a session: ``postgresql``, ``sqlite`` or ``unknown``."""
    dialect_name = getattr(getattr(session.bind, "dialect", None), "name", None)
    if isinstance(dialect_name, str) and dialect_name:
        return dialect_name.lower()
    url = normalize_db_url(get_settings().DATABASE_URL or "")
    if url.startswith("postgresql"):
        return "postgresql"
    if url.startswith("sqlite"):
        return "sqlite"
    return "unknown"


def upsert_insert(session: AsyncSession, model: Any) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT for upserts."""
    backend = session_backend(session)
    if backend == "postgresql":
        return postgresql.insert(model)
    if backend == "sqlite":
        return sqlite.insert(model)
    raise ConfigurationError(f"ON CONFLICT upserts are not supported on {backend}")
