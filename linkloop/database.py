"""Async engine and sessions.

The engine is built on first use so it binds to the running event loop,
and can be torn down and rebuilt against another URL (tests point it at a
throwaway SQLite file per test).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from linkloop.config import settings

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    """Pool settings for the configured backend.

    SQLite and test runs get no pooling; PostgreSQL gets a small pool with
    pre-ping so connections dropped by the server are replaced.
    """
    if settings.testing or url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "echo": settings.log_level.upper() == "DEBUG" and settings.log_format == "text",
    }


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    # SQLite leaves foreign keys off unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = settings.database_url
        _engine = create_async_engine(url, **_engine_options(url))
        if url.startswith("sqlite"):
            event.listen(_engine.sync_engine, "connect", _sqlite_pragmas)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the current engine.

    Objects stay usable after commit (``expire_on_commit=False``) because
    services return ORM rows that routers serialize afterwards.
    """
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with get_session_maker()() as session:
        yield session


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for work outside a request (scheduler jobs, notifications)."""
    async with get_session_maker()() as session:
        yield session


async def create_all() -> None:
    """Create every table straight from the model metadata.

    For SQLite development databases and the test suite. Deployed
    databases are migrated with Alembic instead.
    """
    from linkloop.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_connection() -> bool:
    """True when a trivial query succeeds."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        return False
    return True


async def close_database() -> None:
    """Dispose the engine. The next get_engine() builds a fresh one."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


# Tests switch URLs between cases
reset_database = close_database
