"""Declarative base, engine construction and the process-wide session factory."""

from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from payhub.core.config import get_settings

# Seconds a SQLite connection waits on another connection's write lock
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(url: str) -> dict[str, Any]:
    """Engine keyword arguments for the database behind ``url``.

    SQLite (development and tests) is a local file shared by every engine in
    the process, so connections wait on the write lock instead of failing.
    Server databases get pre-ping so connections dropped by the server are
    replaced before a webhook write uses them.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}
    return {"pool_pre_ping": True}


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url, echo=echo, **engine_options(url))


async def init_db(url: str | None = None) -> None:
    """Create the engine and session factory, then any missing tables.

    Alembic owns schema changes; ``create_all`` only fills in tables that do
    not exist yet, so a fresh development database works without migrating.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_engine(url or settings.database_url, echo=settings.debug)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    import payhub.db.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Raises RuntimeError if init_db() has not been called."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def ping(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Round-trip ``SELECT 1``. Raises the driver's error when unreachable."""
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
