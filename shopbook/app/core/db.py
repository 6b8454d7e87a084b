"""Engine and session plumbing for the booking store.

The engine is created lazily from ``DATABASE_URL`` on first use, so tests can
point the package at a throwaway SQLite file and call
``_reset_engine_for_tests`` between runs. Services open short sessions through
``get_session``; FastAPI routes can depend on ``get_db``.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ..domain.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_URL = "postgresql+asyncpg://shop_user:change_me@db:5432/shopbook"
# seconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT = 15

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # no pooling: every session gets its own connection and SQLite's
        # file lock orders the writers
        return create_async_engine(
            url,
            echo=False,
            poolclass=NullPool,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        # objects stay readable after commit; lifecycle results are built from them
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Open a session; uncommitted work is rolled back on close."""
    session = get_session_factory()()
    try:
        yield session
    finally:
        await session.close()


async def get_db() -> AsyncIterator[AsyncSession]:
    """``Depends``-style variant of ``get_session``."""
    async with get_session() as session:
        yield session


async def init_db(
    force: bool = False, on_create: Callable[[AsyncEngine], None] | None = None
) -> None:
    """Create all tables from the models (``force`` drops them first).

    Production schemas come from the alembic migrations; this is for tests and
    local runs with ``DB_AUTO_CREATE``.
    """
    engine = get_engine()
    async with engine.begin() as conn:
        if force:
            logger.warning("Dropping all tables before recreating the schema")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%d tables)", len(Base.metadata.tables))
    if on_create:
        on_create(engine)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _reset_engine_for_tests() -> None:
    """Forget the engine without disposing it (synchronous)."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "get_db",
    "init_db",
    "dispose_engine",
    "_reset_engine_for_tests",
]
