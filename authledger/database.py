"""Async store access for AuthLedger.

SQLite (aiosqlite) backs development and tests; PostgreSQL (asyncpg) backs
production. One ``AsyncSession`` is opened per request and every component
(UserStore, SessionStore, CreditLedger, AuditRecorder) is built around it, so
the engine is the only process-wide object.

Examples:
    >>> from authledger.database import get_session
    >>> async with get_session() as session:
    ...     balance = await CreditLedger(session).balance(user_id)

Tests:
    - tests/conftest.py (per-test engine via build_engine)
    - tests/unit/test_main.py::TestHealthEndpoint
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from authledger.config import get_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_factory: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """WAL, enforced foreign keys and a busy timeout on every connection.

    pysqlite's implicit transactions are disabled so that SQLAlchemy emits
    BEGIN itself and SAVEPOINTs nest inside it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
            cursor.execute(f"PRAGMA {pragma}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine for ``url``.

    Args:
        url: SQLAlchemy URL (``sqlite+aiosqlite://`` or ``postgresql+asyncpg://``).
        echo: Log emitted SQL.

    Returns:
        AsyncEngine: Configured engine; SQLite gets WAL and foreign keys,
        PostgreSQL a bounded pool with pre-ping.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        _configure_sqlite(engine)
        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        # Strip credentials from the logged URL
        logger.info(f"Store engine ready: {settings.DATABASE_URL.split('@')[-1]}")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _factory

    if _factory is None:
        _factory = build_session_factory(get_engine())

    return _factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on clean exit and rolls back on error.

    Used by the CLI; request handlers commit explicitly instead.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db() -> None:
    """Create any missing tables. Safe to call on every startup."""
    from authledger.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Store schema ensured")


async def check_db_connection() -> bool:
    """Return True if the store answers a trivial query."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Store health check failed: {e}")
        return False
    return True


async def close_db() -> None:
    """Dispose the engine. Called at application shutdown and after CLI commands."""
    global _engine, _factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _factory = None
        logger.info("Store connections closed")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding the request's session.

    Handlers commit on success; anything left uncommitted is rolled back
    when the request ends.
    """
    async with get_session_factory()() as session:
        yield session
