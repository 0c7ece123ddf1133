"""
Engine and session lifecycle for the queue database.

SQLite through aiosqlite by default; PostgreSQL through asyncpg when
KARAOKE_DATABASE_URL points at one. Tables are created on startup.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from karaoke.config import settings as settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the sessions, songs and singer_stats tables."""
    pass


# Global engine and session factory (initialized on startup)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url() -> str:
    """Configured URL, or a local SQLite file when none is set."""
    url = settings.database_url
    if not url:
        url = "sqlite+aiosqlite:///./karaoke.db"
        logger.warning(f"No database URL configured, using SQLite: {url}")
    return url


async def init_db(url: str | None = None) -> None:
    """Initialize the engine and session factory and create missing tables."""
    global _engine, _async_session_factory

    database_url = url or get_database_url()
    logger.info(f"Initializing database: {database_url.split('@')[-1] if '@' in database_url else database_url}")

    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    _engine = create_async_engine(
        database_url,
        echo=settings.debug,
        connect_args=connect_args,
    )

    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    from karaoke.db import models  # noqa: F401  registers tables with Base

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Dispose the engine (application shutdown, CLI commands)."""
    global _engine, _async_session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed when the route returns."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """The process-wide session factory (for the state manager's repository)."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory


def AsyncSessionLocal() -> AsyncSession:
    """A new session outside request handling (``/health/full`` uses it for its probe query)."""
    return get_session_factory()()
