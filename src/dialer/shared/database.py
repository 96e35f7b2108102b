"""
Async SQLAlchemy engine, sessions and time helpers.

Models use portable column types so the same metadata runs on Postgres
(asyncpg) in production and on aiosqlite in the test suite.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from dialer.config import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by every ORM model."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime read back from the store to aware UTC.

    SQLite drops the offset on round-trip; Postgres keeps it.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def engine_options(database_url: str, echo: bool = False) -> dict[str, Any]:
    """Engine keyword arguments for the URL's backend.

    SQLite uses a single-connection pool without sizing options.
    """
    options: dict[str, Any] = {"echo": echo}
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
    return options


class DatabaseManager:
    """Owns the process-wide engine and session factory, created on first use."""

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            settings = get_settings()
            url = self._database_url or settings.database_url
            self._engine = create_async_engine(url, **engine_options(url, settings.debug))
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            # Services commit explicitly; rows stay readable after commit
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on clean exit and rolls back on error.

        Used by the background ticks; request handlers get a plain session
        from `get_db_session` and commit inside their services.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


db_manager = DatabaseManager()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with db_manager.session_factory() as session:
        yield session


__all__ = [
    "Base",
    "DatabaseManager",
    "as_utc",
    "db_manager",
    "engine_options",
    "get_db_session",
    "utcnow",
]
