"""
Database layer — async SQLAlchemy 2.0 engine and session factory.

Provides:
    • Async engine and session factory (built on demand, not at import)
    • Base model for ORM entities
    • A UTC-normalising DateTime column type
    • Table creation / disposal helpers

Usage:
    from alerting.core.database import Database

    db = Database("sqlite+aiosqlite://")
    await db.init_models()
    async with db.session() as session:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as naive UTC, return them timezone-aware.

    SQLite drops tzinfo on round-trip; normalising on both sides keeps
    comparisons between stored and in-memory values well defined.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def is_memory_sqlite(url: str) -> bool:
    """True for SQLite URLs whose database lives only in this process."""
    if not url.startswith("sqlite"):
        return False
    path = url.split("://", 1)[-1]
    return path in ("", "/") or ":memory:" in path or "mode=memory" in path


def create_engine_for(url: str, *, echo: bool = False, pool_size: int = 20,
                      max_overflow: int = 10) -> AsyncEngine:
    """
    Build an async engine for ``url``.

    In-memory SQLite keeps one shared connection (the database disappears
    with it); file-backed SQLite opens a connection per session so each
    session gets its own transaction.
    """
    if is_memory_sqlite(url):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
    )


class Database:
    """Owns one engine and its session factory."""

    def __init__(self, url: str, *, echo: bool = False, pool_size: int = 20,
                 max_overflow: int = 10):
        self.url = url
        self.engine = create_engine_for(
            url, echo=echo, pool_size=pool_size, max_overflow=max_overflow,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        # One connection means one transaction; sessions must take turns.
        self.shared_connection = is_memory_sqlite(url)
        self._session_lock: Optional[asyncio.Lock] = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits on success and rolls back on error."""
        if not self.shared_connection:
            async with self._open_session() as session:
                yield session
            return
        if self._session_lock is None:
            self._session_lock = asyncio.Lock()
        async with self._session_lock:
            async with self._open_session() as session:
                yield session

    @asynccontextmanager
    async def _open_session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_models(self) -> None:
        """Create all tables (dev/test only — use migrations in production)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialised")

    async def close(self) -> None:
        """Dispose engine connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
