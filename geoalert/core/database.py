"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite locally).

Provides:
    • An explicitly constructed ``Database`` handle (engine + session factory)
    • Transactional session scope with commit/rollback
    • Base model for ORM entities
    • Timezone-preserving DateTime column type

The handle is created by the application lifespan and passed to the SQL
stores; nothing connects at import time.

Usage:
    db = Database("sqlite+aiosqlite:///./geoalert.db")
    await db.init()
    async with db.session() as session:
        ...
    await db.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from geoalert.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class UTCDateTime(TypeDecorator):
    """
    DateTime that always round-trips as timezone-aware UTC.

    SQLite drops tzinfo on read; values are normalised on the way in and
    re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _engine_kwargs(url: str, echo: bool) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        # In-memory databases live on one connection; share it across sessions
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
        kwargs["pool_pre_ping"] = True
    return kwargs


class Database:
    """Explicit store handle: opened at startup, closed at shutdown."""

    def __init__(self, url: Optional[str] = None, *, echo: Optional[bool] = None):
        self.url = url or settings.DATABASE_URL
        self._echo = settings.DATABASE_ECHO if echo is None else echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._sqlite_lock: Optional[asyncio.Lock] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database.init() has not been called")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    # ── Lifecycle ──

    async def init(self, create_tables: bool = True) -> None:
        """Create the engine and, for dev/test, all tables."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, **_engine_kwargs(self.url, self._echo))
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        if self._engine.dialect.name == "sqlite":
            # SQLite has a single writer; serialise sessions in-process
            self._sqlite_lock = asyncio.Lock()
        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialised (%s)", self.url.split("@")[-1])

    async def close(self) -> None:
        """Dispose engine connections."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._sqlite_lock = None
        logger.info("Database connections closed")

    # ── Sessions ──

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Yield a session; commit on success, roll back on error.

        Store methods open exactly one session each and never nest them.
        """
        if self._session_factory is None:
            raise RuntimeError("Database.init() has not been called")
        if self._sqlite_lock is None:
            async with self._scope() as session:
                yield session
        else:
            async with self._sqlite_lock:
                async with self._scope() as session:
                    yield session

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> float:
        """Round-trip a trivial query; returns latency in ms."""
        start = time.monotonic()
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return (time.monotonic() - start) * 1000
