"""Async engine and transactional sessions for the durable tier.

Production runs on PostgreSQL through asyncpg; the test suite runs the same
repositories against in-memory SQLite. Pool sizing only applies to the
PostgreSQL engine, and the repositories pick their conflict-ignoring insert
from the dialect of the session they are handed.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

ASYNC_POSTGRES_SCHEME = "postgresql+asyncpg"


def async_database_url(database_url: str) -> str:
    """Point a plain ``postgresql://`` URL at the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL names no async driver; using %s", ASYNC_POSTGRES_SCHEME)
        return ASYNC_POSTGRES_SCHEME + database_url[len("postgresql") :]
    return database_url


def engine_options(database_url: str, pool_size: int) -> dict[str, Any]:
    """Engine keyword arguments for the dialect behind ``database_url``."""
    if make_url(database_url).get_backend_name() != "postgresql":
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": pool_size * 2,
        # Swap refreshes can sit idle for minutes between upstream pages.
        "pool_pre_ping": True,
    }


class DatabaseManager:
    """Owns the durable tier engine and hands out unit-of-work sessions."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.database_url = async_database_url(database_url)
        self._pool_size = pool_size
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> DatabaseManager:
        """Wrap an engine built elsewhere, such as the in-memory SQLite test engine."""
        return cls(engine.url.render_as_string(hide_password=False), engine=engine)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.database_url,
                **engine_options(self.database_url, self._pool_size),
            )
            logger.info("Durable tier engine created (%s)", self._engine.dialect.name)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits when the block exits cleanly.

        Any exception rolls the whole unit of work back and propagates.
        """
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose_async(self) -> None:
        """Close pooled connections; the next session builds a fresh engine."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Durable tier connections disposed")
