"""Per-token refresh locking and freshness policy.

At most one refresh per token runs at a time. Callers that lose the race
are never queued: they either get served the cached series or receive a
``RefreshInProgressError`` to retry later. Locks carry a TTL so a crashed
refresh releases itself.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from redis.asyncio import Redis

from dex_candles.errors import RefreshInProgressError
from dex_candles.storage.hot_cache import now_ms as _now_ms

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 3600
DEFAULT_REFRESH_INTERVAL_SECONDS = 3600


class LockManager(Protocol):
    """Keyed, expiring mutual exclusion."""

    async def try_acquire(self, key: str, ttl_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...

    async def is_locked(self, key: str) -> bool: ...


class InMemoryLockManager:
    """Process-local lock table mapping key to expiry."""

    def __init__(self) -> None:
        self._expiry: dict[str, float] = {}
        self._guard = asyncio.Lock()

    async def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        async with self._guard:
            now = time.monotonic()
            expires_at = self._expiry.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiry[key] = now + ttl_seconds
            return True

    async def release(self, key: str) -> None:
        async with self._guard:
            self._expiry.pop(key, None)

    async def is_locked(self, key: str) -> bool:
        async with self._guard:
            expires_at = self._expiry.get(key)
            if expires_at is None:
                return False
            if expires_at <= time.monotonic():
                del self._expiry[key]
                return False
            return True


class RedisLockManager:
    """Distributed lock table using ``SET key value NX EX ttl``."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        acquired = await self._redis.set(key, str(_now_ms()), nx=True, ex=ttl_seconds)
        return bool(acquired)

    async def release(self, key: str) -> None:
        await self._redis.delete(key)

    async def is_locked(self, key: str) -> bool:
        return int(await self._redis.exists(key)) > 0


class UpdateCoordinator:
    """Decides when a token needs refreshing and serializes refreshes per key.

    Example:
        ```python
        coordinator = UpdateCoordinator(InMemoryLockManager())
        if coordinator.needs_refresh(metadata.last_update_ms):
            async with coordinator.refreshing(chain.update_lock_key(token)):
                ...
        ```
    """

    def __init__(
        self,
        lock_manager: LockManager,
        *,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ) -> None:
        self._locks = lock_manager
        self._lock_ttl = lock_ttl_seconds
        self._refresh_interval_ms = refresh_interval_seconds * 1000

    @property
    def lock_manager(self) -> LockManager:
        return self._locks

    def needs_refresh(
        self,
        last_update_ms: int | None,
        *,
        force: bool = False,
        now_ms: int | None = None,
    ) -> bool:
        """True when forced, never refreshed, or older than the refresh interval."""
        if force or not last_update_ms:
            return True
        now = now_ms if now_ms is not None else _now_ms()
        return now - last_update_ms >= self._refresh_interval_ms

    async def is_refreshing(self, key: str) -> bool:
        return await self._locks.is_locked(key)

    @asynccontextmanager
    async def refreshing(self, key: str) -> AsyncIterator[None]:
        """Hold the refresh lock for ``key`` for the duration of the block.

        Raises:
            RefreshInProgressError: If another refresh holds the lock.
        """
        if not await self._locks.try_acquire(key, self._lock_ttl):
            logger.info("Refresh already in progress for %s", key)
            raise RefreshInProgressError(key)

        logger.debug("Acquired refresh lock %s", key)
        try:
            yield
        finally:
            await self._locks.release(key)
            logger.debug("Released refresh lock %s", key)
