"""Tests for refresh locking and the freshness policy."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dex_candles.coordinator import InMemoryLockManager, RedisLockManager, UpdateCoordinator
from dex_candles.errors import RefreshInProgressError

KEY = "update_lock_katana_0xabc"


class TestInMemoryLockManager:
    """Tests for the process-local lock table."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        locks = InMemoryLockManager()

        assert await locks.try_acquire(KEY, 60) is True
        assert await locks.is_locked(KEY) is True
        assert await locks.try_acquire(KEY, 60) is False

        await locks.release(KEY)
        assert await locks.is_locked(KEY) is False
        assert await locks.try_acquire(KEY, 60) is True

    @pytest.mark.asyncio
    async def test_expired_lock_counts_as_absent(self) -> None:
        locks = InMemoryLockManager()

        assert await locks.try_acquire(KEY, 0) is True

        assert await locks.is_locked(KEY) is False
        assert await locks.try_acquire(KEY, 60) is True

    @pytest.mark.asyncio
    async def test_keys_are_independent(self) -> None:
        locks = InMemoryLockManager()

        assert await locks.try_acquire("a", 60) is True
        assert await locks.try_acquire("b", 60) is True


class TestRedisLockManager:
    """Tests for the Redis-backed lock table."""

    @pytest.mark.asyncio
    async def test_uses_set_nx_with_ttl(self, fake_redis: AsyncMock) -> None:
        locks = RedisLockManager(fake_redis)

        assert await locks.try_acquire(KEY, 3600) is True

        fake_redis.set.assert_called_once()
        _, kwargs = fake_redis.set.call_args
        assert kwargs == {"nx": True, "ex": 3600}

    @pytest.mark.asyncio
    async def test_second_acquire_fails(self, fake_redis: AsyncMock) -> None:
        locks = RedisLockManager(fake_redis)

        assert await locks.try_acquire(KEY, 3600) is True
        assert await locks.try_acquire(KEY, 3600) is False
        assert await locks.is_locked(KEY) is True

        await locks.release(KEY)
        assert await locks.is_locked(KEY) is False


class TestUpdateCoordinator:
    """Tests for the freshness policy and lock context manager."""

    def test_needs_refresh_when_forced(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager(), refresh_interval_seconds=3600)
        assert coordinator.needs_refresh(1_000, force=True, now_ms=1_000) is True

    def test_needs_refresh_without_cache(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager())
        assert coordinator.needs_refresh(None, now_ms=1_000) is True

    def test_fresh_inside_interval(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager(), refresh_interval_seconds=3600)
        assert coordinator.needs_refresh(1_000, now_ms=1_000 + 3_599_999) is False

    def test_stale_at_interval_boundary(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager(), refresh_interval_seconds=3600)
        assert coordinator.needs_refresh(1_000, now_ms=1_000 + 3_600_000) is True

    @pytest.mark.asyncio
    async def test_refreshing_releases_on_error(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager())

        with pytest.raises(RuntimeError):
            async with coordinator.refreshing(KEY):
                assert await coordinator.is_refreshing(KEY) is True
                raise RuntimeError("boom")

        assert await coordinator.is_refreshing(KEY) is False

    @pytest.mark.asyncio
    async def test_held_lock_raises_refresh_in_progress(self) -> None:
        coordinator = UpdateCoordinator(InMemoryLockManager())

        async with coordinator.refreshing(KEY):
            with pytest.raises(RefreshInProgressError) as exc_info:
                async with coordinator.refreshing(KEY):
                    pass

        assert exc_info.value.key == KEY
        assert exc_info.value.http_status == 429

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_mutually_exclusive(self) -> None:
        """Exactly one of two concurrent refreshes enters; the other is rejected."""
        coordinator = UpdateCoordinator(InMemoryLockManager())
        entered: list[str] = []
        release = asyncio.Event()

        async def attempt(name: str) -> str:
            try:
                async with coordinator.refreshing(KEY):
                    entered.append(name)
                    await release.wait()
                    return "refreshed"
            except RefreshInProgressError:
                return "rejected"

        first = asyncio.create_task(attempt("first"))
        second = asyncio.create_task(attempt("second"))
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(first, second)

        assert sorted(results) == ["refreshed", "rejected"]
        assert len(entered) == 1
