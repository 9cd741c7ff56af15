"""Tests for the maintenance scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from dex_candles.errors import RefreshInProgressError, UpstreamUnavailableError
from dex_candles.scheduler import MaintenanceScheduler, SchedulerState, SchedulerStats
from dex_candles.service import SeriesService
from dex_candles.storage.tiered import MigrationStats, TieredStore

TOKENS = [
    "0x1111111111111111111111111111111111111111",
    "0x2222222222222222222222222222222222222222",
    "0x3333333333333333333333333333333333333333",
]


@pytest.fixture
def mock_store() -> MagicMock:
    store = MagicMock(spec=TieredStore)
    store.sweep = AsyncMock(return_value=MigrationStats(keys_scanned=2, keys_trimmed=1, migrated=40, inserted=40))
    return store


@pytest.fixture
def mock_service() -> MagicMock:
    service = MagicMock(spec=SeriesService)
    service.get_series = AsyncMock(return_value=MagicMock(cached=False))
    return service


class TestSchedulerStats:
    def test_defaults(self) -> None:
        stats = SchedulerStats()

        assert stats.migration_runs == 0
        assert stats.items_migrated == 0
        assert stats.tokens_refreshed == 0
        assert stats.last_migration_time is None
        assert stats.last_error is None


class TestMaintenanceScheduler:
    """Tests for the MaintenanceScheduler class."""

    @pytest.mark.asyncio
    async def test_start_stop(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        """Test starting and stopping the scheduler."""
        scheduler = MaintenanceScheduler(mock_store, mock_service, migration_interval_seconds=3600)

        assert scheduler.state == SchedulerState.STOPPED
        await scheduler.start()
        assert scheduler.state == SchedulerState.RUNNING
        await scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        scheduler = MaintenanceScheduler(mock_store, mock_service, migration_interval_seconds=3600)

        await scheduler.start()
        await scheduler.start()  # Should be a no-op

        assert scheduler.state == SchedulerState.RUNNING
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        scheduler = MaintenanceScheduler(mock_store, mock_service)

        await scheduler.stop()  # Should be a no-op

        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_state_change_callback(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        states: list[SchedulerState] = []

        scheduler = MaintenanceScheduler(
            mock_store,
            mock_service,
            migration_interval_seconds=3600,
            on_state_change=states.append,
        )
        await scheduler.start()
        await scheduler.stop()

        assert states == [
            SchedulerState.STARTING,
            SchedulerState.RUNNING,
            SchedulerState.STOPPING,
            SchedulerState.STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_migration_loop_runs_on_interval(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        scheduler = MaintenanceScheduler(mock_store, mock_service, migration_interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert mock_store.sweep.await_count >= 1
        assert scheduler.stats.migration_runs >= 1
        assert scheduler.stats.items_migrated >= 40

    @pytest.mark.asyncio
    async def test_migration_loop_survives_errors(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        mock_store.sweep.side_effect = RuntimeError("redis unavailable")
        scheduler = MaintenanceScheduler(mock_store, mock_service, migration_interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.state == SchedulerState.RUNNING
        await scheduler.stop()

        assert scheduler.stats.migration_failures >= 1
        assert scheduler.stats.last_error == "redis unavailable"

    @pytest.mark.asyncio
    async def test_run_migration_invokes_callback(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        received: list[MigrationStats] = []

        async def on_complete(stats: MigrationStats) -> None:
            received.append(stats)

        scheduler = MaintenanceScheduler(mock_store, mock_service, on_migration_complete=on_complete)

        stats = await scheduler.run_migration()

        assert stats.migrated == 40
        assert received == [stats]
        assert scheduler.stats.last_migration_time is not None

    @pytest.mark.asyncio
    async def test_proactive_refresh_runs_immediately(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        scheduler = MaintenanceScheduler(
            mock_store,
            mock_service,
            migration_interval_seconds=3600,
            proactive_interval_seconds=3600,
            proactive_tokens=TOKENS[:1],
        )

        await scheduler.start()
        await asyncio.sleep(0.01)
        await scheduler.stop()

        mock_service.get_series.assert_awaited_once_with(TOKENS[0], force=False)

    @pytest.mark.asyncio
    async def test_refresh_counts_outcomes(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        mock_service.get_series.side_effect = [
            MagicMock(cached=False),
            RefreshInProgressError("update_lock_katana_0x2222"),
            UpstreamUnavailableError("indexer down"),
        ]
        scheduler = MaintenanceScheduler(mock_store, mock_service, proactive_tokens=TOKENS)

        refreshed = await scheduler.refresh_proactive_tokens()

        assert refreshed == 1
        assert scheduler.stats.tokens_refreshed == 1
        assert scheduler.stats.tokens_skipped == 1
        assert scheduler.stats.token_failures == 1
        assert scheduler.stats.last_error == "indexer down"

    @pytest.mark.asyncio
    async def test_fresh_tokens_are_not_counted(self, mock_store: MagicMock, mock_service: MagicMock) -> None:
        mock_service.get_series.return_value = MagicMock(cached=True)
        scheduler = MaintenanceScheduler(mock_store, mock_service, proactive_tokens=TOKENS)

        assert await scheduler.refresh_proactive_tokens() == 0
        assert mock_service.get_series.await_count == 3
