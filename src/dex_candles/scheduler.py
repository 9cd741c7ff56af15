"""Background maintenance: hot-to-durable migration and proactive refresh.

This module provides a scheduler that periodically sweeps the hot tier for
series past their ceiling and keeps a whitelist of tokens warm so user
requests hit a fresh cache.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from dex_candles.errors import RefreshInProgressError
from dex_candles.service import SeriesService
from dex_candles.storage.tiered import MigrationStats, TieredStore

logger = logging.getLogger(__name__)

DEFAULT_MIGRATION_INTERVAL_SECONDS = 300
DEFAULT_PROACTIVE_INTERVAL_SECONDS = 300


class SchedulerState(str, Enum):
    """State of the maintenance scheduler."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for the maintenance loops."""

    migration_runs: int = 0
    migration_failures: int = 0
    items_migrated: int = 0
    last_migration_time: datetime | None = None
    refresh_runs: int = 0
    tokens_refreshed: int = 0
    tokens_skipped: int = 0
    token_failures: int = 0
    last_refresh_time: datetime | None = None
    last_error: str | None = None


StateCallback = Callable[[SchedulerState], None]
MigrationCallback = Callable[[MigrationStats], Awaitable[None]]


class MaintenanceScheduler:
    """Runs the migration sweep and proactive refresh loops.

    Example:
        ```python
        scheduler = MaintenanceScheduler(store, service, proactive_tokens=["0xee7d..."])
        await scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        store: TieredStore,
        service: SeriesService,
        *,
        migration_interval_seconds: float = DEFAULT_MIGRATION_INTERVAL_SECONDS,
        proactive_interval_seconds: float = DEFAULT_PROACTIVE_INTERVAL_SECONDS,
        proactive_tokens: Sequence[str] = (),
        on_state_change: StateCallback | None = None,
        on_migration_complete: MigrationCallback | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._migration_interval = migration_interval_seconds
        self._proactive_interval = proactive_interval_seconds
        self._proactive_tokens = [t.lower() for t in proactive_tokens]
        self._on_state_change = on_state_change
        self._on_migration_complete = on_migration_complete

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        """Current scheduler statistics."""
        return self._stats

    def _set_state(self, new_state: SchedulerState) -> None:
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    async def start(self) -> None:
        """Start both background loops."""
        if self._state != SchedulerState.STOPPED:
            logger.warning("Cannot start scheduler: already in state %s", self._state)
            return

        self._set_state(SchedulerState.STARTING)
        self._stop_event.clear()
        self._tasks = [asyncio.create_task(self._migration_loop(), name="migration-sweep")]
        if self._proactive_tokens:
            self._tasks.append(asyncio.create_task(self._refresh_loop(), name="proactive-refresh"))
        self._set_state(SchedulerState.RUNNING)
        logger.info(
            "Maintenance scheduler started (migration every %ss, %d proactive tokens every %ss)",
            self._migration_interval,
            len(self._proactive_tokens),
            self._proactive_interval,
        )

    async def stop(self) -> None:
        """Stop both background loops."""
        if self._state == SchedulerState.STOPPED:
            return

        self._set_state(SchedulerState.STOPPING)
        self._stop_event.set()

        for task in self._tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

        self._set_state(SchedulerState.STOPPED)
        logger.info("Maintenance scheduler stopped")

    async def _wait(self, interval: float) -> bool:
        """Sleep for ``interval`` unless stopped first. Returns True when stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            return True
        except TimeoutError:
            return self._stop_event.is_set()

    async def _migration_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                if await self._wait(self._migration_interval):
                    break
                await self.run_migration()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Migration loop error: %s", e)
                self._stats.migration_failures += 1
                self._stats.last_error = str(e)

    async def _refresh_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.refresh_proactive_tokens()
                if await self._wait(self._proactive_interval):
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Proactive refresh loop error: %s", e)
                self._stats.last_error = str(e)

    async def run_migration(self) -> MigrationStats:
        """Run one migration sweep now."""
        self._stats.migration_runs += 1
        stats = await self._store.sweep()
        self._stats.items_migrated += stats.migrated
        self._stats.last_migration_time = datetime.now(UTC)
        if self._on_migration_complete:
            try:
                await self._on_migration_complete(stats)
            except Exception as e:
                logger.warning("Migration callback failed: %s", e)
        return stats

    async def refresh_proactive_tokens(self) -> int:
        """Refresh every whitelisted token once. Returns how many refreshed."""
        self._stats.refresh_runs += 1
        refreshed = 0
        for token in self._proactive_tokens:
            if self._stop_event.is_set():
                break
            try:
                response = await self._service.get_series(token, force=False)
            except RefreshInProgressError:
                self._stats.tokens_skipped += 1
                logger.debug("Skipping proactive refresh for %s: refresh in progress", token)
                continue
            except Exception as e:
                self._stats.token_failures += 1
                self._stats.last_error = str(e)
                logger.warning("Proactive refresh failed for %s: %s", token, e)
                continue
            if not response.cached:
                refreshed += 1
        self._stats.tokens_refreshed += refreshed
        self._stats.last_refresh_time = datetime.now(UTC)
        logger.info("Proactive refresh: %d of %d tokens refreshed", refreshed, len(self._proactive_tokens))
        return refreshed
