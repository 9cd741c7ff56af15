"""Pipeline lifecycle owner for the candle service.

This module provides the CandlePipeline class that builds every component
from ``Settings``, starts the background maintenance loops and releases
connections on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from dex_candles.config import Settings, get_settings
from dex_candles.coordinator import RedisLockManager, UpdateCoordinator
from dex_candles.ingestor.pricing import NullPriceResolver, PriceResolver, StaticPriceResolver, SwapNormalizer
from dex_candles.ingestor.subgraph_client import RateLimiter, SubgraphClient
from dex_candles.scheduler import MaintenanceScheduler
from dex_candles.service import SeriesService
from dex_candles.storage.database import DatabaseManager
from dex_candles.storage.hot_cache import HotCache
from dex_candles.storage.tiered import TieredStore

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    errors: int = 0
    last_error: str | None = None


class CandlePipeline:
    """Wires the candle components together and manages their lifetime.

    Example:
        ```python
        from dex_candles.config import get_settings
        from dex_candles.pipeline import CandlePipeline

        async with CandlePipeline(get_settings(), scheduler_enabled=False) as pipeline:
            response = await pipeline.service.get_series("0xee7d...", timeframe="1h")
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        scheduler_enabled: bool | None = None,
        price_resolver: PriceResolver | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            scheduler_enabled: Overrides settings.scheduler.enabled.
            price_resolver: Fallback USD price source for pools without a stable side.
        """
        self._settings = settings or get_settings()
        self._scheduler_enabled = (
            scheduler_enabled if scheduler_enabled is not None else self._settings.scheduler.enabled
        )
        self._price_resolver = price_resolver

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._client: SubgraphClient | None = None
        self._store: TieredStore | None = None
        self._service: SeriesService | None = None
        self._scheduler: MaintenanceScheduler | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def service(self) -> SeriesService:
        if self._service is None:
            raise RuntimeError("Pipeline is not started")
        return self._service

    @property
    def store(self) -> TieredStore:
        if self._store is None:
            raise RuntimeError("Pipeline is not started")
        return self._store

    @property
    def scheduler(self) -> MaintenanceScheduler | None:
        return self._scheduler

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline for chain %s...", self._settings.chain_config.name)

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        if self._scheduler:
            await self._scheduler.stop()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask a running ``run()`` call to return."""
        if self._stop_event:
            self._stop_event.set()

    def _build_price_resolver(self) -> PriceResolver:
        if self._price_resolver is not None:
            return self._price_resolver
        if self._settings.pipeline.static_prices:
            return StaticPriceResolver(self._settings.pipeline.static_prices)
        return NullPriceResolver()

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings
        chain = settings.chain_config

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)

        logger.debug("Initializing subgraph client...")
        self._client = SubgraphClient(
            chain,
            api_key=settings.subgraph.api_key.get_secret_value() if settings.subgraph.api_key else None,
            rate_limiter=RateLimiter(
                max_concurrent=settings.subgraph.max_concurrent,
                min_interval_seconds=settings.subgraph.min_interval_seconds,
                reservoir=settings.subgraph.reservoir,
                reservoir_refresh_seconds=settings.subgraph.reservoir_refresh_seconds,
            ),
            page_size=settings.subgraph.page_size,
            page_delay_seconds=settings.subgraph.page_delay_seconds,
            timeout_seconds=settings.subgraph.timeout_seconds,
            max_retries=settings.subgraph.max_retries,
        )

        self._store = TieredStore(
            HotCache(self._redis, ttl_seconds=settings.pipeline.cache_ttl_seconds),
            self._db_manager,
            chain,
            swap_ceiling=settings.pipeline.hot_swap_ceiling,
            candle_ceiling=settings.pipeline.hot_candle_ceiling,
        )
        coordinator = UpdateCoordinator(
            RedisLockManager(self._redis),
            lock_ttl_seconds=settings.pipeline.lock_ttl_seconds,
            refresh_interval_seconds=settings.pipeline.refresh_interval_seconds,
        )
        self._service = SeriesService(
            self._store,
            self._client,
            SwapNormalizer(chain, self._build_price_resolver()),
            coordinator,
            chain,
            full_data_days=settings.pipeline.full_data_days,
            max_skip_full=settings.pipeline.max_skip_full,
            max_records_full=settings.pipeline.max_records_full,
            max_skip_incremental=settings.pipeline.max_skip_incremental,
            max_records_incremental=settings.pipeline.max_records_incremental,
        )

        if self._scheduler_enabled:
            self._scheduler = MaintenanceScheduler(
                self._store,
                self._service,
                migration_interval_seconds=settings.scheduler.migration_interval_seconds,
                proactive_interval_seconds=settings.scheduler.proactive_interval_seconds,
                proactive_tokens=settings.scheduler.proactive_token_list,
            )

    async def _start_background_services(self) -> None:
        if self._scheduler:
            logger.debug("Starting maintenance scheduler...")
            await self._scheduler.start()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._client:
            await self._client.close()
            self._client = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._store = None
        self._service = None
        self._scheduler = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until ``request_stop`` or cancellation."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> CandlePipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
