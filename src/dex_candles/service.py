"""Series service: the request-facing entry point of the candle pipeline.

This module wires pool selection, the subgraph client, normalization, the
tiered store and the update coordinator into the operations a web layer or
the CLI calls.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dex_candles.candles import Candle, aggregate_to_timeframe, timeframe_ms
from dex_candles.chains import ChainConfig
from dex_candles.coordinator import UpdateCoordinator
from dex_candles.errors import (
    InvalidRequestError,
    NotFoundError,
    RefreshInProgressError,
    UpstreamUnavailableError,
)
from dex_candles.gaps import GapBackfill, GapFixReport, GapReport
from dex_candles.ingestor.models import NormalizedSwap, SwapRecord
from dex_candles.ingestor.pools import PoolSelection, select_pool
from dex_candles.ingestor.pricing import SwapNormalizer
from dex_candles.ingestor.subgraph_client import FetchResult, SubgraphClient
from dex_candles.storage.hot_cache import CachedSeries, SeriesMetadata, now_ms
from dex_candles.storage.repos import InsertStats
from dex_candles.storage.tiered import DAY_MS, TieredStore, WriteResult

logger = logging.getLogger(__name__)

TOKEN_ADDRESS_RE = re.compile(r"^0x[a-f0-9]{40}$")
MIN_DAYS = 1
MAX_DAYS = 365
MAX_APPEND_BATCHES = 5

DEFAULT_FULL_DATA_DAYS = 365
DEFAULT_MAX_SKIP_FULL = 5000
DEFAULT_MAX_RECORDS_FULL = 6000
DEFAULT_MAX_SKIP_INCREMENTAL = 2000
DEFAULT_MAX_RECORDS_INCREMENTAL = 3000
DEFAULT_APPEND_PAUSE_SECONDS = 2.0


class UpdateStatus(str, Enum):
    """How the served data relates to the indexing service."""

    FRESH = "fresh"  # cached and inside the refresh interval
    UPDATED = "updated"  # refreshed by this request
    UPDATING = "updating"  # another request holds the refresh lock
    STALE = "stale"  # refresh failed upstream, cached data served


@dataclass
class SeriesStats:
    total_swaps_stored: int = 0
    new_swaps_fetched: int = 0
    existing_swaps: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "totalSwapsStored": self.total_swaps_stored,
            "newSwapsFetched": self.new_swaps_fetched,
            "existingSwaps": self.existing_swaps,
        }


@dataclass
class SeriesResponse:
    """Swaps (newest first) or candles (oldest first) for one token."""

    token_address: str
    metadata: SeriesMetadata
    cached: bool
    update_status: UpdateStatus
    stats: SeriesStats
    timeframe: str | None = None
    swaps: list[NormalizedSwap] | None = None
    candles: list[Candle] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tokenAddress": self.token_address,
            "metadata": self.metadata.to_dict(),
            "cached": self.cached,
            "updateStatus": self.update_status.value,
            "stats": self.stats.to_dict(),
        }
        if self.candles is not None:
            data["timeframe"] = self.timeframe
            data["candles"] = [c.to_dict() for c in self.candles]
        else:
            data["swaps"] = [s.to_dict() for s in self.swaps or []]
        return data


@dataclass
class ClearResult:
    token_address: str
    hot_keys_deleted: int
    swaps_deleted: int = 0
    candles_deleted: int = 0
    purged_durable: bool = False


@dataclass
class AppendRange:
    old_start_ms: int
    new_start_ms: int
    end_ms: int | None
    total_days_added: int


@dataclass
class AppendResult:
    token_address: str
    pool_id: str
    swaps_added: int
    duplicates: int
    batches_run: int
    data_range: AppendRange
    errors: int = 0
    partial_batches: list[int] = field(default_factory=list)


def validate_token_address(token_address: str) -> str:
    """Lower-case and check a token address.

    Raises:
        InvalidRequestError: If the address is not a 20-byte hex string.
    """
    token = (token_address or "").strip().lower()
    if not TOKEN_ADDRESS_RE.match(token):
        raise InvalidRequestError(f"Invalid token address: {token_address!r}")
    return token


class SeriesService:
    """Serves cached swap and candle series, refreshing them when stale.

    Example:
        ```python
        service = SeriesService(store, client, SwapNormalizer(KATANA), coordinator, KATANA)
        response = await service.get_series("0xee7d...", timeframe="1h")
        ```
    """

    def __init__(
        self,
        store: TieredStore,
        client: SubgraphClient,
        normalizer: SwapNormalizer,
        coordinator: UpdateCoordinator,
        chain: ChainConfig,
        *,
        full_data_days: int = DEFAULT_FULL_DATA_DAYS,
        max_skip_full: int = DEFAULT_MAX_SKIP_FULL,
        max_records_full: int = DEFAULT_MAX_RECORDS_FULL,
        max_skip_incremental: int = DEFAULT_MAX_SKIP_INCREMENTAL,
        max_records_incremental: int = DEFAULT_MAX_RECORDS_INCREMENTAL,
        append_pause_seconds: float = DEFAULT_APPEND_PAUSE_SECONDS,
    ) -> None:
        self._store = store
        self._client = client
        self._normalizer = normalizer
        self._coordinator = coordinator
        self._chain = chain
        self._full_data_days = full_data_days
        self._max_skip_full = max_skip_full
        self._max_records_full = max_records_full
        self._max_skip_incremental = max_skip_incremental
        self._max_records_incremental = max_records_incremental
        self._append_pause = append_pause_seconds
        self._gaps = GapBackfill(store, client, normalizer, coordinator, chain)

    @property
    def chain(self) -> ChainConfig:
        return self._chain

    # ------------------------------------------------------------------
    # Series reads
    # ------------------------------------------------------------------

    async def get_series(
        self,
        token_address: str,
        *,
        days: int = MAX_DAYS,
        timeframe: str | None = None,
        force: bool = False,
    ) -> SeriesResponse:
        """Return swaps, or candles when ``timeframe`` is given, refreshing if due.

        Raises:
            InvalidRequestError: On a malformed address, day count or timeframe.
            RefreshInProgressError: If another refresh runs and nothing is cached.
            UpstreamUnavailableError: If the refresh fails and nothing is cached.
            NoPoolFoundError: If the token trades in no known pool.
        """
        token = validate_token_address(token_address)
        if not MIN_DAYS <= days <= MAX_DAYS:
            raise InvalidRequestError(f"days must be between {MIN_DAYS} and {MAX_DAYS}, got {days}")
        if timeframe is not None:
            timeframe_ms(timeframe)

        series = await self._store.get_swap_series(token)
        lock_key = self._chain.update_lock_key(token)
        stats = SeriesStats(total_swaps_stored=len(series.items) if series else 0)
        last_update = series.metadata.last_update_ms if series else None

        if not self._coordinator.needs_refresh(last_update, force=force):
            status, cached = UpdateStatus.FRESH, True
        elif await self._coordinator.is_refreshing(lock_key):
            if series is None:
                raise RefreshInProgressError(lock_key)
            status, cached = UpdateStatus.UPDATING, True
        else:
            try:
                async with self._coordinator.refreshing(lock_key):
                    write = await self._refresh(token, series)
                status, cached = UpdateStatus.UPDATED, False
                stats = SeriesStats(
                    total_swaps_stored=write.total_stored,
                    new_swaps_fetched=write.new_items,
                    existing_swaps=write.existing_items,
                )
            except RefreshInProgressError:
                if series is None:
                    raise
                status, cached = UpdateStatus.UPDATING, True
            except UpstreamUnavailableError as e:
                if series is None:
                    raise
                logger.warning("Refresh failed for %s, serving cached data: %s", token, e)
                status, cached = UpdateStatus.STALE, True

        current = await self._store.get_swap_series(token)
        if current is None:
            raise NotFoundError(f"No data stored for {token}")
        return await self._build_response(token, current, days, timeframe, cached, status, stats)

    async def _build_response(
        self,
        token: str,
        series: CachedSeries[NormalizedSwap],
        days: int,
        timeframe: str | None,
        cached: bool,
        status: UpdateStatus,
        stats: SeriesStats,
    ) -> SeriesResponse:
        start_ms = now_ms() - days * DAY_MS
        response = SeriesResponse(
            token_address=token,
            metadata=series.metadata,
            cached=cached,
            update_status=status,
            stats=stats,
            timeframe=timeframe,
        )
        if timeframe is not None:
            base = await self._store.read_candles(token, series.metadata.pool.pool_id, start_ms)
            response.candles = aggregate_to_timeframe(base, timeframe)
        else:
            response.swaps = await self._store.read_swaps(token, start_ms)
        return response

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _select_pool(self, token: str) -> PoolSelection:
        pools = await self._client.fetch_pools(token)
        return select_pool(token, pools, self._chain.stable_assets)

    async def _refresh(self, token: str, series: CachedSeries[NormalizedSwap] | None) -> WriteResult:
        now_sec = now_ms() // 1000
        if series is None:
            selection = await self._select_pool(token)
            metadata = SeriesMetadata.for_selection(
                token,
                chain=self._chain.name,
                dex_id=self._chain.dex_id,
                selection=selection,
            )
            start_sec = now_sec - self._full_data_days * 24 * 60 * 60
            max_records, max_skip = self._max_records_full, self._max_skip_full
            logger.info("Full fetch for %s from pool %s", token, selection.pool.pool_id)
        else:
            metadata = series.metadata
            selection = metadata.selection
            if metadata.last_data_timestamp_ms:
                start_sec = metadata.last_data_timestamp_ms // 1000
            else:
                start_sec = now_sec - self._full_data_days * 24 * 60 * 60
            max_records, max_skip = self._max_records_incremental, self._max_skip_incremental
            logger.info("Incremental fetch for %s since %d", token, start_sec)

        fetched = await self._client.fetch_swaps(
            selection.pool.pool_id,
            start_sec,
            now_sec,
            max_records=max_records,
            max_page_skip=max_skip,
        )
        self._raise_if_unreachable(token, fetched)

        swaps = await self._normalizer.normalize_batch(fetched.swaps, selection)
        return await self._store.write_swaps(token, swaps, metadata.copy(partial=fetched.partial))

    @staticmethod
    def _raise_if_unreachable(token: str, fetched: FetchResult) -> None:
        # A partial result without a single page means the first request failed.
        if fetched.partial and fetched.pages == 0:
            raise UpstreamUnavailableError(f"Indexing service unavailable while refreshing {token}")

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def clear_cache(self, token_address: str, *, purge_durable: bool = False) -> ClearResult:
        """Drop the hot-tier series for a token, optionally its durable rows too."""
        token = validate_token_address(token_address)
        stats = await self._store.delete(token, purge_durable=purge_durable)
        return ClearResult(
            token_address=token,
            hot_keys_deleted=stats.hot_keys_deleted,
            swaps_deleted=stats.swaps_deleted,
            candles_deleted=stats.candles_deleted,
            purged_durable=purge_durable,
        )

    async def append_historical(self, token_address: str, batch_count: int = 1) -> AppendResult:
        """Extend the durable swap history backwards from the oldest stored swap.

        Raises:
            InvalidRequestError: If ``batch_count`` is outside 1..5.
            NotFoundError: If the token has no pool metadata or no stored swaps.
            RefreshInProgressError: If a refresh holds the token's lock.
        """
        token = validate_token_address(token_address)
        if not 1 <= batch_count <= MAX_APPEND_BATCHES:
            raise InvalidRequestError(f"batch_count must be between 1 and {MAX_APPEND_BATCHES}, got {batch_count}")

        async with self._coordinator.refreshing(self._chain.update_lock_key(token)):
            selection = await self._store.find_selection(token)
            if selection is None:
                raise NotFoundError(f"No pool metadata stored for {token}; fetch the series first")
            oldest = await self._store.oldest_swap_timestamp(token)
            if oldest is None:
                raise NotFoundError(f"No swaps stored for {token}; fetch the series first")

            records, batches_run, partial_batches = await self._fetch_history(selection, oldest, batch_count)
            swaps = await self._normalizer.normalize_batch(records, selection)

            stats = InsertStats()
            if swaps:
                stats = await self._store.write_durable_swaps(
                    selection,
                    swaps,
                    block_numbers={r.id: r.block_number for r in records},
                )

            series = await self._store.get_swap_series(token)
            end_ms = series.metadata.last_data_timestamp_ms if series else None
            new_start = min([oldest, *(s.timestamp_ms for s in swaps)])

        logger.info(
            "Appended history for %s: %d swaps fetched in %d batches (%d inserted, %d duplicates)",
            token,
            len(swaps),
            batches_run,
            stats.inserted,
            stats.duplicates,
        )
        return AppendResult(
            token_address=token,
            pool_id=selection.pool.pool_id,
            swaps_added=stats.inserted,
            duplicates=stats.duplicates,
            batches_run=batches_run,
            data_range=AppendRange(
                old_start_ms=oldest,
                new_start_ms=new_start,
                end_ms=end_ms,
                total_days_added=(oldest - new_start) // DAY_MS,
            ),
            errors=stats.errors,
            partial_batches=partial_batches,
        )

    async def _fetch_history(
        self,
        selection: PoolSelection,
        oldest_ms: int,
        batch_count: int,
    ) -> tuple[list[SwapRecord], int, list[int]]:
        cursor = oldest_ms // 1000
        records: list[SwapRecord] = []
        partial_batches: list[int] = []
        batches_run = 0

        for batch in range(1, batch_count + 1):
            if batch > 1 and self._append_pause > 0:
                await asyncio.sleep(self._append_pause)

            fetched = await self._client.fetch_swaps_before(
                selection.pool.pool_id,
                cursor,
                max_records=self._max_records_full,
                max_page_skip=self._max_skip_full,
            )
            batches_run += 1
            if fetched.partial:
                partial_batches.append(batch)
            if not fetched.swaps:
                logger.info("No older swaps for pool %s before %d", selection.pool.pool_id, cursor)
                break

            records.extend(fetched.swaps)
            cursor = fetched.oldest_timestamp_sec or cursor
            logger.debug("History batch %d: %d swaps, cursor now %d", batch, len(fetched.swaps), cursor)

        return records, batches_run, partial_batches

    async def detect_gaps(self, token_address: str) -> GapReport:
        return await self._gaps.detect(validate_token_address(token_address))

    async def fix_gaps(self, token_address: str, *, dry_run: bool = False) -> GapFixReport:
        return await self._gaps.fix(validate_token_address(token_address), dry_run=dry_run)
