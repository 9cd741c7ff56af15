"""Hot/durable tiered storage for swap and candle series.

The hot tier (Redis) holds a size-bounded, newest-first window per token.
Anything pushed past the ceiling migrates to the durable tier (SQL) through
idempotent bulk inserts. Reads merge both tiers by item identity with the hot
value winning.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from dex_candles.candles import (
    BASE_BUCKET_MS,
    BASE_TIMEFRAME,
    Candle,
    bucket_start,
    generate_base_candles,
    merge_candles,
    merge_swaps,
)
from dex_candles.chains import ChainConfig
from dex_candles.errors import PersistenceFailureError
from dex_candles.ingestor.models import NormalizedSwap, PoolInfo, TokenInfo
from dex_candles.ingestor.pools import PoolSelection
from dex_candles.storage.database import DatabaseManager
from dex_candles.storage.hot_cache import CachedSeries, DataRange, HotCache, SeriesMetadata, now_ms
from dex_candles.storage.repos import (
    CandleDTO,
    CandleRepository,
    InsertStats,
    SwapDTO,
    SwapRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_SWAP_CEILING = 3000
DEFAULT_CANDLE_CEILING = 8640
DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class WriteResult:
    """Outcome of merging new items into the hot tier."""

    total_stored: int
    new_items: int
    existing_items: int
    migrated: int
    candles_written: int = 0


@dataclass
class MigrationStats:
    """Outcome of a hot-to-durable migration sweep."""

    keys_scanned: int = 0
    keys_trimmed: int = 0
    migrated: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0

    def add_insert(self, stats: InsertStats) -> None:
        self.inserted += stats.inserted
        self.duplicates += stats.duplicates
        self.errors += stats.errors


@dataclass
class DeleteStats:
    hot_keys_deleted: int = 0
    swaps_deleted: int = 0
    candles_deleted: int = 0


def _overflow_stored(overflow: Sequence[object], stats: InsertStats) -> bool:
    """True when the durable tier kept at least part of the overflow."""
    return stats.errors < len(overflow)


def _selection_from_dto(dto: SwapDTO | CandleDTO) -> PoolSelection:
    pool = PoolInfo(
        pool_id=dto.pool_id,
        token0=TokenInfo(address=dto.pool_token0_address, symbol=dto.pool_token0_symbol, name=dto.pool_token0_symbol),
        token1=TokenInfo(address=dto.pool_token1_address, symbol=dto.pool_token1_symbol, name=dto.pool_token1_symbol),
        fee_tier=dto.pool_fee_tier,
        tvl_usd=Decimal(0),
    )
    return PoolSelection(pool=pool, is_token0=dto.is_token0)


class TieredStore:
    """Size-bounded Redis hot tier in front of an unbounded SQL durable tier.

    Example:
        ```python
        store = TieredStore(HotCache(redis), db, KATANA)
        result = await store.write_swaps(token, swaps, metadata)
        recent = await store.read_candles(token, pool_id, since_ms)
        ```
    """

    def __init__(
        self,
        hot_cache: HotCache,
        db_manager: DatabaseManager,
        chain: ChainConfig,
        *,
        swap_ceiling: int = DEFAULT_SWAP_CEILING,
        candle_ceiling: int = DEFAULT_CANDLE_CEILING,
    ) -> None:
        self._hot = hot_cache
        self._db = db_manager
        self._chain = chain
        self._swap_ceiling = swap_ceiling
        self._candle_ceiling = candle_ceiling

    @property
    def chain(self) -> ChainConfig:
        return self._chain

    @property
    def hot_cache(self) -> HotCache:
        return self._hot

    @property
    def swap_ceiling(self) -> int:
        return self._swap_ceiling

    @property
    def candle_ceiling(self) -> int:
        return self._candle_ceiling

    # ------------------------------------------------------------------
    # Hot-tier documents
    # ------------------------------------------------------------------

    async def get_swap_series(self, token_address: str) -> CachedSeries[NormalizedSwap] | None:
        return await self._hot.get(self._chain.swaps_key(token_address.lower()), NormalizedSwap)

    async def get_candle_series(self, token_address: str) -> CachedSeries[Candle] | None:
        return await self._hot.get(self._chain.candles_key(token_address.lower()), Candle)

    async def find_selection(self, token_address: str) -> PoolSelection | None:
        """Resolve the tracked pool from hot metadata, then from durable rows."""
        token = token_address.lower()
        for series in (await self.get_swap_series(token), await self.get_candle_series(token)):
            if series is not None:
                return series.metadata.selection

        async with self._db.get_async_session() as session:
            candle = await CandleRepository(session).get_latest(token)
            if candle is not None:
                return _selection_from_dto(candle)
            swap = await SwapRepository(session).get_latest(token)
            if swap is not None:
                return _selection_from_dto(swap)
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_swaps(self, token_address: str, start_ms: int) -> list[NormalizedSwap]:
        """Swaps at or after ``start_ms`` from both tiers, newest first."""
        token = token_address.lower()
        series = await self.get_swap_series(token)
        hot = [s for s in series.items if s.timestamp_ms >= start_ms] if series else []

        async with self._db.get_async_session() as session:
            rows = await SwapRepository(session).list_since(token, start_ms)
        durable = [row.to_swap() for row in rows]

        return merge_swaps(durable, hot)

    async def read_candles(self, token_address: str, pool_id: str | None, start_ms: int) -> list[Candle]:
        """5m candles at or after ``start_ms`` from both tiers, newest first."""
        token = token_address.lower()
        series = await self.get_candle_series(token)
        hot = [c for c in series.items if c.timestamp >= start_ms] if series else []

        async with self._db.get_async_session() as session:
            rows = await CandleRepository(session).list_since(token, pool_id, start_ms, timeframe=BASE_TIMEFRAME)
        durable = [row.to_candle() for row in rows]

        return merge_candles(durable, hot)

    async def candle_timestamps(self, token_address: str, pool_id: str | None) -> list[int]:
        """Distinct 5m candle timestamps across both tiers, oldest first."""
        token = token_address.lower()
        series = await self.get_candle_series(token)
        hot = {c.timestamp for c in series.items} if series else set()

        async with self._db.get_async_session() as session:
            durable = await CandleRepository(session).list_timestamps(token, pool_id, timeframe=BASE_TIMEFRAME)

        return sorted(hot.union(durable))

    async def oldest_swap_timestamp(self, token_address: str) -> int | None:
        """Oldest swap timestamp, durable tier first, falling back to hot."""
        token = token_address.lower()
        async with self._db.get_async_session() as session:
            oldest = await SwapRepository(session).oldest_timestamp(token)
        if oldest is not None:
            return oldest

        series = await self.get_swap_series(token)
        if series and series.items:
            return min(s.timestamp_ms for s in series.items)
        return None

    async def durable_swap_count(self, token_address: str) -> int:
        async with self._db.get_async_session() as session:
            return await SwapRepository(session).count(token_address)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def write_swaps(
        self,
        token_address: str,
        new_items: Sequence[NormalizedSwap],
        metadata: SeriesMetadata,
    ) -> WriteResult:
        """Merge swaps into the hot tier, migrate overflow, then refresh touched candles."""
        token = token_address.lower()
        key = self._chain.swaps_key(token)
        current = await self._hot.get(key, NormalizedSwap)
        existing = current.items if current else []

        known_ids = {s.id for s in existing}
        incoming_ids = {s.id for s in new_items}
        new_count = len(incoming_ids - known_ids)

        merged = merge_swaps(existing, new_items)
        kept, overflow = merged[: self._swap_ceiling], merged[self._swap_ceiling :]

        base_range = current.metadata.data_range if current else DataRange()
        data_range = base_range.extend(
            merged[-1].timestamp_ms if merged else None,
            merged[0].timestamp_ms if merged else None,
        )
        metadata = metadata.copy(
            last_update_ms=now_ms(),
            last_data_timestamp_ms=kept[0].timestamp_ms if kept else metadata.last_data_timestamp_ms,
            data_range=data_range,
        )

        # Overflow leaves the hot tier only once the durable tier holds it.
        if overflow:
            stats = await self._migrate_swaps(token, overflow, metadata.selection)
            if not _overflow_stored(overflow, stats):
                kept, overflow = merged, []
        await self._hot.set(key, CachedSeries(items=kept, metadata=metadata))

        candles: list[Candle] = []
        if new_items:
            touched = bucket_start(min(s.timestamp_ms for s in new_items), BASE_BUCKET_MS)
            candles = generate_base_candles([s for s in merged if s.timestamp_ms >= touched])
            if candles:
                await self.write_candles(token, candles, metadata)

        logger.info(
            "Stored swaps for %s: %d in hot tier (%d new, %d existing), %d migrated, %d candles refreshed",
            token,
            len(kept),
            new_count,
            len(incoming_ids) - new_count,
            len(overflow),
            len(candles),
        )
        return WriteResult(
            total_stored=len(kept),
            new_items=new_count,
            existing_items=len(incoming_ids) - new_count,
            migrated=len(overflow),
            candles_written=len(candles),
        )

    async def write_candles(
        self,
        token_address: str,
        candles: Iterable[Candle],
        metadata: SeriesMetadata,
    ) -> WriteResult:
        """Merge 5m candles into the hot candle layer, migrating overflow."""
        token = token_address.lower()
        key = self._chain.candles_key(token)
        incoming = list(candles)
        current = await self._hot.get(key, Candle)
        existing = current.items if current else []

        known = {c.timestamp for c in existing}
        incoming_ts = {c.timestamp for c in incoming}
        new_count = len(incoming_ts - known)

        merged = merge_candles(existing, incoming)
        kept, overflow = merged[: self._candle_ceiling], merged[self._candle_ceiling :]

        base_range = current.metadata.data_range if current else DataRange()
        candle_metadata = metadata.copy(
            last_update_ms=now_ms(),
            last_data_timestamp_ms=kept[0].timestamp if kept else None,
            data_range=base_range.extend(
                merged[-1].timestamp if merged else None,
                merged[0].timestamp if merged else None,
            ),
        )
        if overflow:
            stats = await self._migrate_candles(token, overflow, metadata.selection)
            if not _overflow_stored(overflow, stats):
                kept, overflow = merged, []
        await self._hot.set(key, CachedSeries(items=kept, metadata=candle_metadata))

        return WriteResult(
            total_stored=len(kept),
            new_items=new_count,
            existing_items=len(incoming_ts) - new_count,
            migrated=len(overflow),
        )

    async def write_durable_swaps(
        self,
        selection: PoolSelection,
        swaps: Sequence[NormalizedSwap],
        *,
        block_numbers: dict[str, int | None] | None = None,
    ) -> InsertStats:
        """Insert swaps straight into the durable tier, ignoring duplicates.

        Raises:
            PersistenceFailureError: If no row could be written.
        """
        block_numbers = block_numbers or {}
        dtos = [SwapDTO.from_swap(s, selection, block_number=block_numbers.get(s.id)) for s in swaps]
        async with self._db.get_async_session() as session:
            return await SwapRepository(session).bulk_insert_ignore(dtos)

    async def write_durable_candles(self, selection: PoolSelection, candles: Sequence[Candle]) -> InsertStats:
        """Insert 5m candles straight into the durable tier, ignoring duplicates.

        Raises:
            PersistenceFailureError: If no row could be written.
        """
        dtos = [CandleDTO.from_candle(c, selection, timeframe=BASE_TIMEFRAME) for c in candles]
        async with self._db.get_async_session() as session:
            return await CandleRepository(session).bulk_insert_ignore(dtos)

    async def _migrate_swaps(self, token: str, swaps: Sequence[NormalizedSwap], selection: PoolSelection) -> InsertStats:
        try:
            stats = await self.write_durable_swaps(selection, swaps)
        except (PersistenceFailureError, SQLAlchemyError, OSError) as e:
            logger.error("Failed to migrate %d swaps for %s to durable tier: %s", len(swaps), token, e)
            return InsertStats(errors=len(swaps))
        logger.info(
            "Migrated %d swaps for %s to durable tier (%d inserted, %d duplicates)",
            len(swaps),
            token,
            stats.inserted,
            stats.duplicates,
        )
        return stats

    async def _migrate_candles(self, token: str, candles: Sequence[Candle], selection: PoolSelection) -> InsertStats:
        try:
            stats = await self.write_durable_candles(selection, candles)
        except (PersistenceFailureError, SQLAlchemyError, OSError) as e:
            logger.error("Failed to migrate %d candles for %s to durable tier: %s", len(candles), token, e)
            return InsertStats(errors=len(candles))
        logger.info(
            "Migrated %d candles for %s to durable tier (%d inserted, %d duplicates)",
            len(candles),
            token,
            stats.inserted,
            stats.duplicates,
        )
        return stats

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def migrate_overflow(self, key: str) -> tuple[int, InsertStats]:
        """Trim one hot key to its ceiling, moving the excess to the durable tier.

        Returns:
            Number of items moved out of the hot tier and the insert outcome.
        """
        is_candles = key.startswith("candles_")
        item_type = Candle if is_candles else NormalizedSwap
        ceiling = self._candle_ceiling if is_candles else self._swap_ceiling

        series = await self._hot.get(key, item_type)
        if series is None or len(series.items) <= ceiling:
            return 0, InsertStats()

        kept, overflow = series.items[:ceiling], series.items[ceiling:]
        token = series.metadata.token_address
        selection = series.metadata.selection
        if is_candles:
            stats = await self._migrate_candles(token, overflow, selection)
        else:
            stats = await self._migrate_swaps(token, overflow, selection)

        if not _overflow_stored(overflow, stats):
            logger.warning("Keeping %d overflow items in %s until the durable tier accepts them", len(overflow), key)
            return 0, stats
        await self._hot.set(key, CachedSeries(items=kept, metadata=series.metadata))
        return len(overflow), stats

    async def sweep(self) -> MigrationStats:
        """Scan every hot key of both layers and migrate anything over its ceiling."""
        stats = MigrationStats()
        keys = await self._hot.scan_keys(self._chain.swaps_key_pattern)
        keys += await self._hot.scan_keys(self._chain.candles_key_pattern)

        for key in keys:
            stats.keys_scanned += 1
            try:
                moved, insert_stats = await self.migrate_overflow(key)
            except Exception as e:
                logger.error("Migration failed for %s: %s", key, e)
                stats.errors += 1
                continue
            if moved:
                stats.keys_trimmed += 1
                stats.migrated += moved
            stats.add_insert(insert_stats)

        logger.info(
            "Migration sweep: %d keys scanned, %d trimmed, %d items migrated (%d inserted, %d duplicates, %d errors)",
            stats.keys_scanned,
            stats.keys_trimmed,
            stats.migrated,
            stats.inserted,
            stats.duplicates,
            stats.errors,
        )
        return stats

    async def rebuild_hot_candles(self, token_address: str, pool_id: str | None, days: int = 365) -> int:
        """Reload the hot candle layer from the most recent durable candles.

        Returns:
            Number of candles held in the hot layer afterwards.
        """
        token = token_address.lower()
        since = now_ms() - days * DAY_MS

        async with self._db.get_async_session() as session:
            rows = await CandleRepository(session).list_since(
                token, pool_id, since, timeframe=BASE_TIMEFRAME, limit=self._candle_ceiling
            )

        current = await self.get_candle_series(token)
        if current is not None:
            metadata = current.metadata
        else:
            swaps = await self.get_swap_series(token)
            if swaps is not None:
                metadata = swaps.metadata
            elif rows:
                metadata = SeriesMetadata.for_selection(
                    token,
                    chain=self._chain.name,
                    dex_id=self._chain.dex_id,
                    selection=_selection_from_dto(rows[0]),
                )
            else:
                return 0

        merged = merge_candles([row.to_candle() for row in rows], current.items if current else [])
        kept = merged[: self._candle_ceiling]
        metadata = metadata.copy(
            last_update_ms=now_ms(),
            last_data_timestamp_ms=kept[0].timestamp if kept else None,
            data_range=DataRange(
                start_ms=kept[-1].timestamp if kept else None,
                end_ms=kept[0].timestamp if kept else None,
            ),
        )
        await self._hot.set(self._chain.candles_key(token), CachedSeries(items=kept, metadata=metadata))
        logger.info("Rebuilt hot candle layer for %s with %d candles (%d from durable tier)", token, len(kept), len(rows))
        return len(kept)

    async def delete(self, token_address: str, *, purge_durable: bool = False) -> DeleteStats:
        """Remove a token's hot keys and, optionally, its durable rows."""
        token = token_address.lower()
        stats = DeleteStats()
        stats.hot_keys_deleted = await self._hot.delete(self._chain.swaps_key(token), self._chain.candles_key(token))

        if purge_durable:
            async with self._db.get_async_session() as session:
                stats.swaps_deleted = await SwapRepository(session).delete_for_token(token)
                stats.candles_deleted = await CandleRepository(session).delete_for_token(token)

        logger.info(
            "Deleted data for %s: %d hot keys, %d swaps, %d candles",
            token,
            stats.hot_keys_deleted,
            stats.swaps_deleted,
            stats.candles_deleted,
        )
        return stats
