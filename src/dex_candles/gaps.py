"""Gap detection in stored candle series and backfill from the indexing service."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from dex_candles.candles import BASE_BUCKET_MS, MINUTE_MS, generate_base_candles
from dex_candles.chains import ChainConfig
from dex_candles.coordinator import UpdateCoordinator
from dex_candles.errors import NotFoundError
from dex_candles.ingestor.pools import PoolSelection
from dex_candles.ingestor.pricing import SwapNormalizer
from dex_candles.ingestor.subgraph_client import SubgraphClient
from dex_candles.storage.hot_cache import DataRange
from dex_candles.storage.tiered import TieredStore

logger = logging.getLogger(__name__)

# Slack for bucket timestamps that drift by a few seconds.
DEFAULT_TOLERANCE_MS = 10_000
GAP_FETCH_MAX_RECORDS = 5000
GAP_FETCH_MAX_SKIP = 5000
REBUILD_DAYS = 365


@dataclass(frozen=True)
class Gap:
    """A hole between two consecutive stored buckets."""

    start: int
    end: int
    duration_minutes: float
    missing_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "durationMinutes": self.duration_minutes,
            "missingCandles": self.missing_count,
        }


def detect_gaps(
    timestamps: Iterable[int],
    *,
    min_gap_ms: int = BASE_BUCKET_MS,
    bucket_ms: int = BASE_BUCKET_MS,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
) -> list[Gap]:
    """Find holes in a timestamp sequence.

    A pair of consecutive timestamps is a gap when they are further apart than
    ``min_gap_ms`` plus ``tolerance_ms`` and at least one whole bucket is
    missing between them.
    """
    ordered = sorted(set(timestamps))
    gaps: list[Gap] = []
    for current, following in zip(ordered, ordered[1:]):
        diff = following - current
        if diff <= min_gap_ms + tolerance_ms:
            continue
        missing = diff // bucket_ms - 1
        if missing > 0:
            gaps.append(
                Gap(
                    start=current,
                    end=following,
                    duration_minutes=diff / MINUTE_MS,
                    missing_count=missing,
                )
            )
    return gaps


@dataclass
class GapReport:
    token: str
    pool_id: str
    gaps: list[Gap]
    data_range: DataRange
    total_candles: int

    @property
    def missing_count(self) -> int:
        return sum(g.missing_count for g in self.gaps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenAddress": self.token,
            "poolId": self.pool_id,
            "gaps": [g.to_dict() for g in self.gaps],
            "gapsFound": len(self.gaps),
            "estimatedMissingCandles": self.missing_count,
            "dataRange": self.data_range.to_dict(),
            "totalCandles": self.total_candles,
        }


@dataclass
class GapFixResult:
    """Outcome of backfilling one gap."""

    gap: Gap
    swaps_fetched: int = 0
    candles_created: int = 0
    inserted: int = 0
    duplicates: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.gap.to_dict(),
            "swapsFetched": self.swaps_fetched,
            "candlesCreated": self.candles_created,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "error": self.error,
        }


@dataclass
class GapFixReport:
    report: GapReport
    dry_run: bool = False
    insufficient_data: bool = False
    results: list[GapFixResult] = field(default_factory=list)
    hot_candles_rebuilt: int = 0

    @property
    def gaps_fixed(self) -> int:
        return sum(1 for r in self.results if r.error is None and r.inserted > 0)

    @property
    def candles_inserted(self) -> int:
        return sum(r.inserted for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.report.to_dict(),
            "dryRun": self.dry_run,
            "insufficientData": self.insufficient_data,
            "results": [r.to_dict() for r in self.results],
            "gapsFixed": self.gaps_fixed,
            "candlesInserted": self.candles_inserted,
            "hotCandlesRebuilt": self.hot_candles_rebuilt,
        }


class GapBackfill:
    """Detects holes in a token's 5m candles and refills them from swaps."""

    def __init__(
        self,
        store: TieredStore,
        client: SubgraphClient,
        normalizer: SwapNormalizer,
        coordinator: UpdateCoordinator,
        chain: ChainConfig,
    ) -> None:
        self._store = store
        self._client = client
        self._normalizer = normalizer
        self._coordinator = coordinator
        self._chain = chain

    async def detect(self, token_address: str) -> GapReport:
        """Merge hot and durable candle timestamps and report the holes.

        Raises:
            NotFoundError: If the token has no tracked pool or no candles.
        """
        token = token_address.lower()
        selection = await self._store.find_selection(token)
        if selection is None:
            raise NotFoundError(f"No candle data found for {token}")

        pool_id = selection.pool.pool_id
        timestamps = await self._store.candle_timestamps(token, pool_id)
        if not timestamps:
            raise NotFoundError(f"No candle data found for {token}")

        gaps = detect_gaps(timestamps)
        logger.info(
            "Gap detection for %s: %d candles, %d gaps, %d missing",
            token,
            len(timestamps),
            len(gaps),
            sum(g.missing_count for g in gaps),
        )
        return GapReport(
            token=token,
            pool_id=pool_id,
            gaps=gaps,
            data_range=DataRange(start_ms=timestamps[0], end_ms=timestamps[-1]),
            total_candles=len(timestamps),
        )

    async def fix(self, token_address: str, *, dry_run: bool = False) -> GapFixReport:
        """Refetch every detected gap and write the rebuilt candles.

        Raises:
            RefreshInProgressError: If a gap fix is already running for the token.
            NotFoundError: If the token has no candles.
        """
        token = token_address.lower()
        async with self._coordinator.refreshing(self._chain.gap_fix_lock_key(token)):
            report = await self.detect(token)
            if report.total_candles < 2:
                logger.info("Insufficient candle data for %s: %d candles", token, report.total_candles)
                return GapFixReport(report=report, dry_run=dry_run, insufficient_data=True)
            if dry_run or not report.gaps:
                return GapFixReport(report=report, dry_run=dry_run)

            selection = await self._store.find_selection(token)
            if selection is None:
                raise NotFoundError(f"No pool metadata found for {token}")

            results = []
            for gap in report.gaps:
                results.append(await self._fix_one(token, gap, selection))

            rebuilt = await self._store.rebuild_hot_candles(token, report.pool_id, days=REBUILD_DAYS)
            fix_report = GapFixReport(report=report, results=results, hot_candles_rebuilt=rebuilt)
            logger.info(
                "Gap fix for %s: %d of %d gaps filled, %d candles inserted",
                token,
                fix_report.gaps_fixed,
                len(report.gaps),
                fix_report.candles_inserted,
            )
            return fix_report

    async def _fix_one(self, token: str, gap: Gap, selection: PoolSelection) -> GapFixResult:
        result = GapFixResult(gap=gap)
        try:
            fetched = await self._client.fetch_swaps(
                selection.pool.pool_id,
                gap.start // 1000,
                gap.end // 1000,
                max_records=GAP_FETCH_MAX_RECORDS,
                max_page_skip=GAP_FETCH_MAX_SKIP,
            )
            result.swaps_fetched = len(fetched.swaps)
            if not fetched.swaps:
                return result

            swaps = await self._normalizer.normalize_batch(fetched.swaps, selection)
            candles = generate_base_candles(swaps)
            result.candles_created = len(candles)
            if not candles:
                return result

            stats = await self._store.write_durable_candles(selection, candles)
            result.inserted = stats.inserted
            result.duplicates = stats.duplicates
        except Exception as e:
            logger.warning("Failed to fill gap %d-%d for %s: %s", gap.start, gap.end, token, e)
            result.error = str(e)
        return result
