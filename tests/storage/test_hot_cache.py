"""Tests for the Redis hot tier."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dex_candles.candles import Candle
from dex_candles.ingestor.models import NormalizedSwap
from dex_candles.storage.hot_cache import (
    CachedSeries,
    DataRange,
    HotCache,
    SeriesMetadata,
)


class TestDataRange:
    """Tests for DataRange."""

    def test_extend_empty(self) -> None:
        assert DataRange().extend(100, 200) == DataRange(start_ms=100, end_ms=200)

    def test_extend_widens_only(self) -> None:
        current = DataRange(start_ms=100, end_ms=200)

        assert current.extend(150, 300) == DataRange(start_ms=100, end_ms=300)
        assert current.extend(50, 120) == DataRange(start_ms=50, end_ms=200)

    def test_extend_with_none_keeps_bounds(self) -> None:
        assert DataRange(start_ms=1, end_ms=2).extend(None, None) == DataRange(start_ms=1, end_ms=2)

    def test_from_missing_dict(self) -> None:
        assert DataRange.from_dict(None) == DataRange()


class TestSeriesMetadata:
    """Tests for SeriesMetadata serialization."""

    def test_dict_roundtrip(self, metadata: SeriesMetadata) -> None:
        updated = metadata.copy(
            last_update_ms=1_000,
            last_data_timestamp_ms=900,
            data_range=DataRange(start_ms=100, end_ms=900),
            partial=True,
        )

        assert SeriesMetadata.from_dict(updated.to_dict()) == updated

    def test_to_dict_exposes_quote_token(self, metadata: SeriesMetadata, usdc_token) -> None:
        data = metadata.to_dict()

        assert data["quoteToken"]["address"] == usdc_token.address
        assert data["isToken0"] is True
        assert data["lastSwapTimestamp"] is None

    def test_copy_leaves_original(self, metadata: SeriesMetadata) -> None:
        metadata.copy(last_update_ms=5)
        assert metadata.last_update_ms == 0


class TestCachedSeries:
    """Tests for the cached JSON document."""

    def test_json_roundtrip_candles(self, metadata: SeriesMetadata) -> None:
        candle = Candle(
            timestamp=300_000,
            open=Decimal("1.5"),
            high=Decimal(2),
            low=Decimal(1),
            close=Decimal("1.25"),
            volume=Decimal(10),
        )
        series = CachedSeries(items=[candle], metadata=metadata)

        restored = CachedSeries.from_json(series.to_json().encode(), Candle)

        assert restored.items == [candle]
        assert restored.metadata == metadata

    def test_missing_items_defaults_to_empty(self, metadata: SeriesMetadata) -> None:
        raw = json.dumps({"metadata": metadata.to_dict()})
        assert CachedSeries.from_json(raw, Candle).items == []


# ============================================================================
# HotCache
# ============================================================================


class TestHotCache:
    """Tests for HotCache against a dict-backed Redis."""

    @pytest.mark.asyncio
    async def test_set_and_get_swaps(self, hot_cache: HotCache, fake_redis: AsyncMock, make_swap, metadata) -> None:
        swaps = [make_swap("0x2#0", 2000), make_swap("0x1#0", 1000, price=None, volume=None)]

        await hot_cache.set("full_swaps_katana_x", CachedSeries(items=swaps, metadata=metadata))
        cached = await hot_cache.get("full_swaps_katana_x", NormalizedSwap)

        assert cached is not None
        assert cached.items == swaps
        ttl = fake_redis.setex.call_args.args[1]
        assert ttl == 365 * 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_custom_ttl(self, fake_redis: AsyncMock, metadata) -> None:
        cache = HotCache(fake_redis, ttl_seconds=60)

        await cache.set("k", CachedSeries(items=[], metadata=metadata))

        assert fake_redis.setex.call_args.args[1] == 60

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, hot_cache: HotCache) -> None:
        assert await hot_cache.get("nope", NormalizedSwap) is None

    @pytest.mark.asyncio
    async def test_corrupt_document_returns_none(self, hot_cache: HotCache, fake_redis: AsyncMock) -> None:
        fake_redis.data["bad"] = "{not json"
        fake_redis.data["no_meta"] = json.dumps({"items": []})

        assert await hot_cache.get("bad", Candle) is None
        assert await hot_cache.get("no_meta", Candle) is None

    @pytest.mark.asyncio
    async def test_delete(self, hot_cache: HotCache, fake_redis: AsyncMock) -> None:
        fake_redis.data.update({"a": "1", "b": "2"})

        assert await hot_cache.delete("a", "b", "c") == 2
        assert await hot_cache.delete() == 0
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_scan_keys_decodes_bytes(self) -> None:
        async def scan_iter(match: str, count: int):
            for key in (b"full_swaps_katana_0xa", "candles_katana_0xa_5m"):
                yield key

        redis = AsyncMock()
        redis.scan_iter = scan_iter
        cache = HotCache(redis)

        assert await cache.scan_keys("*") == ["full_swaps_katana_0xa", "candles_katana_0xa_5m"]

    @pytest.mark.asyncio
    async def test_scan_keys_pattern(self, hot_cache: HotCache, fake_redis: AsyncMock) -> None:
        fake_redis.data.update({"full_swaps_katana_0xa": "{}", "candles_katana_0xa_5m": "{}"})

        assert await hot_cache.scan_keys("full_swaps_*") == ["full_swaps_katana_0xa"]
