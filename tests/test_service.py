"""Tests for the series service."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dex_candles.chains import KATANA
from dex_candles.coordinator import InMemoryLockManager, UpdateCoordinator
from dex_candles.errors import (
    InvalidRequestError,
    NoPoolFoundError,
    NotFoundError,
    RefreshInProgressError,
    UpstreamUnavailableError,
)
from dex_candles.ingestor.pricing import SwapNormalizer
from dex_candles.ingestor.subgraph_client import FetchResult
from dex_candles.service import SeriesService, UpdateStatus, validate_token_address
from dex_candles.storage.hot_cache import now_ms
from dex_candles.storage.tiered import TieredStore

DAY_SEC = 24 * 60 * 60


@pytest.fixture
def now_sec() -> int:
    return now_ms() // 1000


@pytest.fixture
def records(make_record, now_sec: int) -> list:
    return [
        make_record("0xaa#1", now_sec - 600),
        make_record("0xbb#1", now_sec - 300),
    ]


@pytest.fixture
def client(stable_pool, records) -> AsyncMock:
    client = AsyncMock()
    client.fetch_pools = AsyncMock(return_value=[stable_pool])
    client.fetch_swaps = AsyncMock(return_value=FetchResult(swaps=records, pages=1))
    client.fetch_swaps_before = AsyncMock(return_value=FetchResult())
    return client


@pytest.fixture
def store(hot_cache, db_manager) -> TieredStore:
    return TieredStore(hot_cache, db_manager, KATANA)


@pytest.fixture
def coordinator() -> UpdateCoordinator:
    return UpdateCoordinator(InMemoryLockManager())


@pytest.fixture
def service(store, client, coordinator) -> SeriesService:
    return SeriesService(
        store,
        client,
        SwapNormalizer(KATANA),
        coordinator,
        KATANA,
        append_pause_seconds=0,
    )


class TestValidateTokenAddress:
    def test_lowercases(self, token_address: str) -> None:
        assert validate_token_address(token_address.upper().replace("0X", "0x")) == token_address

    @pytest.mark.parametrize("bad", ["", "0x123", "ee7d8bcfb72bc1880d0cf19822eb0a2e6577ab62", "0x" + "g" * 40])
    def test_rejects_malformed(self, bad: str) -> None:
        with pytest.raises(InvalidRequestError):
            validate_token_address(bad)


class TestGetSeries:
    """Tests for the cached read/refresh flow."""

    @pytest.mark.asyncio
    async def test_first_request_runs_full_fetch(
        self,
        service: SeriesService,
        client: AsyncMock,
        token_address: str,
    ) -> None:
        response = await service.get_series(token_address)

        assert response.update_status is UpdateStatus.UPDATED
        assert response.cached is False
        assert response.stats.new_swaps_fetched == 2
        assert [s.id for s in response.swaps] == ["0xbb#1", "0xaa#1"]
        assert response.swaps[0].token_price_usd == Decimal(2)
        client.fetch_pools.assert_called_once_with(token_address)
        _, kwargs = client.fetch_swaps.call_args
        assert kwargs["max_records"] == 6000
        assert kwargs["max_page_skip"] == 5000

    @pytest.mark.asyncio
    async def test_fresh_cache_makes_no_upstream_calls(
        self,
        service: SeriesService,
        client: AsyncMock,
        token_address: str,
    ) -> None:
        await service.get_series(token_address)
        client.reset_mock()

        response = await service.get_series(token_address)

        assert response.update_status is UpdateStatus.FRESH
        assert response.cached is True
        assert len(response.swaps) == 2
        client.fetch_pools.assert_not_called()
        client.fetch_swaps.assert_not_called()

    @pytest.mark.asyncio
    async def test_forced_refresh_is_incremental(
        self,
        service: SeriesService,
        client: AsyncMock,
        token_address: str,
        now_sec: int,
    ) -> None:
        await service.get_series(token_address)
        client.reset_mock()

        response = await service.get_series(token_address, force=True)

        assert response.update_status is UpdateStatus.UPDATED
        assert response.stats.new_swaps_fetched == 0
        assert response.stats.existing_swaps == 2
        client.fetch_pools.assert_not_called()
        args, kwargs = client.fetch_swaps.call_args
        assert args[1] == now_sec - 300
        assert kwargs["max_records"] == 3000

    @pytest.mark.asyncio
    async def test_candles_returned_oldest_first(self, service: SeriesService, token_address: str) -> None:
        response = await service.get_series(token_address, timeframe="1h")

        assert response.swaps is None
        assert response.candles
        timestamps = [c.timestamp for c in response.candles]
        assert timestamps == sorted(timestamps)
        assert sum(c.volume for c in response.candles) == Decimal(4)
        assert response.to_dict()["timeframe"] == "1h"

    @pytest.mark.asyncio
    async def test_lock_held_with_cache_serves_updating(
        self,
        service: SeriesService,
        coordinator: UpdateCoordinator,
        client: AsyncMock,
        token_address: str,
    ) -> None:
        await service.get_series(token_address)
        client.reset_mock()

        async with coordinator.refreshing(KATANA.update_lock_key(token_address)):
            response = await service.get_series(token_address, force=True)

        assert response.update_status is UpdateStatus.UPDATING
        assert response.cached is True
        client.fetch_swaps.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_held_without_cache_raises(
        self,
        service: SeriesService,
        coordinator: UpdateCoordinator,
        token_address: str,
    ) -> None:
        async with coordinator.refreshing(KATANA.update_lock_key(token_address)):
            with pytest.raises(RefreshInProgressError):
                await service.get_series(token_address)

    @pytest.mark.asyncio
    async def test_upstream_failure_with_cache_serves_stale(
        self,
        service: SeriesService,
        client: AsyncMock,
        token_address: str,
    ) -> None:
        await service.get_series(token_address)
        client.fetch_swaps.return_value = FetchResult(partial=True, pages=0)

        response = await service.get_series(token_address, force=True)

        assert response.update_status is UpdateStatus.STALE
        assert response.cached is True
        assert len(response.swaps) == 2

    @pytest.mark.asyncio
    async def test_upstream_failure_without_cache_raises(
        self,
        service: SeriesService,
        client: AsyncMock,
        token_address: str,
    ) -> None:
        client.fetch_swaps.return_value = FetchResult(partial=True, pages=0)

        with pytest.raises(UpstreamUnavailableError):
            await service.get_series(token_address)

    @pytest.mark.asyncio
    async def test_no_pool_raises(self, service: SeriesService, client: AsyncMock, token_address: str) -> None:
        client.fetch_pools.return_value = []

        with pytest.raises(NoPoolFoundError):
            await service.get_series(token_address)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 366])
    async def test_days_out_of_range(self, service: SeriesService, token_address: str, days: int) -> None:
        with pytest.raises(InvalidRequestError):
            await service.get_series(token_address, days=days)

    @pytest.mark.asyncio
    async def test_unknown_timeframe(self, service: SeriesService, client: AsyncMock, token_address: str) -> None:
        with pytest.raises(InvalidRequestError):
            await service.get_series(token_address, timeframe="2m")
        client.fetch_pools.assert_not_called()


class TestClearCache:
    @pytest.mark.asyncio
    async def test_clears_hot_keys(self, service: SeriesService, store: TieredStore, token_address: str) -> None:
        await service.get_series(token_address)

        result = await service.clear_cache(token_address)

        assert result.hot_keys_deleted == 2
        assert result.purged_durable is False
        assert await store.get_swap_series(token_address) is None
        assert await store.get_candle_series(token_address) is None

    @pytest.mark.asyncio
    async def test_purges_durable_rows(
        self,
        service: SeriesService,
        store: TieredStore,
        selection,
        make_swap,
        token_address: str,
    ) -> None:
        await store.write_durable_swaps(selection, [make_swap("0xcc#1", 1_000), make_swap("0xdd#1", 2_000)])

        result = await service.clear_cache(token_address, purge_durable=True)

        assert result.swaps_deleted == 2
        assert await store.durable_swap_count(token_address) == 0


class TestAppendHistorical:
    """Tests for extending the durable history backwards."""

    @pytest.mark.asyncio
    async def test_appends_older_swaps(
        self,
        service: SeriesService,
        store: TieredStore,
        client: AsyncMock,
        make_record,
        token_address: str,
        now_sec: int,
    ) -> None:
        await service.get_series(token_address)
        oldest_sec = now_sec - 600
        older_sec = oldest_sec - 2 * DAY_SEC
        client.fetch_swaps_before.side_effect = [
            FetchResult(swaps=[make_record("0x99#1", older_sec)], pages=1),
            FetchResult(pages=1),
        ]

        result = await service.append_historical(token_address, batch_count=2)

        assert result.swaps_added == 1
        assert result.batches_run == 2
        assert result.data_range.old_start_ms == oldest_sec * 1000
        assert result.data_range.new_start_ms == older_sec * 1000
        assert result.data_range.total_days_added == 2
        assert await store.durable_swap_count(token_address) == 1

        first, second = client.fetch_swaps_before.call_args_list
        assert first.args[1] == oldest_sec
        assert second.args[1] == older_sec

    @pytest.mark.asyncio
    async def test_without_stored_data_raises(self, service: SeriesService, token_address: str) -> None:
        with pytest.raises(NotFoundError):
            await service.append_historical(token_address)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batches", [0, 6])
    async def test_batch_count_bounds(self, service: SeriesService, token_address: str, batches: int) -> None:
        with pytest.raises(InvalidRequestError):
            await service.append_historical(token_address, batch_count=batches)

    @pytest.mark.asyncio
    async def test_rejected_while_refreshing(
        self,
        service: SeriesService,
        coordinator: UpdateCoordinator,
        token_address: str,
    ) -> None:
        async with coordinator.refreshing(KATANA.update_lock_key(token_address)):
            with pytest.raises(RefreshInProgressError):
                await service.append_historical(token_address)
