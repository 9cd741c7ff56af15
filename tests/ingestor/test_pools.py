"""Tests for pool selection."""

from decimal import Decimal

import pytest

from dex_candles.chains import KATANA, KATANA_AUSD, KATANA_USDC
from dex_candles.errors import NoPoolFoundError
from dex_candles.ingestor.models import PoolInfo, TokenInfo
from dex_candles.ingestor.pools import PoolSelection, select_pool

TARGET = "0xee7d8bcfb72bc1880d0cf19822eb0a2e6577ab62"
OTHER = "0x9999999999999999999999999999999999999999"


def make_pool(pool_id: str, token0: str, token1: str, tvl: str) -> PoolInfo:
    return PoolInfo(
        pool_id=pool_id,
        token0=TokenInfo(address=token0),
        token1=TokenInfo(address=token1),
        fee_tier=3000,
        tvl_usd=Decimal(tvl),
    )


class TestSelectPool:
    """Tests for select_pool."""

    def test_prefers_stable_over_deeper_pool(self) -> None:
        pools = [
            make_pool("0xdeep", TARGET, OTHER, "1000000"),
            make_pool("0xstable", KATANA_USDC, TARGET, "1000"),
        ]

        selection = select_pool(TARGET, pools, KATANA.stable_assets)

        assert selection.pool.pool_id == "0xstable"
        assert selection.is_token0 is False
        assert selection.base_token.address == TARGET
        assert selection.quote_token.address == KATANA_USDC

    def test_stable_priority_order(self) -> None:
        pools = [
            make_pool("0xausd", TARGET, KATANA_AUSD, "5000000"),
            make_pool("0xusdc", TARGET, KATANA_USDC, "10"),
        ]

        selection = select_pool(TARGET, pools, KATANA.stable_assets)

        assert selection.pool.pool_id == "0xusdc"

    def test_highest_tvl_within_same_stable(self) -> None:
        pools = [
            make_pool("0xsmall", TARGET, KATANA_USDC, "10"),
            make_pool("0xbig", TARGET, KATANA_USDC, "20"),
        ]

        assert select_pool(TARGET, pools, KATANA.stable_assets).pool.pool_id == "0xbig"

    def test_falls_back_to_deepest_pool(self) -> None:
        pools = [
            make_pool("0xa", TARGET, OTHER, "5"),
            make_pool("0xb", OTHER, TARGET, "50"),
        ]

        selection = select_pool(TARGET, pools, KATANA.stable_assets)

        assert selection.pool.pool_id == "0xb"
        assert selection.is_token0 is False

    def test_tvl_ties_broken_by_pool_id(self) -> None:
        pools = [
            make_pool("0xb", TARGET, OTHER, "5"),
            make_pool("0xa", TARGET, OTHER, "5"),
        ]

        assert select_pool(TARGET, pools, KATANA.stable_assets).pool.pool_id == "0xa"

    def test_input_address_case_is_ignored(self) -> None:
        pools = [make_pool("0xa", TARGET, KATANA_USDC, "5")]

        selection = select_pool(TARGET.upper().replace("0X", "0x"), pools, KATANA.stable_assets)

        assert selection.is_token0 is True

    def test_no_candidates_raises(self) -> None:
        pools = [make_pool("0xa", OTHER, KATANA_USDC, "5")]

        with pytest.raises(NoPoolFoundError):
            select_pool(TARGET, pools, KATANA.stable_assets)

    def test_pools_without_token_are_ignored(self) -> None:
        pools = [
            make_pool("0xunrelated", OTHER, KATANA_USDC, "9000000"),
            make_pool("0xself", TARGET, TARGET, "8000000"),
            make_pool("0xmine", TARGET, OTHER, "1"),
        ]

        assert select_pool(TARGET, pools, KATANA.stable_assets).pool.pool_id == "0xmine"

    def test_empty_pool_list_raises(self) -> None:
        with pytest.raises(NoPoolFoundError):
            select_pool(TARGET, [], KATANA.stable_assets)


class TestPoolSelection:
    def test_dict_roundtrip(self) -> None:
        selection = PoolSelection(pool=make_pool("0xa", TARGET, KATANA_USDC, "5"), is_token0=True)

        assert PoolSelection.from_dict(selection.to_dict()) == selection
