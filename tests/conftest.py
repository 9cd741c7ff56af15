"""Pytest configuration and fixtures."""

import fnmatch
from collections.abc import Callable
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from dex_candles.chains import KATANA, KATANA_USDC
from dex_candles.ingestor.models import NormalizedSwap, PoolInfo, SwapRecord, TokenInfo
from dex_candles.ingestor.pools import PoolSelection
from dex_candles.storage.database import DatabaseManager
from dex_candles.storage.hot_cache import HotCache, SeriesMetadata
from dex_candles.storage.models import Base

TOKEN_ADDRESS = "0xee7d8bcfb72bc1880d0cf19822eb0a2e6577ab62"
POOL_ID = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def token_address() -> str:
    """Sample tracked token address."""
    return TOKEN_ADDRESS


@pytest.fixture
def target_token() -> TokenInfo:
    return TokenInfo(address=TOKEN_ADDRESS, symbol="WETH", name="Wrapped Ether", decimals=18)


@pytest.fixture
def usdc_token() -> TokenInfo:
    return TokenInfo(address=KATANA_USDC, symbol="USDC", name="USD Coin", decimals=6)


@pytest.fixture
def stable_pool(target_token: TokenInfo, usdc_token: TokenInfo) -> PoolInfo:
    """A target/USDC pool with the target as token0."""
    return PoolInfo(
        pool_id=POOL_ID,
        token0=target_token,
        token1=usdc_token,
        fee_tier=3000,
        tvl_usd=Decimal("1000000"),
    )


@pytest.fixture
def selection(stable_pool: PoolInfo) -> PoolSelection:
    return PoolSelection(pool=stable_pool, is_token0=True)


@pytest.fixture
def metadata(selection: PoolSelection) -> SeriesMetadata:
    return SeriesMetadata.for_selection(
        TOKEN_ADDRESS,
        chain=KATANA.name,
        dex_id=KATANA.dex_id,
        selection=selection,
    )


@pytest.fixture
def make_swap() -> Callable[..., NormalizedSwap]:
    """Factory for normalized swaps with binary-exact decimals."""

    def _make(
        swap_id: str,
        timestamp_ms: int,
        price: str | None = "1.5",
        volume: str | None = "10",
        total: str = "10",
    ) -> NormalizedSwap:
        return NormalizedSwap(
            id=swap_id,
            timestamp_ms=timestamp_ms,
            token_price_usd=Decimal(price) if price is not None else None,
            token_volume_usd=Decimal(volume) if volume is not None else None,
            total_volume_usd=Decimal(total),
        )

    return _make


@pytest.fixture
def make_record(target_token: TokenInfo, usdc_token: TokenInfo) -> Callable[..., SwapRecord]:
    """Factory for raw swap records in the target/USDC pool."""

    def _make(
        swap_id: str,
        timestamp_sec: int,
        amount0: str = "-1",
        amount1: str = "2",
        amount_usd: str = "2",
    ) -> SwapRecord:
        return SwapRecord(
            id=swap_id,
            pool_id=POOL_ID,
            timestamp_sec=timestamp_sec,
            token0=target_token,
            token1=usdc_token,
            amount0=Decimal(amount0),
            amount1=Decimal(amount1),
            amount_usd=Decimal(amount_usd),
        )

    return _make


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Create a dict-backed mock Redis client."""
    data: dict[str, str] = {}

    async def get(key: str) -> str | None:
        return data.get(key)

    async def setex(key: str, ttl: int, value: str) -> bool:
        data[key] = value
        return True

    async def set_(key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in data:
            return None
        data[key] = value
        return True

    async def delete(*keys: str) -> int:
        return sum(1 for k in keys if data.pop(k, None) is not None)

    async def exists(*keys: str) -> int:
        return sum(1 for k in keys if k in data)

    async def scan_iter(match: str = "*", count: int | None = None):
        for key in list(data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    redis = AsyncMock()
    redis.data = data
    redis.get = AsyncMock(side_effect=get)
    redis.setex = AsyncMock(side_effect=setex)
    redis.set = AsyncMock(side_effect=set_)
    redis.delete = AsyncMock(side_effect=delete)
    redis.exists = AsyncMock(side_effect=exists)
    redis.scan_iter = MagicMock(side_effect=scan_iter)
    redis.aclose = AsyncMock()
    return redis


@pytest.fixture
def hot_cache(fake_redis: AsyncMock) -> HotCache:
    return HotCache(fake_redis)


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    return DatabaseManager.from_engine(async_engine)
