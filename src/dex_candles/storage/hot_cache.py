"""Redis-backed hot tier for recent swap and candle series.

Each tracked token owns two JSON documents: the swap layer and the 5m candle
layer. Both carry the same ``SeriesMetadata`` and keep items newest first.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Generic, Protocol, TypeVar

from redis.asyncio import Redis

from dex_candles.ingestor.models import PoolInfo, TokenInfo
from dex_candles.ingestor.pools import PoolSelection

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 365 * 24 * 60 * 60


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


class _SeriesItem(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


ItemT = TypeVar("ItemT", bound=_SeriesItem)


@dataclass
class DataRange:
    """Oldest and newest item timestamps held for a series, in ms."""

    start_ms: int | None = None
    end_ms: int | None = None

    def extend(self, start_ms: int | None, end_ms: int | None) -> DataRange:
        starts = [t for t in (self.start_ms, start_ms) if t is not None]
        ends = [t for t in (self.end_ms, end_ms) if t is not None]
        return DataRange(start_ms=min(starts) if starts else None, end_ms=max(ends) if ends else None)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start_ms, "end": self.end_ms}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DataRange:
        data = data or {}
        start, end = data.get("start"), data.get("end")
        return cls(
            start_ms=int(start) if start is not None else None,
            end_ms=int(end) if end is not None else None,
        )


@dataclass
class SeriesMetadata:
    """Pool context and freshness bookkeeping for a cached series."""

    token_address: str
    chain: str
    dex_id: str
    pool: PoolInfo
    is_token0: bool
    last_update_ms: int = 0
    last_data_timestamp_ms: int | None = None
    data_range: DataRange = field(default_factory=DataRange)
    partial: bool = False

    @classmethod
    def for_selection(
        cls,
        token_address: str,
        *,
        chain: str,
        dex_id: str,
        selection: PoolSelection,
    ) -> SeriesMetadata:
        return cls(
            token_address=token_address.lower(),
            chain=chain,
            dex_id=dex_id,
            pool=selection.pool,
            is_token0=selection.is_token0,
        )

    @property
    def selection(self) -> PoolSelection:
        return PoolSelection(pool=self.pool, is_token0=self.is_token0)

    @property
    def quote_token(self) -> TokenInfo:
        return self.selection.quote_token

    def copy(self, **changes: Any) -> SeriesMetadata:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenAddress": self.token_address,
            "chain": self.chain,
            "dexId": self.dex_id,
            "pool": self.pool.to_dict(),
            "isToken0": self.is_token0,
            "quoteToken": self.quote_token.to_dict(),
            "lastUpdate": self.last_update_ms,
            "lastSwapTimestamp": self.last_data_timestamp_ms,
            "dataRange": self.data_range.to_dict(),
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SeriesMetadata:
        last_data = data.get("lastSwapTimestamp")
        return cls(
            token_address=str(data["tokenAddress"]).lower(),
            chain=str(data["chain"]),
            dex_id=str(data.get("dexId", "")),
            pool=PoolInfo.from_dict(data["pool"]),
            is_token0=bool(data["isToken0"]),
            last_update_ms=int(data.get("lastUpdate") or 0),
            last_data_timestamp_ms=int(last_data) if last_data is not None else None,
            data_range=DataRange.from_dict(data.get("dataRange")),
            partial=bool(data.get("partial", False)),
        )


@dataclass
class CachedSeries(Generic[ItemT]):
    """Hot-tier record: items newest first plus their metadata."""

    items: list[ItemT]
    metadata: SeriesMetadata

    def to_json(self) -> str:
        return json.dumps(
            {
                "items": [item.to_dict() for item in self.items],
                "metadata": self.metadata.to_dict(),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes, item_type: Any) -> CachedSeries[Any]:
        """Parse a cached document, building items with ``item_type.from_dict``."""
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(
            items=[item_type.from_dict(item) for item in data.get("items", [])],
            metadata=SeriesMetadata.from_dict(data["metadata"]),
        )


class HotCache:
    """Thin typed wrapper around Redis for cached series documents."""

    def __init__(self, redis: Redis, *, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @property
    def redis(self) -> Redis:
        return self._redis

    async def get(self, key: str, item_type: Any) -> CachedSeries[Any] | None:
        """Load a cached series, or None when missing or unreadable."""
        raw = await self._redis.get(key)
        if not raw:
            return None
        try:
            return CachedSeries.from_json(raw, item_type)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse cached series %s: %s", key, e)
            return None

    async def set(self, key: str, series: CachedSeries[Any]) -> None:
        await self._redis.setex(key, self._ttl, series.to_json())

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        deleted = await self._redis.delete(*keys)
        return int(deleted)

    async def scan_keys(self, pattern: str) -> list[str]:
        """All keys matching ``pattern``, decoded to str."""
        keys: list[str] = []
        async for key in self._redis.scan_iter(match=pattern, count=500):
            keys.append(key.decode() if isinstance(key, bytes) else str(key))
        return keys
