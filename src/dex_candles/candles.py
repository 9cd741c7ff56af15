"""OHLC candle generation, timeframe roll-ups and keyed merges.

Base candles are 5 minutes wide and built directly from normalized swaps.
Every coarser timeframe is derived from base candles on read.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from dex_candles.errors import InvalidRequestError
from dex_candles.ingestor.models import NormalizedSwap

MINUTE_MS = 60 * 1000
BASE_TIMEFRAME = "5m"
BASE_BUCKET_MS = 5 * MINUTE_MS

TIMEFRAMES: dict[str, int] = {
    "5m": BASE_BUCKET_MS,
    "15m": 15 * MINUTE_MS,
    "30m": 30 * MINUTE_MS,
    "1h": 60 * MINUTE_MS,
    "4h": 4 * 60 * MINUTE_MS,
    "1d": 24 * 60 * MINUTE_MS,
    "1w": 7 * 24 * 60 * MINUTE_MS,
}


@dataclass(frozen=True)
class Candle:
    """One OHLCV bucket. ``timestamp`` is the bucket start in epoch ms."""

    timestamp: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Candle:
        return cls(
            timestamp=int(data["timestamp"]),
            open=Decimal(str(data["open"])),
            high=Decimal(str(data["high"])),
            low=Decimal(str(data["low"])),
            close=Decimal(str(data["close"])),
            volume=Decimal(str(data["volume"])),
        )


def timeframe_ms(timeframe: str) -> int:
    """Resolve a timeframe name to its bucket width in milliseconds."""
    try:
        return TIMEFRAMES[timeframe]
    except KeyError:
        raise InvalidRequestError(
            f"Unsupported timeframe '{timeframe}'. Use one of: {', '.join(TIMEFRAMES)}"
        ) from None


def bucket_start(timestamp_ms: int, bucket_ms: int) -> int:
    return (timestamp_ms // bucket_ms) * bucket_ms


def generate_base_candles(
    swaps: Iterable[NormalizedSwap],
    bucket_ms: int = BASE_BUCKET_MS,
) -> list[Candle]:
    """Bucket priced swaps into OHLCV candles, oldest first.

    Unpriced swaps are skipped entirely so they cannot distort prices or
    volume sums. Empty buckets produce no candle.
    """
    priced = sorted(
        ((s, s.token_price_usd) for s in swaps if s.token_price_usd is not None),
        key=lambda pair: (pair[0].timestamp_ms, pair[0].id),
    )

    candles: list[Candle] = []
    current: int | None = None
    o = hi = lo = c = v = Decimal(0)
    for swap, price in priced:
        volume = swap.token_volume_usd or Decimal(0)
        bucket = bucket_start(swap.timestamp_ms, bucket_ms)
        if bucket != current:
            if current is not None:
                candles.append(Candle(current, o, hi, lo, c, v))
            current = bucket
            o = hi = lo = c = price
            v = volume
            continue
        hi = max(hi, price)
        lo = min(lo, price)
        c = price
        v += volume
    if current is not None:
        candles.append(Candle(current, o, hi, lo, c, v))
    return candles


def aggregate(candles: Iterable[Candle], target_bucket_ms: int) -> list[Candle]:
    """Roll candles up to a coarser bucket width, oldest first.

    Open/close follow constituent timestamps rather than input order, so the
    result is the same for any ordering of the input and re-aggregating at
    the same width returns an equal series.
    """
    ordered = sorted(candles, key=lambda x: x.timestamp)

    result: list[Candle] = []
    current: int | None = None
    o = hi = lo = c = v = Decimal(0)
    for candle in ordered:
        bucket = bucket_start(candle.timestamp, target_bucket_ms)
        if bucket != current:
            if current is not None:
                result.append(Candle(current, o, hi, lo, c, v))
            current = bucket
            o, hi, lo, c, v = candle.open, candle.high, candle.low, candle.close, candle.volume
            continue
        hi = max(hi, candle.high)
        lo = min(lo, candle.low)
        c = candle.close
        v += candle.volume
    if current is not None:
        result.append(Candle(current, o, hi, lo, c, v))
    return result


def aggregate_to_timeframe(candles: Iterable[Candle], timeframe: str) -> list[Candle]:
    """Aggregate base candles to a named timeframe, oldest first."""
    width = timeframe_ms(timeframe)
    if width == BASE_BUCKET_MS:
        return sorted(candles, key=lambda x: x.timestamp)
    return aggregate(candles, width)


def merge_swaps(existing: Iterable[NormalizedSwap], new: Iterable[NormalizedSwap]) -> list[NormalizedSwap]:
    """Merge swap sets by id with ``new`` winning, newest first."""
    by_id: dict[str, NormalizedSwap] = {s.id: s for s in existing}
    for swap in new:
        by_id[swap.id] = swap
    return sorted(by_id.values(), key=lambda s: (s.timestamp_ms, s.id), reverse=True)


def merge_candles(existing: Iterable[Candle], new: Iterable[Candle]) -> list[Candle]:
    """Merge candle sets by timestamp with ``new`` winning, newest first."""
    by_ts: dict[int, Candle] = {c.timestamp: c for c in existing}
    for candle in new:
        by_ts[candle.timestamp] = candle
    return sorted(by_ts.values(), key=lambda x: x.timestamp, reverse=True)
