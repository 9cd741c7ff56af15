"""Repository pattern implementations for data access.

This module provides the durable-tier data access for swaps and candles.
All writes are idempotent: duplicate keys are skipped, never errors.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from dex_candles.candles import Candle
from dex_candles.errors import PersistenceFailureError
from dex_candles.ingestor.models import NormalizedSwap
from dex_candles.ingestor.pools import PoolSelection
from dex_candles.storage.models import Base, CandleModel, SwapModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters under SQLite's limit.
INSERT_CHUNK_SIZE = 500
DEFAULT_DELETE_BATCH_SIZE = 10_000

SWAP_CONFLICT_KEYS = ["id"]
CANDLE_CONFLICT_KEYS = ["token_address", "pool_id", "timeframe", "timestamp"]


@dataclass
class InsertStats:
    """Outcome of an idempotent bulk insert."""

    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    used_fallback: bool = False

    def add(self, other: InsertStats) -> None:
        self.inserted += other.inserted
        self.duplicates += other.duplicates
        self.errors += other.errors
        self.used_fallback = self.used_fallback or other.used_fallback


@dataclass
class SwapDTO:
    """Data transfer object for durable swaps."""

    id: str
    pool_id: str
    pool_token0_address: str
    pool_token0_symbol: str
    pool_token1_address: str
    pool_token1_symbol: str
    pool_fee_tier: int
    token_address: str
    is_token0: bool
    timestamp: int
    token_price_usd: Decimal | None
    token_volume_usd: Decimal | None
    total_volume_usd: Decimal
    block_number: int | None = None
    tx_hash: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SwapModel) -> SwapDTO:
        return cls(
            id=model.id,
            pool_id=model.pool_id,
            pool_token0_address=model.pool_token0_address,
            pool_token0_symbol=model.pool_token0_symbol,
            pool_token1_address=model.pool_token1_address,
            pool_token1_symbol=model.pool_token1_symbol,
            pool_fee_tier=model.pool_fee_tier,
            token_address=model.token_address,
            is_token0=model.is_token0,
            timestamp=model.timestamp,
            token_price_usd=model.token_price_usd,
            token_volume_usd=model.token_volume_usd,
            total_volume_usd=model.total_volume_usd,
            block_number=model.block_number,
            tx_hash=model.tx_hash,
            created_at=model.created_at,
        )

    @classmethod
    def from_swap(
        cls,
        swap: NormalizedSwap,
        selection: PoolSelection,
        *,
        block_number: int | None = None,
    ) -> SwapDTO:
        pool = selection.pool
        return cls(
            id=swap.id,
            pool_id=pool.pool_id,
            pool_token0_address=pool.token0.address,
            pool_token0_symbol=pool.token0.symbol,
            pool_token1_address=pool.token1.address,
            pool_token1_symbol=pool.token1.symbol,
            pool_fee_tier=pool.fee_tier,
            token_address=selection.base_token.address,
            is_token0=selection.is_token0,
            timestamp=swap.timestamp_ms,
            token_price_usd=swap.token_price_usd,
            token_volume_usd=swap.token_volume_usd,
            total_volume_usd=swap.total_volume_usd,
            block_number=block_number,
            # Subgraph swap ids are "<tx hash>#<log index>" (v3) or "<tx hash>-<index>" (v2).
            tx_hash=swap.id.split("#")[0].split("-")[0].lower() or None,
        )

    def to_swap(self) -> NormalizedSwap:
        return NormalizedSwap(
            id=self.id,
            timestamp_ms=self.timestamp,
            token_price_usd=self.token_price_usd,
            token_volume_usd=self.token_volume_usd,
            total_volume_usd=self.total_volume_usd,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pool_id": self.pool_id.lower(),
            "pool_token0_address": self.pool_token0_address.lower(),
            "pool_token0_symbol": self.pool_token0_symbol,
            "pool_token1_address": self.pool_token1_address.lower(),
            "pool_token1_symbol": self.pool_token1_symbol,
            "pool_fee_tier": self.pool_fee_tier,
            "token_address": self.token_address.lower(),
            "is_token0": self.is_token0,
            "timestamp": self.timestamp,
            "token_price_usd": self.token_price_usd,
            "token_volume_usd": self.token_volume_usd,
            "total_volume_usd": self.total_volume_usd,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }


@dataclass
class CandleDTO:
    """Data transfer object for durable candles."""

    token_address: str
    pool_id: str
    pool_token0_address: str
    pool_token0_symbol: str
    pool_token1_address: str
    pool_token1_symbol: str
    pool_fee_tier: int
    is_token0: bool
    timeframe: str
    timestamp: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: CandleModel) -> CandleDTO:
        return cls(
            token_address=model.token_address,
            pool_id=model.pool_id,
            pool_token0_address=model.pool_token0_address,
            pool_token0_symbol=model.pool_token0_symbol,
            pool_token1_address=model.pool_token1_address,
            pool_token1_symbol=model.pool_token1_symbol,
            pool_fee_tier=model.pool_fee_tier,
            is_token0=model.is_token0,
            timeframe=model.timeframe,
            timestamp=model.timestamp,
            open=model.open,
            high=model.high,
            low=model.low,
            close=model.close,
            volume=model.volume,
            created_at=model.created_at,
        )

    @classmethod
    def from_candle(cls, candle: Candle, selection: PoolSelection, *, timeframe: str = "5m") -> CandleDTO:
        pool = selection.pool
        return cls(
            token_address=selection.base_token.address,
            pool_id=pool.pool_id,
            pool_token0_address=pool.token0.address,
            pool_token0_symbol=pool.token0.symbol,
            pool_token1_address=pool.token1.address,
            pool_token1_symbol=pool.token1.symbol,
            pool_fee_tier=pool.fee_tier,
            is_token0=selection.is_token0,
            timeframe=timeframe,
            timestamp=candle.timestamp,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
        )

    def to_candle(self) -> Candle:
        return Candle(
            timestamp=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address.lower(),
            "pool_id": self.pool_id.lower(),
            "pool_token0_address": self.pool_token0_address.lower(),
            "pool_token0_symbol": self.pool_token0_symbol,
            "pool_token1_address": self.pool_token1_address.lower(),
            "pool_token1_symbol": self.pool_token1_symbol,
            "pool_fee_tier": self.pool_fee_tier,
            "is_token0": self.is_token0,
            "timeframe": self.timeframe,
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class _InsertIgnoreMixin:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING`` with a per-item fallback."""

    session: AsyncSession

    def _insert_ignore(self, model: type[Base], rows: list[dict[str, Any]], keys: list[str]) -> Any:
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            return pg_insert(model).values(rows).on_conflict_do_nothing(index_elements=keys)
        return sqlite_insert(model).values(rows).on_conflict_do_nothing(index_elements=keys)

    async def _bulk_insert_ignore(
        self,
        model: type[Base],
        rows: list[dict[str, Any]],
        keys: list[str],
    ) -> InsertStats:
        if not rows:
            return InsertStats()

        try:
            inserted = 0
            async with self.session.begin_nested():
                for i in range(0, len(rows), INSERT_CHUNK_SIZE):
                    chunk = rows[i : i + INSERT_CHUNK_SIZE]
                    result = await self.session.execute(self._insert_ignore(model, chunk, keys))
                    inserted += max(result.rowcount or 0, 0)
            return InsertStats(inserted=inserted, duplicates=len(rows) - inserted)
        except Exception as e:
            logger.warning(
                "Bulk insert into %s failed for %d rows, retrying per item: %s",
                model.__tablename__,
                len(rows),
                e,
            )

        return await self._insert_each(model, rows, keys)

    async def _insert_each(
        self,
        model: type[Base],
        rows: list[dict[str, Any]],
        keys: list[str],
    ) -> InsertStats:
        stats = InsertStats(used_fallback=True)
        last_error: Exception | None = None
        for row in rows:
            try:
                async with self.session.begin_nested():
                    result = await self.session.execute(self._insert_ignore(model, [row], keys))
                if (result.rowcount or 0) > 0:
                    stats.inserted += 1
                else:
                    stats.duplicates += 1
            except Exception as e:
                stats.errors += 1
                last_error = e
                logger.debug("Per-item insert into %s failed: %s", model.__tablename__, e)

        logger.info(
            "Per-item insert into %s: %d inserted, %d duplicates, %d errors",
            model.__tablename__,
            stats.inserted,
            stats.duplicates,
            stats.errors,
        )
        if stats.errors == len(rows):
            raise PersistenceFailureError(
                f"All {len(rows)} rows failed to insert into {model.__tablename__}: {last_error}"
            )
        return stats


class SwapRepository(_InsertIgnoreMixin):
    """Repository for durable swaps."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def bulk_insert_ignore(self, dtos: Sequence[SwapDTO]) -> InsertStats:
        """Insert swaps, skipping ids that already exist.

        Raises:
            PersistenceFailureError: If neither the bulk nor the per-item path stores anything.
        """
        return await self._bulk_insert_ignore(SwapModel, [d.to_row() for d in dtos], SWAP_CONFLICT_KEYS)

    async def list_since(self, token_address: str, start_ms: int, *, limit: int | None = None) -> list[SwapDTO]:
        """Swaps for a token with ``timestamp >= start_ms``, newest first."""
        stmt = (
            select(SwapModel)
            .where((SwapModel.token_address == token_address.lower()) & (SwapModel.timestamp >= start_ms))
            .order_by(SwapModel.timestamp.desc(), SwapModel.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [SwapDTO.from_model(m) for m in result.scalars().all()]

    async def get_latest(self, token_address: str) -> SwapDTO | None:
        result = await self.session.execute(
            select(SwapModel)
            .where(SwapModel.token_address == token_address.lower())
            .order_by(SwapModel.timestamp.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return SwapDTO.from_model(model) if model else None

    async def oldest_timestamp(self, token_address: str) -> int | None:
        result = await self.session.execute(
            select(func.min(SwapModel.timestamp)).where(SwapModel.token_address == token_address.lower())
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def count(self, token_address: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(SwapModel).where(SwapModel.token_address == token_address.lower())
        )
        return int(result.scalar_one())

    async def delete_for_token(self, token_address: str, *, batch_size: int = DEFAULT_DELETE_BATCH_SIZE) -> int:
        """Delete all swaps for a token in bounded batches."""
        token = token_address.lower()
        total = 0
        while True:
            ids = (
                await self.session.execute(
                    select(SwapModel.id).where(SwapModel.token_address == token).limit(batch_size)
                )
            ).scalars().all()
            if not ids:
                break
            await self.session.execute(delete(SwapModel).where(SwapModel.id.in_(ids)))
            total += len(ids)
            logger.debug("Deleted %d swaps for %s (total %d)", len(ids), token, total)
        await self.session.flush()
        return total


class CandleRepository(_InsertIgnoreMixin):
    """Repository for durable candles."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def bulk_insert_ignore(self, dtos: Sequence[CandleDTO]) -> InsertStats:
        """Insert candles, skipping (token, pool, timeframe, timestamp) keys that exist.

        Raises:
            PersistenceFailureError: If neither the bulk nor the per-item path stores anything.
        """
        return await self._bulk_insert_ignore(CandleModel, [d.to_row() for d in dtos], CANDLE_CONFLICT_KEYS)

    def _series_filter(self, token_address: str, pool_id: str | None, timeframe: str) -> Any:
        cond = (CandleModel.token_address == token_address.lower()) & (CandleModel.timeframe == timeframe)
        if pool_id is not None:
            cond = cond & (CandleModel.pool_id == pool_id.lower())
        return cond

    async def list_since(
        self,
        token_address: str,
        pool_id: str | None,
        start_ms: int,
        *,
        timeframe: str = "5m",
        limit: int | None = None,
    ) -> list[CandleDTO]:
        """Candles with ``timestamp >= start_ms``, newest first."""
        stmt = (
            select(CandleModel)
            .where(self._series_filter(token_address, pool_id, timeframe) & (CandleModel.timestamp >= start_ms))
            .order_by(CandleModel.timestamp.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [CandleDTO.from_model(m) for m in result.scalars().all()]

    async def list_timestamps(self, token_address: str, pool_id: str | None, *, timeframe: str = "5m") -> list[int]:
        """All candle timestamps for a series, oldest first."""
        result = await self.session.execute(
            select(CandleModel.timestamp)
            .where(self._series_filter(token_address, pool_id, timeframe))
            .order_by(CandleModel.timestamp.asc())
        )
        return [int(ts) for ts in result.scalars().all()]

    async def get_latest(self, token_address: str, *, timeframe: str = "5m") -> CandleDTO | None:
        """Most recent candle for a token, used to recover pool metadata."""
        result = await self.session.execute(
            select(CandleModel)
            .where(self._series_filter(token_address, None, timeframe))
            .order_by(CandleModel.timestamp.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return CandleDTO.from_model(model) if model else None

    async def delete_for_token(self, token_address: str, *, batch_size: int = DEFAULT_DELETE_BATCH_SIZE) -> int:
        """Delete all candles for a token in bounded batches."""
        token = token_address.lower()
        total = 0
        while True:
            ids = (
                await self.session.execute(
                    select(CandleModel.id).where(CandleModel.token_address == token).limit(batch_size)
                )
            ).scalars().all()
            if not ids:
                break
            await self.session.execute(delete(CandleModel).where(CandleModel.id.in_(ids)))
            total += len(ids)
        await self.session.flush()
        return total
