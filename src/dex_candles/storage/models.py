"""SQLAlchemy models for persistent storage.

This module defines the durable tier: one row per swap and one row per
candle bucket, each carrying denormalized pool metadata so historical
reads never depend on the indexing service.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SwapModel(Base):
    """Normalized swaps that aged out of the hot tier or were backfilled."""

    __tablename__ = "swaps"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)

    pool_id: Mapped[str] = mapped_column(String(66), nullable=False)
    pool_token0_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_token0_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    pool_token1_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_token1_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    pool_fee_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    is_token0: Mapped[bool] = mapped_column(Boolean, nullable=False)

    # Epoch milliseconds.
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    token_price_usd: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    token_volume_usd: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    total_volume_usd: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_swaps_token_timestamp", "token_address", "timestamp"),
        Index("idx_swaps_pool_timestamp", "pool_id", "timestamp"),
    )


class CandleModel(Base):
    """OHLCV buckets per token, pool and timeframe."""

    __tablename__ = "candles"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_id: Mapped[str] = mapped_column(String(66), nullable=False)
    pool_token0_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_token0_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    pool_token1_address: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_token1_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    pool_fee_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_token0: Mapped[bool] = mapped_column(Boolean, nullable=False)

    timeframe: Mapped[str] = mapped_column(String(8), nullable=False)
    # Bucket start, epoch milliseconds.
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    open: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    high: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    low: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    close: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    volume: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "token_address",
            "pool_id",
            "timeframe",
            "timestamp",
            name="uq_candles_token_pool_timeframe_timestamp",
        ),
        Index("idx_candles_token_timeframe_timestamp", "token_address", "timeframe", "timestamp"),
    )
