"""Initial schema for durable swaps and candles.

Revision ID: 001_swaps_candles
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_swaps_candles"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _pool_columns() -> list[sa.Column]:
    return [
        sa.Column("pool_id", sa.String(66), nullable=False),
        sa.Column("pool_token0_address", sa.String(42), nullable=False),
        sa.Column("pool_token0_symbol", sa.String(64), nullable=False),
        sa.Column("pool_token1_address", sa.String(42), nullable=False),
        sa.Column("pool_token1_symbol", sa.String(64), nullable=False),
        sa.Column("pool_fee_tier", sa.Integer(), nullable=False),
    ]


def upgrade() -> None:
    # Swaps migrated out of the hot tier or backfilled
    op.create_table(
        "swaps",
        sa.Column("id", sa.String(160), nullable=False),
        *_pool_columns(),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("is_token0", sa.Boolean(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("token_price_usd", sa.Numeric(38, 18), nullable=True),
        sa.Column("token_volume_usd", sa.Numeric(38, 18), nullable=True),
        sa.Column("total_volume_usd", sa.Numeric(38, 18), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_swaps_token_timestamp", "swaps", ["token_address", "timestamp"])
    op.create_index("idx_swaps_pool_timestamp", "swaps", ["pool_id", "timestamp"])

    # OHLCV buckets
    op.create_table(
        "candles",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        *_pool_columns(),
        sa.Column("is_token0", sa.Boolean(), nullable=False),
        sa.Column("timeframe", sa.String(8), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("open", sa.Numeric(38, 18), nullable=False),
        sa.Column("high", sa.Numeric(38, 18), nullable=False),
        sa.Column("low", sa.Numeric(38, 18), nullable=False),
        sa.Column("close", sa.Numeric(38, 18), nullable=False),
        sa.Column("volume", sa.Numeric(38, 18), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "token_address",
            "pool_id",
            "timeframe",
            "timestamp",
            name="uq_candles_token_pool_timeframe_timestamp",
        ),
    )
    op.create_index(
        "idx_candles_token_timeframe_timestamp",
        "candles",
        ["token_address", "timeframe", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("idx_candles_token_timeframe_timestamp", table_name="candles")
    op.drop_table("candles")
    op.drop_index("idx_swaps_pool_timestamp", table_name="swaps")
    op.drop_index("idx_swaps_token_timestamp", table_name="swaps")
    op.drop_table("swaps")
