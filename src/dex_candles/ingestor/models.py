"""Data models for the ingestor module."""

import contextlib
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

# Uniswap v2 style pairs have a fixed 0.3% fee and no feeTier field.
V2_FEE_TIER = 3000


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    with contextlib.suppress(InvalidOperation, ValueError, TypeError):
        return Decimal(str(value))
    return None


def _decimal_or_zero(value: Any) -> Decimal:
    parsed = _to_decimal(value)
    return parsed if parsed is not None else Decimal(0)


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    with contextlib.suppress(ValueError, TypeError):
        return int(value)
    return None


def _dec_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class TokenInfo:
    """An ERC20 token as described by the subgraph."""

    address: str
    symbol: str = ""
    name: str = ""
    decimals: int = 18

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenInfo":
        """Create a TokenInfo from a subgraph token entity."""
        return cls(
            address=str(data.get("id") or data.get("address") or "").lower(),
            symbol=str(data.get("symbol") or ""),
            name=str(data.get("name") or ""),
            decimals=_to_int(data.get("decimals")) or 18,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
        }


@dataclass(frozen=True)
class PoolInfo:
    """A trading pool (v3) or pair (v2) between two tokens."""

    pool_id: str
    token0: TokenInfo
    token1: TokenInfo
    fee_tier: int
    tvl_usd: Decimal
    volume_usd: Decimal = Decimal(0)

    @classmethod
    def from_v3_dict(cls, data: dict[str, Any]) -> "PoolInfo":
        """Create a PoolInfo from a v3 subgraph pool entity."""
        return cls(
            pool_id=str(data["id"]).lower(),
            token0=TokenInfo.from_dict(data["token0"]),
            token1=TokenInfo.from_dict(data["token1"]),
            fee_tier=_to_int(data.get("feeTier")) or 0,
            tvl_usd=_decimal_or_zero(data.get("totalValueLockedUSD")),
            volume_usd=_decimal_or_zero(data.get("volumeUSD")),
        )

    @classmethod
    def from_v2_dict(cls, data: dict[str, Any]) -> "PoolInfo":
        """Create a PoolInfo from a v2 subgraph pair entity."""
        return cls(
            pool_id=str(data["id"]).lower(),
            token0=TokenInfo.from_dict(data["token0"]),
            token1=TokenInfo.from_dict(data["token1"]),
            fee_tier=V2_FEE_TIER,
            tvl_usd=_decimal_or_zero(data.get("reserveUSD")),
            volume_usd=_decimal_or_zero(data.get("volumeUSD")),
        )

    def has_token(self, address: str) -> bool:
        address = address.lower()
        return address in (self.token0.address, self.token1.address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "token0": self.token0.to_dict(),
            "token1": self.token1.to_dict(),
            "fee_tier": self.fee_tier,
            "tvl_usd": str(self.tvl_usd),
            "volume_usd": str(self.volume_usd),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PoolInfo":
        """Restore a PoolInfo serialized with ``to_dict``."""
        return cls(
            pool_id=str(data["pool_id"]),
            token0=TokenInfo.from_dict(data["token0"]),
            token1=TokenInfo.from_dict(data["token1"]),
            fee_tier=int(data.get("fee_tier", 0)),
            tvl_usd=_decimal_or_zero(data.get("tvl_usd")),
            volume_usd=_decimal_or_zero(data.get("volume_usd")),
        )


@dataclass(frozen=True)
class SwapRecord:
    """A raw swap event as returned by the indexing service.

    Amounts are signed from the pool's perspective and already scaled by
    token decimals. Fields the source schema does not provide are None.
    """

    id: str
    pool_id: str
    timestamp_sec: int
    token0: TokenInfo
    token1: TokenInfo
    amount0: Decimal
    amount1: Decimal
    amount_usd: Decimal
    amount0_usd: Decimal | None = None
    amount1_usd: Decimal | None = None
    sqrt_price_x96: int | None = None
    token0_price_usd: Decimal | None = None
    token1_price_usd: Decimal | None = None
    tx_hash: str | None = None
    block_number: int | None = None

    @classmethod
    def from_v3_dict(cls, data: dict[str, Any]) -> "SwapRecord":
        """Create a SwapRecord from a v3 subgraph swap entity."""
        tx = data.get("transaction") or {}
        swap_id = str(data["id"])
        return cls(
            id=swap_id,
            pool_id=str((data.get("pool") or {}).get("id", "")).lower(),
            timestamp_sec=int(data["timestamp"]),
            token0=TokenInfo.from_dict(data["token0"]),
            token1=TokenInfo.from_dict(data["token1"]),
            amount0=_decimal_or_zero(data.get("amount0")),
            amount1=_decimal_or_zero(data.get("amount1")),
            amount_usd=_decimal_or_zero(data.get("amountUSD")),
            amount0_usd=_to_decimal(data.get("amount0USD")),
            amount1_usd=_to_decimal(data.get("amount1USD")),
            sqrt_price_x96=_to_int(data.get("sqrtPriceX96")),
            token0_price_usd=_to_decimal(data.get("token0PriceUSD")),
            token1_price_usd=_to_decimal(data.get("token1PriceUSD")),
            tx_hash=str(tx.get("id") or swap_id.split("#")[0]).lower(),
            block_number=_to_int(tx.get("blockNumber")),
        )

    @classmethod
    def from_v2_dict(cls, data: dict[str, Any]) -> "SwapRecord":
        """Create a SwapRecord from a v2 subgraph swap entity."""
        pair = data.get("pair") or {}
        tx = data.get("transaction") or {}
        swap_id = str(data["id"])
        amount0 = _decimal_or_zero(data.get("amount0In")) - _decimal_or_zero(data.get("amount0Out"))
        amount1 = _decimal_or_zero(data.get("amount1In")) - _decimal_or_zero(data.get("amount1Out"))
        return cls(
            id=swap_id,
            pool_id=str(pair.get("id", "")).lower(),
            timestamp_sec=int(data["timestamp"]),
            token0=TokenInfo.from_dict(pair.get("token0") or data.get("token0") or {}),
            token1=TokenInfo.from_dict(pair.get("token1") or data.get("token1") or {}),
            amount0=amount0,
            amount1=amount1,
            amount_usd=_decimal_or_zero(data.get("amountUSD")),
            token0_price_usd=_to_decimal(data.get("token0PriceUSD")),
            token1_price_usd=_to_decimal(data.get("token1PriceUSD")),
            tx_hash=str(tx.get("id") or swap_id.split("-")[0]).lower(),
            block_number=_to_int(tx.get("blockNumber")),
        )


@dataclass(frozen=True)
class NormalizedSwap:
    """Canonical per-swap price and volume record for one tracked token.

    ``token_price_usd`` is None when no USD price could be derived, which is
    distinct from a price of zero.
    """

    id: str
    timestamp_ms: int
    token_price_usd: Decimal | None
    token_volume_usd: Decimal | None
    total_volume_usd: Decimal

    @property
    def is_priced(self) -> bool:
        return self.token_price_usd is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp_ms,
            "tokenPriceUSD": _dec_str(self.token_price_usd),
            "tokenVolumeUSD": _dec_str(self.token_volume_usd),
            "totalVolumeUSD": str(self.total_volume_usd),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedSwap":
        return cls(
            id=str(data["id"]),
            timestamp_ms=int(data["timestamp"]),
            token_price_usd=_to_decimal(data.get("tokenPriceUSD")),
            token_volume_usd=_to_decimal(data.get("tokenVolumeUSD")),
            total_volume_usd=_decimal_or_zero(data.get("totalVolumeUSD")),
        )
