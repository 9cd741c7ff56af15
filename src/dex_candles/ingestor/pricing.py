"""Swap normalization and USD price derivation.

Prices for pools quoted in a stable asset come straight from the pool's
instantaneous price. Other pools fall back to the subgraph's reported USD
price and finally to a pluggable ``PriceResolver``. A swap that cannot be
priced keeps ``token_price_usd=None`` instead of a zero placeholder.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping, Sequence
from decimal import Decimal, DivisionByZero, InvalidOperation, localcontext
from typing import Protocol

from dex_candles.chains import ChainConfig
from dex_candles.ingestor.models import NormalizedSwap, SwapRecord, TokenInfo
from dex_candles.ingestor.pools import PoolSelection

logger = logging.getLogger(__name__)

Q96 = Decimal(2) ** 96
_PRICE_PRECISION = 60


class PriceResolver(Protocol):
    """External USD price source used for pools without a stable side."""

    async def resolve_usd_price(self, token_address: str, symbol: str, chain_id: int) -> Decimal | None: ...


class NullPriceResolver:
    """Resolver that never has a price."""

    async def resolve_usd_price(self, token_address: str, symbol: str, chain_id: int) -> Decimal | None:
        return None


class StaticPriceResolver:
    """Resolver backed by a fixed address -> USD price mapping."""

    def __init__(self, prices: Mapping[str, Decimal]) -> None:
        self._prices = {k.lower(): Decimal(str(v)) for k, v in prices.items()}

    async def resolve_usd_price(self, token_address: str, symbol: str, chain_id: int) -> Decimal | None:
        return self._prices.get(token_address.lower())


def sqrt_price_to_token0_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> Decimal | None:
    """Convert a v3 ``sqrtPriceX96`` into the price of token0 in token1 units."""
    if sqrt_price_x96 <= 0:
        return None
    with localcontext() as ctx:
        ctx.prec = _PRICE_PRECISION
        try:
            ratio = (Decimal(sqrt_price_x96) / Q96) ** 2
            price = ratio * (Decimal(10) ** decimals0) / (Decimal(10) ** decimals1)
        except (InvalidOperation, DivisionByZero, OverflowError):
            return None
    return price if price > 0 else None


def pool_token0_price(record: SwapRecord) -> Decimal | None:
    """Price of token0 in token1 units at the time of the swap, if derivable."""
    if record.sqrt_price_x96 is not None:
        price = sqrt_price_to_token0_price(record.sqrt_price_x96, record.token0.decimals, record.token1.decimals)
        if price is not None:
            return price
    if record.amount0 == 0 or record.amount1 == 0:
        return None
    with localcontext() as ctx:
        ctx.prec = _PRICE_PRECISION
        return abs(record.amount1) / abs(record.amount0)


def _invert(price: Decimal | None) -> Decimal | None:
    if price is None or price == 0:
        return None
    with localcontext() as ctx:
        ctx.prec = _PRICE_PRECISION
        return Decimal(1) / price


def _positive(value: Decimal | None) -> Decimal | None:
    return value if value is not None and value > 0 else None


def normalize_swap(
    record: SwapRecord,
    is_token0: bool,
    *,
    stable_assets: Collection[str],
    fallback_price: Decimal | None = None,
) -> NormalizedSwap:
    """Derive the tracked token's USD price and volume from a raw swap.

    This is a pure function of its arguments; calling it twice with the same
    inputs yields equal results.
    """
    token0_stable = record.token0.address in stable_assets
    token1_stable = record.token1.address in stable_assets

    price: Decimal | None = None
    if token1_stable:
        price = pool_token0_price(record) if is_token0 else Decimal(1)
    elif token0_stable:
        price = Decimal(1) if is_token0 else _invert(pool_token0_price(record))

    if price is None:
        reported = record.token0_price_usd if is_token0 else record.token1_price_usd
        price = _positive(reported) or _positive(fallback_price)

    side_usd = record.amount0_usd if is_token0 else record.amount1_usd
    if side_usd is not None:
        volume: Decimal | None = abs(side_usd)
    elif price is not None:
        amount = record.amount0 if is_token0 else record.amount1
        volume = abs(amount) * price
    else:
        volume = None

    return NormalizedSwap(
        id=record.id,
        timestamp_ms=record.timestamp_sec * 1000,
        token_price_usd=price,
        token_volume_usd=volume,
        total_volume_usd=record.amount_usd,
    )


class SwapNormalizer:
    """Normalizes batches of raw swaps for one chain."""

    def __init__(self, chain: ChainConfig, resolver: PriceResolver | None = None) -> None:
        self._chain = chain
        self._resolver = resolver or NullPriceResolver()
        self._stables = frozenset(chain.stable_assets)

    def has_stable_side(self, selection: PoolSelection) -> bool:
        pool = selection.pool
        return pool.token0.address in self._stables or pool.token1.address in self._stables

    async def resolve_fallback_price(self, token: TokenInfo) -> Decimal | None:
        """Ask the resolver for a USD price; failures degrade to None."""
        try:
            price = await self._resolver.resolve_usd_price(token.address, token.symbol, self._chain.chain_id)
        except Exception as e:
            logger.warning("Price resolver failed for %s (%s): %s", token.address, token.symbol, e)
            return None
        if price is None or price <= 0:
            logger.debug("No fallback price available for %s (%s)", token.address, token.symbol)
            return None
        return price

    async def normalize_batch(
        self,
        records: Sequence[SwapRecord],
        selection: PoolSelection,
    ) -> list[NormalizedSwap]:
        """Normalize ``records`` for the token tracked by ``selection``."""
        if not records:
            return []

        fallback: Decimal | None = None
        if not self.has_stable_side(selection):
            fallback = await self.resolve_fallback_price(selection.base_token)

        swaps = [
            normalize_swap(
                r,
                selection.is_token0,
                stable_assets=self._stables,
                fallback_price=fallback,
            )
            for r in records
        ]
        unpriced = sum(1 for s in swaps if s.token_price_usd is None)
        if unpriced:
            logger.warning(
                "%d of %d swaps for %s could not be priced",
                unpriced,
                len(swaps),
                selection.base_token.address,
            )
        return swaps
