"""Trading pool selection for a target token."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from dex_candles.errors import NoPoolFoundError
from dex_candles.ingestor.models import PoolInfo, TokenInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolSelection:
    """The pool tracked for a token plus the orientation of the token within it."""

    pool: PoolInfo
    is_token0: bool

    @property
    def base_token(self) -> TokenInfo:
        return self.pool.token0 if self.is_token0 else self.pool.token1

    @property
    def quote_token(self) -> TokenInfo:
        return self.pool.token1 if self.is_token0 else self.pool.token0

    def to_dict(self) -> dict[str, Any]:
        return {"pool": self.pool.to_dict(), "is_token0": self.is_token0}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PoolSelection:
        return cls(pool=PoolInfo.from_dict(data["pool"]), is_token0=bool(data["is_token0"]))


def _by_tvl(pools: Iterable[PoolInfo]) -> list[PoolInfo]:
    # Pool id breaks ties so selection is deterministic.
    return sorted(pools, key=lambda p: (-p.tvl_usd, p.pool_id))


def select_pool(
    token_address: str,
    pools: Sequence[PoolInfo],
    stable_assets: Sequence[str],
) -> PoolSelection:
    """Pick the pool to track for ``token_address``.

    Pools quoted in a stable asset win, in the priority order of
    ``stable_assets``; within one stable asset the highest TVL wins. Without
    any stable-quoted pool the highest-TVL pool overall is used.

    Raises:
        NoPoolFoundError: If no candidate pool trades the token.
    """
    target = token_address.lower()
    stables = [s.lower() for s in stable_assets]

    candidates = [p for p in pools if p.has_token(target) and p.token0.address != p.token1.address]

    if not candidates:
        raise NoPoolFoundError(f"No pool found for token {target}")

    def other_side(pool: PoolInfo) -> str:
        return pool.token1.address if pool.token0.address == target else pool.token0.address

    for stable in stables:
        partition = [p for p in candidates if other_side(p) == stable]
        if partition:
            chosen = _by_tvl(partition)[0]
            logger.info(
                "Selected stable-quoted pool %s (%s/%s, tvl=%s) for %s",
                chosen.pool_id,
                chosen.token0.symbol,
                chosen.token1.symbol,
                chosen.tvl_usd,
                target,
            )
            return PoolSelection(pool=chosen, is_token0=chosen.token0.address == target)

    chosen = _by_tvl(candidates)[0]
    logger.info(
        "No stable-quoted pool for %s; using highest TVL pool %s (%s/%s)",
        target,
        chosen.pool_id,
        chosen.token0.symbol,
        chosen.token1.symbol,
    )
    return PoolSelection(pool=chosen, is_token0=chosen.token0.address == target)
