"""Per-chain configuration for the generic pipeline.

A ``ChainConfig`` captures everything that differs between deployments
(subgraph endpoint, schema version, stable assets, Redis key namespace) so a
single pipeline implementation can serve any chain.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

DexVersion = Literal["v2", "v3"]

KATANA_USDC = "0x203a662b0bd271a6ed5a60edfbd04bfce608fd36"
KATANA_AUSD = "0x00000000efe302beaa2b3e6e1b18d08d69a9012a"

ETHEREUM_USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
ETHEREUM_DAI = "0x6b175474e89094c44da98b954eedeac495271d0f"
ETHEREUM_USDT = "0xdac17f958d2ee523a2206206994597c13d831ec7"


@dataclass(frozen=True)
class ChainConfig:
    """Chain and DEX specific settings injected into the pipeline."""

    name: str
    chain_id: int
    dex_id: str
    subgraph_url: str
    dex_version: DexVersion
    # Ordered by quote priority, highest first.
    stable_assets: tuple[str, ...]

    def swaps_key(self, token_address: str) -> str:
        return f"full_swaps_{self.name}_{token_address.lower()}"

    def candles_key(self, token_address: str, timeframe: str = "5m") -> str:
        return f"candles_{self.name}_{token_address.lower()}_{timeframe}"

    def update_lock_key(self, token_address: str) -> str:
        return f"update_lock_{self.name}_{token_address.lower()}"

    def gap_fix_lock_key(self, token_address: str) -> str:
        return f"candle_gap_fix_lock_{self.name}_{token_address.lower()}"

    @property
    def swaps_key_pattern(self) -> str:
        return f"full_swaps_{self.name}_*"

    @property
    def candles_key_pattern(self) -> str:
        return f"candles_{self.name}_*_5m"

    def with_subgraph_url(self, url: str | None) -> ChainConfig:
        """Return a copy pointing at a different subgraph endpoint."""
        if not url:
            return self
        return replace(self, subgraph_url=url)


KATANA = ChainConfig(
    name="katana",
    chain_id=747474,
    dex_id="katana-sushiswap",
    subgraph_url="https://api.studio.thegraph.com/query/106601/sushi-v-3-katana/version/latest",
    dex_version="v3",
    stable_assets=(KATANA_USDC, KATANA_AUSD),
)

ETHEREUM = ChainConfig(
    name="ethereum",
    chain_id=1,
    dex_id="ethereum-sushiswap",
    subgraph_url="https://api.studio.thegraph.com/query/119169/sushi-v-2-eth/version/latest",
    dex_version="v2",
    stable_assets=(ETHEREUM_USDC, ETHEREUM_DAI, ETHEREUM_USDT),
)

CHAINS: dict[str, ChainConfig] = {c.name: c for c in (KATANA, ETHEREUM)}


def get_chain_config(name: str) -> ChainConfig:
    """Look up a built-in chain configuration by name."""
    try:
        return CHAINS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown chain '{name}'. Known chains: {', '.join(sorted(CHAINS))}") from None
