"""Data ingestion layer - subgraph swaps, pool selection and USD pricing."""

from dex_candles.ingestor.models import (
    NormalizedSwap,
    PoolInfo,
    SwapRecord,
    TokenInfo,
)
from dex_candles.ingestor.pools import PoolSelection, select_pool
from dex_candles.ingestor.pricing import (
    NullPriceResolver,
    PriceResolver,
    StaticPriceResolver,
    SwapNormalizer,
    normalize_swap,
)
from dex_candles.ingestor.subgraph_client import (
    FetchResult,
    RateLimiter,
    RetryError,
    SubgraphClient,
    SubgraphClientError,
)

__all__ = [
    "FetchResult",
    "NormalizedSwap",
    "NullPriceResolver",
    "PoolInfo",
    "PoolSelection",
    "PriceResolver",
    "RateLimiter",
    "RetryError",
    "StaticPriceResolver",
    "SubgraphClient",
    "SubgraphClientError",
    "SwapNormalizer",
    "SwapRecord",
    "TokenInfo",
    "normalize_swap",
    "select_pool",
]
