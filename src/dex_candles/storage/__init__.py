"""Storage layer - Redis hot tier, SQL durable tier and the store that joins them."""

from dex_candles.storage.database import DatabaseManager
from dex_candles.storage.hot_cache import (
    CachedSeries,
    DataRange,
    HotCache,
    SeriesMetadata,
)
from dex_candles.storage.models import (
    Base,
    CandleModel,
    SwapModel,
)
from dex_candles.storage.repos import (
    CandleDTO,
    CandleRepository,
    InsertStats,
    SwapDTO,
    SwapRepository,
)
from dex_candles.storage.tiered import (
    DeleteStats,
    MigrationStats,
    TieredStore,
    WriteResult,
)

__all__ = [
    "Base",
    "CachedSeries",
    "CandleDTO",
    "CandleModel",
    "CandleRepository",
    "DataRange",
    "DatabaseManager",
    "DeleteStats",
    "HotCache",
    "InsertStats",
    "MigrationStats",
    "SeriesMetadata",
    "SwapDTO",
    "SwapModel",
    "SwapRepository",
    "TieredStore",
    "WriteResult",
]
