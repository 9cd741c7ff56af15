"""DEX swap ingestion and OHLC candle pipeline."""

__version__ = "0.1.0"
