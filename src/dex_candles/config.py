"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
candle pipeline, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dex_candles.chains import CHAINS, ChainConfig, get_chain_config

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SubgraphSettings(BaseSettings):
    """Indexing service (subgraph) access settings."""

    model_config = SettingsConfigDict(env_prefix="SUBGRAPH_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="SUBGRAPH_URL",
        description="Override for the chain's default subgraph endpoint",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="SUBGRAPH_API_KEY",
        description="Bearer token for the gateway (optional for studio endpoints)",
    )
    page_size: int = Field(
        default=1000,
        alias="SUBGRAPH_PAGE_SIZE",
        ge=1,
        le=1000,
        description="Records requested per page (GraphQL 'first')",
    )
    page_delay_seconds: float = Field(
        default=0.5,
        alias="SUBGRAPH_PAGE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between consecutive pages of one fetch",
    )
    max_concurrent: int = Field(
        default=2,
        alias="SUBGRAPH_MAX_CONCURRENT",
        ge=1,
        le=32,
        description="Maximum in-flight requests across all callers",
    )
    min_interval_seconds: float = Field(
        default=1.0,
        alias="SUBGRAPH_MIN_INTERVAL_SECONDS",
        ge=0.0,
        le=60.0,
        description="Minimum spacing between request starts",
    )
    reservoir: int = Field(
        default=60,
        alias="SUBGRAPH_RESERVOIR",
        ge=1,
        le=10_000,
        description="Requests allowed per reservoir window",
    )
    reservoir_refresh_seconds: float = Field(
        default=60.0,
        alias="SUBGRAPH_RESERVOIR_REFRESH_SECONDS",
        ge=1.0,
        le=3600.0,
        description="Reservoir window length",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="SUBGRAPH_TIMEOUT_SECONDS",
        ge=1.0,
        le=300.0,
        description="Total HTTP timeout per request",
    )
    max_retries: int = Field(
        default=3,
        alias="SUBGRAPH_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries for transient request failures",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate subgraph URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("SUBGRAPH_URL must be an HTTP(S) endpoint")
        return v


class PipelineSettings(BaseSettings):
    """Refresh policy, tier sizes and fetch limits."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", extra="ignore")

    chain: str = Field(
        default="katana",
        alias="PIPELINE_CHAIN",
        description="Built-in chain configuration to serve",
    )
    refresh_interval_seconds: int = Field(
        default=3600,
        alias="PIPELINE_REFRESH_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="Cached series younger than this are served without refresh",
    )
    lock_ttl_seconds: int = Field(
        default=3600,
        alias="PIPELINE_LOCK_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="Update lock expiry (bounds a crashed refresh)",
    )
    cache_ttl_seconds: int = Field(
        default=365 * 24 * 60 * 60,
        alias="PIPELINE_CACHE_TTL_SECONDS",
        ge=60,
        description="Hot-tier key TTL",
    )
    hot_swap_ceiling: int = Field(
        default=3000,
        alias="PIPELINE_HOT_SWAP_CEILING",
        ge=1,
        le=1_000_000,
        description="Maximum swaps kept in the hot tier per token",
    )
    hot_candle_ceiling: int = Field(
        default=8640,
        alias="PIPELINE_HOT_CANDLE_CEILING",
        ge=1,
        le=1_000_000,
        description="Maximum 5m candles kept in the hot tier per token",
    )
    full_data_days: int = Field(
        default=365,
        alias="PIPELINE_FULL_DATA_DAYS",
        ge=1,
        le=3650,
        description="Lookback for a first (full) fetch",
    )
    max_skip_full: int = Field(
        default=5000,
        alias="PIPELINE_MAX_SKIP_FULL",
        ge=0,
        description="Pagination skip ceiling for full fetches",
    )
    max_records_full: int = Field(
        default=6000,
        alias="PIPELINE_MAX_RECORDS_FULL",
        ge=1,
        description="Record ceiling for full fetches",
    )
    max_skip_incremental: int = Field(
        default=2000,
        alias="PIPELINE_MAX_SKIP_INCREMENTAL",
        ge=0,
        description="Pagination skip ceiling for incremental fetches",
    )
    max_records_incremental: int = Field(
        default=3000,
        alias="PIPELINE_MAX_RECORDS_INCREMENTAL",
        ge=1,
        description="Record ceiling for incremental fetches",
    )
    static_prices: dict[str, Decimal] = Field(
        default_factory=dict,
        alias="PIPELINE_STATIC_PRICES",
        description="Fallback USD prices keyed by token address (JSON object)",
    )

    @field_validator("chain")
    @classmethod
    def validate_chain(cls, v: str) -> str:
        v = v.lower()
        if v not in CHAINS:
            raise ValueError(f"PIPELINE_CHAIN must be one of: {', '.join(sorted(CHAINS))}")
        return v


class SchedulerSettings(BaseSettings):
    """Background maintenance loops."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="SCHEDULER_ENABLED",
        description="Run migration sweep and proactive refresh loops",
    )
    migration_interval_seconds: int = Field(
        default=300,
        alias="SCHEDULER_MIGRATION_INTERVAL_SECONDS",
        ge=10,
        le=86_400,
        description="Interval between hot-to-durable migration sweeps",
    )
    proactive_interval_seconds: int = Field(
        default=300,
        alias="SCHEDULER_PROACTIVE_INTERVAL_SECONDS",
        ge=10,
        le=86_400,
        description="Interval between proactive token refreshes",
    )
    proactive_tokens: str = Field(
        default="",
        alias="SCHEDULER_PROACTIVE_TOKENS",
        description="Comma-separated token addresses refreshed in the background",
    )

    @property
    def proactive_token_list(self) -> list[str]:
        return [t.strip().lower() for t in self.proactive_tokens.split(",") if t.strip()]


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from dex_candles.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.chain_config.subgraph_url)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    subgraph: SubgraphSettings = Field(
        default_factory=lambda: SubgraphSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pipeline: PipelineSettings = Field(
        default_factory=lambda: PipelineSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scheduler: SchedulerSettings = Field(
        default_factory=lambda: SchedulerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    @property
    def chain_config(self) -> ChainConfig:
        """Chain configuration with any subgraph URL override applied."""
        return get_chain_config(self.pipeline.chain).with_subgraph_url(self.subgraph.url)

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        chain = self.chain_config
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "subgraph": {
                "url": chain.subgraph_url,
                "dex_version": chain.dex_version,
                "api_key": "(set)" if self.subgraph.api_key else "(not set)",
                "max_concurrent": str(self.subgraph.max_concurrent),
                "reservoir": f"{self.subgraph.reservoir}/{self.subgraph.reservoir_refresh_seconds:g}s",
            },
            "pipeline": {
                "chain": chain.name,
                "refresh_interval_seconds": str(self.pipeline.refresh_interval_seconds),
                "hot_swap_ceiling": str(self.pipeline.hot_swap_ceiling),
                "hot_candle_ceiling": str(self.pipeline.hot_candle_ceiling),
            },
            "scheduler": {
                "enabled": str(self.scheduler.enabled),
                "proactive_tokens": str(len(self.scheduler.proactive_token_list)),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "refresh", "gaps", "append-history", "clear"]) -> None:
        """Validate command-specific requirements."""
        if command == "run" and self.scheduler.enabled:
            for token in self.scheduler.proactive_token_list:
                if not (token.startswith("0x") and len(token) == 42):
                    raise ValueError(f"SCHEDULER_PROACTIVE_TOKENS contains an invalid address: {token}")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
