"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with sensible defaults. Supports .env files and nested configuration.

Example:
    >>> from weft.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.channel.default_capacity
    0
    >>> settings.logging.level
    'INFO'

    # Or with environment variables:
    # WEFT_SCHEDULER_WORKERS=8
    # WEFT_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import (
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    computed_field,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

_CPU_COUNT = os.cpu_count() or 1


class SchedulerSettings(BaseSettings):
    """Worker pool configuration for pooled dispatchers."""

    model_config = SettingsConfigDict(
        env_prefix="WEFT_SCHEDULER_",
        extra="ignore",
    )

    workers: PositiveInt = Field(
        default=min(32, _CPU_COUNT + 4),
        description="Worker threads (one event loop each) in the default pool",
    )
    thread_name_prefix: str = Field(default="weft-worker-", min_length=1)
    shutdown_timeout: PositiveFloat = Field(
        default=5.0,
        description="Seconds to wait for a worker thread to stop",
    )


class ChannelSettings(BaseSettings):
    """Channel defaults."""

    model_config = SettingsConfigDict(
        env_prefix="WEFT_CHANNEL_",
        extra="ignore",
    )

    default_capacity: NonNegativeInt = Field(
        default=0,
        description="Capacity used by produce() when none is given (0 = rendezvous)",
    )


class TickerSettings(BaseSettings):
    """Ticker defaults."""

    model_config = SettingsConfigDict(
        env_prefix="WEFT_TICKER_",
        extra="ignore",
    )

    mode: Literal["fixed_period", "fixed_delay"] = "fixed_period"


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WEFT_LOG_",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class WeftSettings(BaseSettings):
    """Root settings for the weft runtime.

    Loads configuration from environment variables with WEFT_ prefix.
    Supports nested configuration and .env files.

    Example environment variables:
        WEFT_DEBUG=true
        WEFT_SCHEDULER_WORKERS=8
        WEFT_CHANNEL_DEFAULT_CAPACITY=16
        WEFT_TICKER_MODE=fixed_delay
        WEFT_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="WEFT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Enable debug mode")

    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    channel: ChannelSettings = Field(default_factory=ChannelSettings)
    ticker: TickerSettings = Field(default_factory=TickerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @computed_field
    @property
    def effective_log_level(self) -> str:
        """Debug mode forces DEBUG logging."""
        return "DEBUG" if self.debug else self.logging.level


@lru_cache(maxsize=1)
def get_settings() -> WeftSettings:
    """Get the global settings instance (cached)."""
    return WeftSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
