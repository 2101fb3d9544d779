"""Configuration management using pydantic-settings.

Provides environment-based configuration with type safety and validation.
"""

from .settings import (
    ChannelSettings,
    LoggingSettings,
    SchedulerSettings,
    TickerSettings,
    WeftSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "ChannelSettings",
    "LoggingSettings",
    "SchedulerSettings",
    "TickerSettings",
    "WeftSettings",
    "clear_settings_cache",
    "get_settings",
]
