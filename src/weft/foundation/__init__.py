"""Foundation - Core building blocks for weft.

Contains: error taxonomy, configuration.
"""

from __future__ import annotations

__all__ = [
    # Errors
    "ErrorCode", "WeftError", "classify_exception",
    "ChannelClosed", "EndOfStream", "ScopeInactiveError", "InvalidStateError", "WaitTimeout",
    "CancellationSignal", "TaskFailure",
    # Config
    "WeftSettings", "get_settings", "clear_settings_cache",
    "SchedulerSettings", "ChannelSettings", "TickerSettings", "LoggingSettings",
]


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    if name in ("ErrorCode", "WeftError", "classify_exception",
                "ChannelClosed", "EndOfStream", "ScopeInactiveError", "InvalidStateError",
                "WaitTimeout", "CancellationSignal", "TaskFailure"):
        from . import errors
        return getattr(errors, name)

    if name in ("WeftSettings", "get_settings", "clear_settings_cache",
                "SchedulerSettings", "ChannelSettings", "TickerSettings", "LoggingSettings"):
        from . import config
        return getattr(config, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
