"""Runtime - Task execution, scheduling, communication, and monitoring.

Contains: concurrency (tasks, scopes, dispatchers, channels, ticker), observability.
"""

from __future__ import annotations

__all__ = [
    # Concurrency
    "Task", "TaskState", "Start", "Handle", "Deferred",
    "current_task", "ensure_active", "non_cancellable", "delay", "yield_now",
    "Affinity", "Dispatcher", "Confined", "WorkerPool", "Dedicated", "Dispatchers", "run_in_thread",
    "Scope", "ScopeState", "current_scope", "launch", "async_", "cancel_all", "run_scope",
    "detach", "detached_tasks", "set_failure_reporter",
    "Channel", "ChannelResult", "SendView", "ReceiveView", "ProducerChannel", "produce", "RENDEZVOUS", "UNBOUNDED",
    "Tick", "TICK", "Ticker", "TickerMode", "ticker",
    "with_timeout", "with_timeout_or_none", "join_all", "await_all",
    # Observability
    "configure_logging", "get_logger", "log_context",
]

_OBSERVABILITY = frozenset({"configure_logging", "get_logger", "log_context"})


def __getattr__(name: str):
    """Lazy imports so observability can load without the concurrency runtime."""
    if name in _OBSERVABILITY:
        from . import observability
        return getattr(observability, name)

    if name in __all__:
        from . import concurrency
        return getattr(concurrency, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
