"""Weft - Structured concurrency for asyncio with thread dispatchers and channels.

Lightweight cooperative tasks owned by scopes, scheduled onto event loops
chosen by dispatchers, and talking through closable FIFO channels.

Quick Start:
    >>> from weft import Channel, Scope, run_scope
    >>>
    >>> async def main(scope: Scope) -> None:
    ...     channel: Channel[int] = Channel()
    ...
    ...     async def squares() -> None:
    ...         for x in range(1, 6):
    ...             await channel.send(x * x)
    ...         channel.close()
    ...
    ...     scope.launch(squares())
    ...     async for y in channel:
    ...         print(y)
    >>>
    >>> run_scope(main)

Structured Failure:
    >>> async with Scope() as scope:
    ...     slow = scope.async_(delay(3600))
    ...     scope.launch(explode())   # cancels `slow`, re-raised at scope exit

Pooled Work:
    >>> from weft import Dispatchers
    >>> counter = scope.async_(crunch(), dispatcher=Dispatchers.default())

Producers and Tickers:
    >>> numbers = produce(scope, integers, 1)
    >>> async with ticker(0.1) as t:
    ...     await t.receive()
"""

from __future__ import annotations

__version__ = "0.1.0"

# Errors
from .foundation.errors import (
    CancellationSignal,
    ChannelClosed,
    EndOfStream,
    ErrorCode,
    InvalidStateError,
    ScopeInactiveError,
    TaskFailure,
    WaitTimeout,
    WeftError,
    classify_exception,
)

# Config
from .foundation.config import WeftSettings, clear_settings_cache, get_settings

# Logging
from .runtime.observability import configure_logging, get_logger, log_context

# Concurrency
from .runtime.concurrency import (
    RENDEZVOUS,
    UNBOUNDED,
    Affinity,
    Channel,
    ChannelMode,
    ChannelResult,
    ChannelStatus,
    Confined,
    Dedicated,
    Deferred,
    Dispatcher,
    Dispatchers,
    FailureReporter,
    Handle,
    ProducerChannel,
    ReceiveChannel,
    Scope,
    ScopeState,
    SendChannel,
    SendView,
    ReceiveView,
    Start,
    Task,
    TaskState,
    TICK,
    Tick,
    Ticker,
    TickerMode,
    WorkerPool,
    async_,
    await_all,
    cancel_all,
    current_scope,
    current_task,
    delay,
    detach,
    detached_tasks,
    ensure_active,
    join_all,
    launch,
    non_cancellable,
    produce,
    run_in_thread,
    run_scope,
    set_failure_reporter,
    ticker,
    with_timeout,
    with_timeout_or_none,
    yield_now,
)

__all__ = [
    "__version__",
    # Errors
    "ErrorCode", "WeftError", "CancellationSignal", "ChannelClosed", "EndOfStream",
    "ScopeInactiveError", "InvalidStateError", "WaitTimeout", "TaskFailure", "classify_exception",
    # Config
    "WeftSettings", "get_settings", "clear_settings_cache",
    # Logging
    "configure_logging", "get_logger", "log_context",
    # Tasks
    "Task", "TaskState", "Start", "Handle", "Deferred",
    "current_task", "ensure_active", "non_cancellable", "delay", "yield_now",
    # Dispatchers
    "Affinity", "Dispatcher", "Confined", "WorkerPool", "Dedicated", "Dispatchers", "run_in_thread",
    # Scopes
    "Scope", "ScopeState", "current_scope", "launch", "async_", "cancel_all", "run_scope",
    "detach", "detached_tasks", "FailureReporter", "set_failure_reporter",
    # Channels
    "Channel", "ChannelMode", "ChannelStatus", "ChannelResult", "SendChannel", "ReceiveChannel",
    "SendView", "ReceiveView", "ProducerChannel", "produce", "RENDEZVOUS", "UNBOUNDED",
    # Ticker
    "Tick", "TICK", "Ticker", "TickerMode", "ticker",
    # Waits
    "with_timeout", "with_timeout_or_none", "join_all", "await_all",
]
