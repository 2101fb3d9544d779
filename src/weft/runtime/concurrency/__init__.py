"""Structured concurrency runtime: tasks, scopes, dispatchers, channels.

Key Components:
    - Task/Handle/Deferred: lightweight cooperative tasks and their handles
    - Scope: structured ownership, fail-fast sibling cancellation
    - Dispatchers: Confined, WorkerPool, Dedicated thread affinity
    - Channel: rendezvous, bounded and unbounded FIFO queues with close
    - Ticker: periodic channel source with adaptive or fixed-delay pacing
    - Waits: with_timeout, with_timeout_or_none, join_all, await_all

Example:
    >>> from weft.runtime.concurrency import Channel, run_scope
    >>>
    >>> async def main(scope):
    ...     channel = Channel()
    ...     scope.launch(channel.send("ping"))
    ...     return await channel.receive()
    >>>
    >>> run_scope(main)
    'ping'
"""

from __future__ import annotations

# Tasks
from .task import (
    Deferred,
    Handle,
    Start,
    Task,
    TaskState,
    current_task,
    delay,
    ensure_active,
    non_cancellable,
    suspension,
    yield_now,
)

# Dispatchers
from .scheduler import (
    Affinity,
    Confined,
    Dedicated,
    Dispatcher,
    Dispatchers,
    WorkerPool,
    run_in_thread,
)

# Scopes
from .scope import (
    FailureReporter,
    Scope,
    ScopeState,
    async_,
    cancel_all,
    current_scope,
    detach,
    detached_tasks,
    launch,
    run_scope,
    set_failure_reporter,
)

# Channels
from .channel import (
    RENDEZVOUS,
    UNBOUNDED,
    Channel,
    ChannelMode,
    ChannelResult,
    ChannelStatus,
    ProducerChannel,
    ReceiveChannel,
    SendChannel,
    SendView,
    ReceiveView,
    produce,
)

# Ticker
from .ticker import TICK, Tick, Ticker, TickerMode, ticker

# Waits
from .wait import await_all, join_all, with_timeout, with_timeout_or_none

__all__ = [
    # Tasks
    "Task", "TaskState", "Start", "Handle", "Deferred",
    "current_task", "ensure_active", "non_cancellable", "suspension", "delay", "yield_now",
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
