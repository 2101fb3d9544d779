"""Thread-safe wake-ups for parked tasks.

A Waiter is a one-shot slot a task parks on. The owner of the wait queue
(channel, task completion record) settles the waiter while holding its own
lock; the wake-up is delivered on the waiter's event loop, which may belong
to another thread.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

__all__ = ["Waiter", "call_in_loop", "running_loop"]


def running_loop() -> asyncio.AbstractEventLoop | None:
    """Running loop of the current thread, or None outside async code."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def call_in_loop(loop: asyncio.AbstractEventLoop, func: Callable[..., object], *args: object) -> None:
    """Run ``func`` on ``loop``: inline when already on it, else thread-safely."""
    if running_loop() is loop:
        func(*args)
        return
    try:
        loop.call_soon_threadsafe(func, *args)
    except RuntimeError:
        # Loop already closed; every task it hosted is gone.
        if not loop.is_closed():
            raise


def _release(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class Waiter(Generic[T]):
    """One-shot parking slot settled by the owner of a wait queue.

    ``settled`` and ``value``/``error`` are guarded by the owner's lock.
    The future only signals the wake-up; the outcome is read from the
    waiter after resuming.

    Attributes:
        value: Value handed over (receivers) or offered (senders)
        error: Exception to raise in the parked task, if any
        settled: Whether the owner already decided this waiter's outcome
    """

    __slots__ = ("loop", "future", "value", "error", "settled", "thread")

    def __init__(self, value: T | None = None) -> None:
        self.loop = asyncio.get_running_loop()
        self.future: asyncio.Future[None] = self.loop.create_future()
        self.value = value
        self.error: BaseException | None = None
        self.settled = False
        self.thread = threading.get_ident()

    def resolve(self, value: T | None = None) -> None:
        """Settle with a value and wake the parked task. Caller holds the owner lock."""
        self.settled = True
        self.value = value
        self._wake()

    def fail(self, error: BaseException) -> None:
        """Settle with an error and wake the parked task. Caller holds the owner lock."""
        self.settled = True
        self.error = error
        self._wake()

    def _wake(self) -> None:
        if self.thread == threading.get_ident():
            # Same thread implies same loop: set_result only schedules callbacks.
            _release(self.future)
        else:
            call_in_loop(self.loop, _release, self.future)

    async def wait(self) -> None:
        """Park until settled. Cancellation propagates; the owner handles cleanup."""
        await self.future
