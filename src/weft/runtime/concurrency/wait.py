"""Bounded and group waits.

Provides the waiting patterns tasks need around handles and deferreds:
    - with_timeout: bound a wait, raise WaitTimeout when it elapses
    - with_timeout_or_none: bound a wait, return None when it elapses
    - join_all: wait for every handle to finish
    - await_all: results of every deferred in order, failing fast

Example:
    >>> value = await with_timeout_or_none(1.5, channel.receive())
    >>> a, b = await await_all(scope.async_(one()), scope.async_(two()))
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from weft.foundation.errors import WaitTimeout

from .task import Deferred, Handle, _context_without_task, ensure_active, suspension

T = TypeVar("T")

__all__ = ["with_timeout", "with_timeout_or_none", "join_all", "await_all"]


async def with_timeout(seconds: float, awaitable: Awaitable[T]) -> T:
    """Await ``awaitable``, cancelling it after ``seconds``.

    A coroutine passed here is cancelled on timeout; a Deferred is only
    abandoned (its task keeps running).

    Raises:
        WaitTimeout: If ``seconds`` elapse first (a TimeoutError subclass)

    Example:
        >>> await with_timeout(1.3, slow_loop())
        Traceback (most recent call last):
        WaitTimeout: Timed out after 1.3s
    """
    ensure_active()
    timeout = asyncio.timeout(max(0.0, seconds))
    try:
        async with timeout:
            return await awaitable
    except TimeoutError as exc:
        if not timeout.expired():
            raise
        raise WaitTimeout(f"Timed out after {seconds}s") from exc


async def with_timeout_or_none(seconds: float, awaitable: Awaitable[T]) -> T | None:
    """Like ``with_timeout`` but return None when time runs out.

    Example:
        >>> await with_timeout_or_none(1.3, slow_loop())
        None
    """
    try:
        return await with_timeout(seconds, awaitable)
    except WaitTimeout:
        return None


async def join_all(*handles: Handle[Any]) -> None:
    """Wait until every handle's task is done, in order. Failures are not raised."""
    for handle in handles:
        await handle.join()


def _settle(waits: list[asyncio.Task[Any]]) -> BaseException | None:
    """First failure in argument order among finished waits; marks all retrieved."""
    failure: BaseException | None = None
    for w in waits:
        if w.done() and not w.cancelled():
            exc = w.exception()
            if exc is not None and failure is None:
                failure = exc
    return failure


async def await_all(*deferreds: Deferred[T]) -> list[T]:
    """Results of ``deferreds`` in argument order.

    Fails as soon as any of them fails, re-raising that failure; the
    remaining deferreds are not cancelled (their scope decides).

    Example:
        >>> one, two = await await_all(scope.async_(do_one()), scope.async_(do_two()))
    """
    ensure_active()
    if not deferreds:
        return []
    # No weft task bound in the helpers; only the caller marks itself SUSPENDED
    loop = asyncio.get_running_loop()
    waits = [loop.create_task(d.await_result(), context=_context_without_task()) for d in deferreds]
    try:
        with suspension():
            await asyncio.wait(waits, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for w in waits:
            if not w.done():
                w.cancel()
        failure = _settle(waits)
    if failure is not None:
        raise failure
    return [w.result() for w in waits]
