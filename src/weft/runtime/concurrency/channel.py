"""Channels: closable FIFO queues between tasks.

One parameterised type covers every mode:

    - Channel.rendezvous(): capacity 0, send and receive meet
    - Channel.bounded(n):   up to n buffered values, then senders park
    - Channel.unbounded():  senders never park

Parked senders and receivers are served strictly first-in first-out, so
hand-off patterns (two tasks relaying one token) are deterministic. No
value is ever delivered to two receivers.

Closing is like sending a final token: values sent before ``close()`` are
still received, then receivers see ``EndOfStream``. Senders fail with
``ChannelClosed``.

Example:
    >>> async def main(scope: Scope) -> None:
    ...     channel: Channel[int] = Channel()
    ...
    ...     async def numbers() -> None:
    ...         for x in range(1, 6):
    ...             await channel.send(x)
    ...         channel.close()
    ...
    ...     scope.launch(numbers())
    ...     async for y in channel:
    ...         print(y)

Waiters may live on different event loops; all buffer and wait-queue
mutation happens under one lock per channel.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Concatenate, Final, Generic, ParamSpec, Protocol, TypeVar

from weft.foundation.config import get_settings
from weft.foundation.errors import ChannelClosed, EndOfStream
from weft.runtime.observability import get_logger

from .task import ensure_active, suspension
from .waiter import Waiter

if TYPE_CHECKING:
    from .scheduler import Dispatcher
    from .scope import Scope
    from .task import Handle

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)
T_contra = TypeVar("T_contra", contravariant=True)
P = ParamSpec("P")

__all__ = [
    "RENDEZVOUS",
    "UNBOUNDED",
    "ChannelMode",
    "ChannelStatus",
    "ChannelResult",
    "SendChannel",
    "ReceiveChannel",
    "Channel",
    "SendView",
    "ReceiveView",
    "ProducerChannel",
    "produce",
]

log = get_logger("weft.channel")

RENDEZVOUS: Final = 0
UNBOUNDED: Final = sys.maxsize


class ChannelMode(StrEnum):
    """Buffering mode derived from capacity."""
    RENDEZVOUS = "rendezvous"
    BOUNDED = "bounded"
    UNBOUNDED = "unbounded"


class ChannelStatus(StrEnum):
    """Outcome of a non-suspending receive."""
    VALUE = "value"
    EMPTY = "empty"
    CLOSED = "closed"


@dataclass(slots=True, frozen=True)
class ChannelResult(Generic[T]):
    """Result of ``try_receive()``: a value, empty, or closed.

    Attributes:
        status: What happened
        value: Received value when status is VALUE
        cause: Close cause when status is CLOSED and one was given
    """

    status: ChannelStatus
    value: T | None = None
    cause: BaseException | None = None

    @property
    def is_value(self) -> bool:
        return self.status is ChannelStatus.VALUE

    @property
    def is_closed(self) -> bool:
        return self.status is ChannelStatus.CLOSED

    def get(self) -> T:
        """Value, or raise EndOfStream/the close cause/LookupError."""
        if self.status is ChannelStatus.VALUE:
            return self.value  # type: ignore[return-value]
        if self.status is ChannelStatus.CLOSED:
            raise self.cause or EndOfStream("Channel is closed")
        raise LookupError("Channel is empty")

    def get_or(self, default: T) -> T:
        return self.value if self.status is ChannelStatus.VALUE else default  # type: ignore[return-value]


_EMPTY: ChannelResult[Any] = ChannelResult(ChannelStatus.EMPTY)


class SendChannel(Protocol[T_contra]):
    """Send side of a channel."""

    async def send(self, value: T_contra) -> None: ...
    def try_send(self, value: T_contra) -> bool: ...
    def close(self, cause: BaseException | None = None) -> bool: ...
    @property
    def is_closed(self) -> bool: ...


class ReceiveChannel(Protocol[T_co]):
    """Receive side of a channel."""

    async def receive(self) -> T_co: ...
    def try_receive(self) -> ChannelResult[T_co]: ...
    def __aiter__(self) -> AsyncIterator[T_co]: ...


class Channel(Generic[T]):
    """Closable FIFO queue with suspending send and receive.

    Invariants (under ``_lock``):
        - receivers are parked only while the buffer is empty and no sender is parked
        - senders are parked only while the buffer is at capacity
        - every parked waiter is unsettled; settling removes it from its queue

    Args:
        capacity: RENDEZVOUS (0), a positive bound, or UNBOUNDED
        name: Name for logs
    """

    __slots__ = (
        "name", "_capacity", "_lock", "_buffer", "_senders", "_receivers",
        "_closed", "_cause",
    )

    def __init__(self, capacity: int = RENDEZVOUS, *, name: str | None = None) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self.name = name or "channel"
        self._capacity = capacity
        self._lock = threading.Lock()
        self._buffer: deque[T] = deque()
        self._senders: deque[Waiter[T]] = deque()
        self._receivers: deque[Waiter[T]] = deque()
        self._closed = False
        self._cause: BaseException | None = None

    @classmethod
    def rendezvous(cls, *, name: str | None = None) -> Channel[T]:
        return cls(RENDEZVOUS, name=name)

    @classmethod
    def bounded(cls, capacity: int, *, name: str | None = None) -> Channel[T]:
        if capacity < 1:
            raise ValueError(f"bounded capacity must be >= 1, got {capacity}")
        return cls(capacity, name=name)

    @classmethod
    def unbounded(cls, *, name: str | None = None) -> Channel[T]:
        return cls(UNBOUNDED, name=name)

    def __repr__(self) -> str:
        cap = "unbounded" if self._capacity == UNBOUNDED else self._capacity
        state = "closed" if self._closed else "open"
        return f"<Channel {self.name!r} capacity={cap} {state} buffered={len(self._buffer)}>"

    # ── inspection ───────────────────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def mode(self) -> ChannelMode:
        if self._capacity == RENDEZVOUS:
            return ChannelMode.RENDEZVOUS
        if self._capacity == UNBOUNDED:
            return ChannelMode.UNBOUNDED
        return ChannelMode.BOUNDED

    @property
    def is_closed(self) -> bool:
        """Closed for sending (buffered values may remain)."""
        return self._closed

    @property
    def is_drained(self) -> bool:
        """Closed and nothing left to receive."""
        with self._lock:
            return self._closed and not self._buffer and not self._senders

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def parked_senders(self) -> int:
        return len(self._senders)

    @property
    def parked_receivers(self) -> int:
        return len(self._receivers)

    # ── errors ───────────────────────────────────────────────────────────────

    def _send_error(self) -> ChannelClosed:
        err = ChannelClosed(f"Channel {self.name!r} is closed")
        err.__cause__ = self._cause
        return err

    def _receive_error(self) -> BaseException:
        return self._cause if self._cause is not None else EndOfStream(f"Channel {self.name!r} is closed")

    # ── send ─────────────────────────────────────────────────────────────────

    def _offer(self, value: T) -> bool:
        """Deliver or buffer without parking. Caller holds the lock."""
        if self._closed:
            raise self._send_error()
        if self._receivers:
            self._receivers.popleft().resolve(value)
            return True
        if len(self._buffer) < self._capacity:
            self._buffer.append(value)
            return True
        return False

    def try_send(self, value: T) -> bool:
        """Send without suspending.

        Returns:
            False when the value would have to wait (buffer full or no receiver)

        Raises:
            ChannelClosed: If the channel is closed
        """
        with self._lock:
            return self._offer(value)

    async def send(self, value: T) -> None:
        """Send ``value``, suspending while there is no room or no receiver.

        Raises:
            ChannelClosed: If the channel is closed, now or while parked
        """
        ensure_active()
        with self._lock:
            if self._offer(value):
                return
            waiter: Waiter[T] = Waiter(value)
            self._senders.append(waiter)

        try:
            with suspension():
                await waiter.wait()
        except BaseException:
            with self._lock:
                if not waiter.settled:
                    self._senders.remove(waiter)
            raise

        if waiter.error is not None:
            raise waiter.error

    # ── receive ──────────────────────────────────────────────────────────────

    def _take(self) -> ChannelResult[T]:
        """Take the next value without parking. Caller holds the lock."""
        if self._buffer:
            value = self._buffer.popleft()
            self._refill()
            return ChannelResult(ChannelStatus.VALUE, value)
        if self._senders:
            sender = self._senders.popleft()
            value = sender.value
            sender.resolve()
            return ChannelResult(ChannelStatus.VALUE, value)  # type: ignore[arg-type]
        if self._closed:
            return ChannelResult(ChannelStatus.CLOSED, cause=self._cause)
        return _EMPTY

    def _refill(self) -> None:
        while self._senders and len(self._buffer) < self._capacity:
            sender = self._senders.popleft()
            self._buffer.append(sender.value)  # type: ignore[arg-type]
            sender.resolve()

    def _give_back(self, value: T) -> None:
        """Return a value whose receiver was cancelled before resuming. Caller holds the lock."""
        if self._receivers:
            self._receivers.popleft().resolve(value)
        else:
            self._buffer.appendleft(value)

    def try_receive(self) -> ChannelResult[T]:
        """Receive without suspending."""
        with self._lock:
            return self._take()

    async def receive(self) -> T:
        """Receive the next value, suspending while the channel is empty and open.

        Raises:
            EndOfStream: Once the channel is closed and drained
            BaseException: The close cause, if the channel was closed with one
        """
        ensure_active()
        with self._lock:
            result = self._take()
            if result.status is ChannelStatus.VALUE:
                return result.value  # type: ignore[return-value]
            if result.status is ChannelStatus.CLOSED:
                raise self._receive_error()
            waiter: Waiter[T] = Waiter()
            self._receivers.append(waiter)

        try:
            with suspension():
                await waiter.wait()
        except BaseException:
            with self._lock:
                if not waiter.settled:
                    self._receivers.remove(waiter)
                elif waiter.error is None:
                    self._give_back(waiter.value)  # type: ignore[arg-type]
            raise

        if waiter.error is not None:
            raise waiter.error
        return waiter.value  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.receive()
        except EndOfStream:
            raise StopAsyncIteration from None

    # ── close ────────────────────────────────────────────────────────────────

    def close(self, cause: BaseException | None = None, *, keep_pending: bool = False) -> bool:
        """Close for sending. Idempotent.

        Parked receivers are woken with end-of-stream (or ``cause``); parked
        senders fail with ChannelClosed unless ``keep_pending``, in which
        case their values are accepted into the buffer and their sends
        complete.

        Returns:
            False if the channel was already closed
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._cause = cause
            if keep_pending:
                while self._senders:
                    sender = self._senders.popleft()
                    self._buffer.append(sender.value)  # type: ignore[arg-type]
                    sender.resolve()
            # Receivers only park on an empty buffer, so none can take these values
            error = self._receive_error()
            while self._receivers:
                self._receivers.popleft().fail(error)
            while self._senders:
                self._senders.popleft().fail(self._send_error())
            buffered = len(self._buffer)
        log.debug("channel closed", channel=self.name, buffered=buffered, cause=repr(cause) if cause else None)
        return True

    def cancel(self, cause: BaseException | None = None) -> bool:
        """Close and discard everything still buffered."""
        closed = self.close(cause)
        with self._lock:
            self._buffer.clear()
        return closed


# ─────────────────────────────────────────────────────────────────────────────
# Producers
# ─────────────────────────────────────────────────────────────────────────────


class SendView(Generic[T]):
    """Send-only view of a channel, handed to producers."""

    __slots__ = ("_channel",)

    def __init__(self, channel: Channel[T]) -> None:
        self._channel = channel

    def __repr__(self) -> str:
        return f"<SendView {self._channel!r}>"

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    async def send(self, value: T) -> None:
        await self._channel.send(value)

    def try_send(self, value: T) -> bool:
        return self._channel.try_send(value)

    def close(self, cause: BaseException | None = None) -> bool:
        return self._channel.close(cause)


class ReceiveView(Generic[T]):
    """Receive-only async iterator over a channel."""

    __slots__ = ("_channel",)

    def __init__(self, channel: Channel[T]) -> None:
        self._channel = channel

    def __repr__(self) -> str:
        return f"<ReceiveView {self._channel!r}>"

    async def receive(self) -> T:
        return await self._channel.receive()

    def try_receive(self) -> ChannelResult[T]:
        return self._channel.try_receive()

    def __aiter__(self) -> ReceiveView[T]:
        return self

    async def __anext__(self) -> T:
        return await self._channel.__anext__()


class ProducerChannel(Generic[T]):
    """Receive side of a channel fed by a producer task.

    The channel closes when the producer ends: with end-of-stream on return
    or cancellation, with the producer's exception on failure. Cancelling
    the ProducerChannel cancels the producer.
    """

    __slots__ = ("channel", "handle")

    def __init__(self, channel: Channel[T], handle: Handle[None]) -> None:
        self.channel = channel
        self.handle = handle

    def __repr__(self) -> str:
        return f"<ProducerChannel {self.channel!r} producer={self.handle!r}>"

    @property
    def is_closed(self) -> bool:
        return self.channel.is_closed

    async def receive(self) -> T:
        return await self.channel.receive()

    def try_receive(self) -> ChannelResult[T]:
        return self.channel.try_receive()

    def __aiter__(self) -> AsyncIterator[T]:
        return ReceiveView(self.channel)

    def cancel(self) -> bool:
        """Stop the producer; its channel closes once it unwinds."""
        return self.handle.cancel()


async def _feed(
    channel: Channel[T],
    producer: Callable[..., Awaitable[None]],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> None:
    try:
        await producer(SendView(channel), *args, **kwargs)
    except asyncio.CancelledError:
        channel.close()
        raise
    except BaseException as exc:
        channel.close(exc)
        raise
    channel.close()


def produce(
    scope: Scope,
    producer: Callable[Concatenate[SendChannel[T], P], Coroutine[Any, Any, None]],
    *args: P.args,
    capacity: int | None = None,
    name: str | None = None,
    dispatcher: Dispatcher | None = None,
    **kwargs: P.kwargs,
) -> ProducerChannel[T]:
    """Launch ``producer(send_view, *args)`` in ``scope`` and return its output.

    Args:
        scope: Scope owning the producer task
        producer: Coroutine function sending into the SendView it is given
        capacity: Channel capacity (default from settings, 0 = rendezvous)
        name: Name for the producer task and channel
        dispatcher: Dispatcher for the producer task

    Example:
        >>> async def integers(out: SendChannel[int], start: int) -> None:
        ...     x = start
        ...     while True:
        ...         await out.send(x)
        ...         x += 1
        >>>
        >>> numbers = produce(scope, integers, 1)
        >>> await numbers.receive()
        1
        >>> numbers.cancel()
    """
    if capacity is None:
        capacity = get_settings().channel.default_capacity
    channel: Channel[T] = Channel(capacity, name=name or getattr(producer, "__name__", None))
    handle = scope.launch(
        _feed(channel, producer, args, kwargs),
        name=name or getattr(producer, "__name__", None),
        dispatcher=dispatcher,
    )
    return ProducerChannel(channel, handle)
