"""Ticker: a channel source that yields ``TICK`` each time a period elapses.

At most one tick is ever pending; a slow consumer never builds a backlog.

Modes:
    - FIXED_PERIOD (default): ticks stay on the grid start + initial_delay + k * period.
      After a consumer pause, one tick is available at once and the next
      one comes sooner than ``period`` to catch up with the grid.
    - FIXED_DELAY: each tick is due ``period`` after the previous one was
      received, so consumer pauses shift every later tick.

Example:
    >>> async with ticker(0.1) as t:
    ...     async for _ in t:
    ...         await refresh()
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

from weft.foundation.config import get_settings
from weft.foundation.errors import ChannelClosed, InvalidStateError
from weft.runtime.observability import get_logger

from .channel import RENDEZVOUS, Channel, ChannelResult, ReceiveView
from .scope import current_scope
from .task import delay
from .waiter import running_loop

if TYPE_CHECKING:
    from types import TracebackType

    from .scheduler import Dispatcher
    from .scope import Scope
    from .task import Handle

__all__ = ["Tick", "TICK", "TickerMode", "Ticker", "ticker"]

log = get_logger("weft.ticker")


class Tick(StrEnum):
    """Value delivered by a ticker. Never None, so it differs from a timed-out wait."""
    TICK = "tick"


TICK = Tick.TICK


class TickerMode(StrEnum):
    """Pacing of ticks relative to the consumer."""
    FIXED_PERIOD = "fixed_period"
    FIXED_DELAY = "fixed_delay"


class Ticker:
    """Periodic tick source backed by a rendezvous channel.

    The tick is offered by an internal task launched into a scope; it stays
    pending until a receiver takes it, which is what bounds the backlog to
    one. Cancel the ticker (or leave its ``async with`` block) so the
    owning scope can complete.

    Args:
        period: Seconds between ticks
        initial_delay: Seconds before the first tick
        mode: Pacing mode (default from settings)
    """

    __slots__ = ("period", "initial_delay", "mode", "_channel", "_handle")

    def __init__(self, period: float, initial_delay: float = 0.0, mode: TickerMode | None = None) -> None:
        if period < 0:
            raise ValueError(f"period must be >= 0, got {period}")
        if initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
        self.period = period
        self.initial_delay = initial_delay
        self.mode = mode or TickerMode(get_settings().ticker.mode)
        self._channel: Channel[Tick] = Channel(RENDEZVOUS, name="ticker")
        self._handle: Handle[None] | None = None

    def __repr__(self) -> str:
        state = "cancelled" if self._channel.is_closed else ("running" if self._handle else "idle")
        return f"<Ticker period={self.period} mode={self.mode} {state}>"

    @property
    def started(self) -> bool:
        return self._handle is not None

    @property
    def is_cancelled(self) -> bool:
        return self._channel.is_closed

    def start(self, scope: Scope | None = None, *, dispatcher: Dispatcher | None = None) -> Ticker:
        """Launch the tick task into ``scope`` (default: current scope)."""
        if self._handle is not None:
            return self
        owner = scope or current_scope()
        if owner is None:
            raise InvalidStateError("Ticker needs a scope; start it inside run_scope() or 'async with Scope()'")
        self._handle = owner.launch(self._tick(), name="ticker", dispatcher=dispatcher)
        return self

    async def _tick(self) -> None:
        try:
            if self.mode is TickerMode.FIXED_DELAY:
                await self._fixed_delay()
            else:
                await self._fixed_period()
        except ChannelClosed:
            # cancel() closed the channel between two ticks
            pass
        finally:
            self._channel.close(keep_pending=True)

    async def _fixed_period(self) -> None:
        loop = running_loop()
        assert loop is not None
        deadline = loop.time() + self.initial_delay
        await delay(self.initial_delay)
        while True:
            deadline += self.period
            await self._channel.send(TICK)
            now = loop.time()
            remaining = deadline - now
            if remaining <= 0 and self.period > 0:
                # Consumer lagged past the next deadline: realign to the grid
                lag = -remaining
                deadline = now + self.period - lag % self.period
                remaining = deadline - now
                log.debug("ticker realigned", lag=lag, next_in=remaining)
            await delay(remaining)

    async def _fixed_delay(self) -> None:
        await delay(self.initial_delay)
        while True:
            await self._channel.send(TICK)
            await delay(self.period)

    def _require_started(self) -> None:
        if self._handle is None and not self._channel.is_closed:
            raise InvalidStateError("Ticker is not started")

    async def receive(self) -> Tick:
        """Wait for the next tick.

        Raises:
            EndOfStream: Once the ticker is cancelled and any pending tick taken
        """
        self._require_started()
        return await self._channel.receive()

    def try_receive(self) -> ChannelResult[Tick]:
        """Take a pending tick without waiting."""
        return self._channel.try_receive()

    def __aiter__(self) -> ReceiveView[Tick]:
        self._require_started()
        return ReceiveView(self._channel)

    def cancel(self) -> bool:
        """Stop future ticks. A tick already pending can still be received.

        Returns:
            False if already cancelled
        """
        closed = self._channel.close(keep_pending=True)
        if self._handle is not None:
            self._handle.cancel()
        return closed

    async def __aenter__(self) -> Ticker:
        return self.start()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.cancel()


def ticker(
    period: float,
    initial_delay: float = 0.0,
    mode: TickerMode | None = None,
    *,
    scope: Scope | None = None,
    dispatcher: Dispatcher | None = None,
) -> Ticker:
    """Create and start a Ticker in ``scope`` (default: current scope).

    Example:
        >>> t = ticker(0.1, initial_delay=0)
        >>> await t.receive()
        <Tick.TICK: 'tick'>
        >>> t.cancel()
    """
    return Ticker(period, initial_delay, mode).start(scope, dispatcher=dispatcher)
