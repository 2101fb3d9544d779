"""Tests for ticker pacing and cancellation.

Timing assertions use generous margins; only the relation between the
two pacing modes is asserted tightly.
"""

from __future__ import annotations

import asyncio

import pytest

from weft import (
    ChannelStatus,
    EndOfStream,
    InvalidStateError,
    TICK,
    Scope,
    Tick,
    Ticker,
    TickerMode,
    clear_settings_cache,
    delay,
    ticker,
    with_timeout_or_none,
)


class TestFixedPeriod:
    """Adaptive mode keeps ticks on the original grid."""

    @pytest.mark.asyncio
    async def test_catches_up_after_consumer_pause(self) -> None:
        loop = asyncio.get_running_loop()
        async with Scope() as scope:
            t = ticker(0.1, initial_delay=0, scope=scope)
            assert t.mode is TickerMode.FIXED_PERIOD

            started = loop.time()
            await t.receive()
            assert loop.time() - started < 0.05

            await delay(0.05)
            assert t.try_receive().status is ChannelStatus.EMPTY

            await t.receive()
            assert 0.08 <= loop.time() - started < 0.2

            # Pause past the next deadline: one tick waits, no backlog
            await delay(0.15)
            assert t.try_receive().is_value
            assert t.try_receive().status is ChannelStatus.EMPTY

            resumed = loop.time()
            await t.receive()
            assert loop.time() - resumed < 0.09
            t.cancel()

    @pytest.mark.asyncio
    async def test_initial_delay(self) -> None:
        loop = asyncio.get_running_loop()
        async with Scope():
            started = loop.time()
            async with ticker(0.1, initial_delay=0.05) as t:
                await t.receive()
                assert loop.time() - started >= 0.045

    @pytest.mark.asyncio
    async def test_ready_checks_with_timeout(self) -> None:
        loop = asyncio.get_running_loop()
        async with Scope():
            async with ticker(0.1, initial_delay=0) as t:
                assert await with_timeout_or_none(0.02, t.receive()) is TICK
                assert await with_timeout_or_none(0.05, t.receive()) is None
                assert await with_timeout_or_none(0.09, t.receive()) is TICK

                await delay(0.15)
                assert await with_timeout_or_none(0.01, t.receive()) is TICK

                resumed = loop.time()
                assert await with_timeout_or_none(0.09, t.receive()) is TICK
                assert loop.time() - resumed < 0.09

    def test_tick_is_not_none(self) -> None:
        assert TICK is Tick.TICK
        assert TICK is not None
        assert TICK == "tick"

    @pytest.mark.asyncio
    async def test_iteration(self) -> None:
        ticks = 0
        async with Scope():
            async with ticker(0.01) as t:
                async for tick in t:
                    assert tick is TICK
                    ticks += 1
                    if ticks == 3:
                        break
        assert ticks == 3


class TestFixedDelay:
    """Fixed-delay mode measures from the previous receive."""

    @pytest.mark.asyncio
    async def test_pause_shifts_later_ticks(self) -> None:
        loop = asyncio.get_running_loop()
        async with Scope() as scope:
            t = ticker(0.1, mode=TickerMode.FIXED_DELAY, scope=scope)
            await t.receive()

            await delay(0.15)
            resumed = loop.time()
            await t.receive()
            assert loop.time() - resumed < 0.03

            taken = loop.time()
            await t.receive()
            assert loop.time() - taken >= 0.09
            t.cancel()

    def test_mode_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WEFT_TICKER_MODE", "fixed_delay")
        clear_settings_cache()
        assert Ticker(0.1).mode is TickerMode.FIXED_DELAY


class TestTickerCancel:
    """cancel() stops future ticks; a pending tick survives."""

    @pytest.mark.asyncio
    async def test_pending_tick_survives_cancel(self) -> None:
        async with Scope():
            t = ticker(0.05)
            await asyncio.sleep(0.02)
            assert t.cancel()
            assert not t.cancel()
            assert t.is_cancelled
            assert t.try_receive().is_value
            with pytest.raises(EndOfStream):
                await t.receive()

    @pytest.mark.asyncio
    async def test_cancel_wakes_waiting_receiver(self) -> None:
        async with Scope() as scope:
            t = ticker(10, initial_delay=10)

            async def wait_tick() -> str:
                try:
                    await t.receive()
                except EndOfStream:
                    return "ended"
                return "tick"

            waiting = scope.async_(wait_tick())
            await asyncio.sleep(0.01)
            t.cancel()
            assert await waiting == "ended"

    @pytest.mark.asyncio
    async def test_scope_exit_cancels_context_managed_ticker(self) -> None:
        async with Scope() as scope:
            async with ticker(0.01) as t:
                await t.receive()
        assert t.is_cancelled
        assert scope.children == []


class TestTickerValidation:
    """Construction and start rules."""

    def test_negative_period(self) -> None:
        with pytest.raises(ValueError):
            Ticker(-1)
        with pytest.raises(ValueError):
            Ticker(1, initial_delay=-1)

    @pytest.mark.asyncio
    async def test_needs_a_scope(self) -> None:
        with pytest.raises(InvalidStateError):
            ticker(0.1)

    @pytest.mark.asyncio
    async def test_receive_before_start(self) -> None:
        with pytest.raises(InvalidStateError):
            await Ticker(0.1).receive()

    @pytest.mark.asyncio
    async def test_iteration_is_receive_only(self) -> None:
        async with Scope():
            async with ticker(0.01) as t:
                ticks = aiter(t)
                assert not hasattr(ticks, "send")
                assert not hasattr(ticks, "close")
                assert await anext(ticks) is TICK
