"""Tests for structured scopes, detached tasks and run_scope."""

from __future__ import annotations

import asyncio

import pytest

from weft import (
    CancellationSignal,
    InvalidStateError,
    Scope,
    ScopeInactiveError,
    ScopeState,
    TaskFailure,
    TaskState,
    cancel_all,
    current_scope,
    delay,
    detach,
    detached_tasks,
    launch,
    run_scope,
    set_failure_reporter,
)
from weft.runtime.observability import CaptureRenderer


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


async def _value(v: int, after: float = 0.0) -> int:
    await delay(after)
    return v


async def _boom(after: float = 0.01, message: str = "boom") -> None:
    await delay(after)
    raise ArithmeticError(message)


async def _sleep_forever(cancelled: list[str], tag: str) -> None:
    try:
        await delay(3600)
    except CancellationSignal:
        cancelled.append(tag)
        raise


# ─────────────────────────────────────────────────────────────────────────────
# Failure propagation
# ─────────────────────────────────────────────────────────────────────────────


class TestFailure:
    """First failure cancels siblings and is re-raised unchanged."""

    @pytest.mark.asyncio
    async def test_failure_cancels_siblings_and_reraises(self) -> None:
        cancelled: list[str] = []
        with pytest.raises(ArithmeticError, match="boom"):
            async with Scope() as scope:
                slow = scope.async_(_sleep_forever(cancelled, "slow"))
                scope.launch(_boom())
                await slow
        assert cancelled == ["slow"]
        assert scope.state is ScopeState.FAILED
        assert slow.is_cancelled

    @pytest.mark.asyncio
    async def test_failure_in_body_cancels_children(self) -> None:
        cancelled: list[str] = []
        with pytest.raises(KeyError):
            async with Scope() as scope:
                scope.launch(_sleep_forever(cancelled, "child"))
                await delay(0.01)
                raise KeyError("body")
        assert cancelled == ["child"]
        assert scope.state is ScopeState.FAILED

    @pytest.mark.asyncio
    async def test_grandchild_failure_reaches_root(self) -> None:
        cancelled: list[str] = []

        async def parent() -> None:
            launch(_boom(message="deep"))
            await _sleep_forever(cancelled, "parent")

        with pytest.raises(ArithmeticError, match="deep"):
            async with Scope() as scope:
                scope.launch(parent())
                scope.launch(_sleep_forever(cancelled, "uncle"))
        assert sorted(cancelled) == ["parent", "uncle"]

    @pytest.mark.asyncio
    async def test_secondary_failures_are_noted(self) -> None:
        async def first() -> None:
            await delay(0.01)
            raise ValueError("first")

        async def second() -> None:
            try:
                await delay(3600)
            except CancellationSignal:
                raise KeyError("second") from None

        with pytest.raises(ValueError, match="first") as info:
            async with Scope() as scope:
                scope.launch(first())
                scope.launch(second())
        notes = getattr(info.value, "__notes__", [])
        assert any("KeyError" in note for note in notes)

    @pytest.mark.asyncio
    async def test_cancelled_child_is_not_a_failure(self) -> None:
        async with Scope() as scope:
            job = scope.launch(delay(3600))
            ok = scope.async_(_value(3, 0.02))
            await asyncio.sleep(0.01)
            job.cancel()
            assert await ok == 3
        assert scope.state is ScopeState.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestScopeCancellation:
    """Scope.cancel and cancel_all."""

    @pytest.mark.asyncio
    async def test_scope_cancel_stops_body_and_children(self) -> None:
        cancelled: list[str] = []
        reached_end = False
        async with Scope() as scope:
            job = scope.launch(_sleep_forever(cancelled, "child"))
            await asyncio.sleep(0.01)
            scope.cancel()
            await asyncio.sleep(3600)
            reached_end = True
        assert not reached_end
        assert cancelled == ["child"]
        assert job.is_cancelled
        assert scope.state is ScopeState.CANCELLED

    @pytest.mark.asyncio
    async def test_scope_cancel_from_child(self) -> None:
        async def stopper(scope: Scope) -> None:
            await delay(0.01)
            scope.cancel()

        async with Scope() as scope:
            scope.launch(stopper(scope))
            await delay(3600)
        assert scope.state is ScopeState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_all_keeps_scope_active(self) -> None:
        cancelled: list[str] = []
        async with Scope() as scope:
            for i in range(3):
                scope.launch(_sleep_forever(cancelled, f"w{i}"))
            await asyncio.sleep(0.01)
            assert cancel_all(scope) == 3
            assert scope.is_active
            assert await scope.async_(_value(9)) == 9
        assert sorted(cancelled) == ["w0", "w1", "w2"]
        assert scope.state is ScopeState.COMPLETED

    @pytest.mark.asyncio
    async def test_task_cancel_reaches_grandchildren(self) -> None:
        cancelled: list[str] = []

        async def parent() -> None:
            launch(_sleep_forever(cancelled, "grandchild"))

        async with Scope() as scope:
            job = scope.launch(parent())
            await delay(0.02)
            assert job.is_active
            assert job.cancel()
            await job.join()
        assert cancelled == ["grandchild"]
        assert job.is_cancelled
        assert scope.state is ScopeState.COMPLETED

    @pytest.mark.asyncio
    async def test_outer_cancel_propagates(self) -> None:
        cancelled: list[str] = []

        async def body() -> None:
            async with Scope() as inner:
                inner.launch(_sleep_forever(cancelled, "inner"))
                await delay(3600)

        outer = asyncio.ensure_future(body())
        await asyncio.sleep(0.01)
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
        assert cancelled == ["inner"]


# ─────────────────────────────────────────────────────────────────────────────
# Scope rules
# ─────────────────────────────────────────────────────────────────────────────


class TestScopeRules:
    """Entering, sealing and nesting."""

    @pytest.mark.asyncio
    async def test_scope_waits_for_children(self) -> None:
        done: list[int] = []

        async def later() -> None:
            await delay(0.05)
            done.append(1)

        async with Scope() as scope:
            scope.launch(later())
        assert done == [1]
        assert scope.children == []

    @pytest.mark.asyncio
    async def test_returned_body_waits_for_children(self) -> None:
        release = asyncio.Event()

        async def child() -> None:
            await release.wait()

        async def parent() -> str:
            launch(child())
            return "body done"

        async with Scope() as scope:
            job = scope.async_(parent())
            await delay(0.02)
            assert not job.is_done
            assert job.state is TaskState.SUSPENDED
            release.set()
            assert await job == "body done"
        assert job.state is TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_nested_scope_failure_caught_by_body(self) -> None:
        seen: list[str] = []

        async def sibling() -> None:
            await delay(0.05)
            seen.append("done")

        async def worker() -> str:
            try:
                async with Scope() as inner:
                    inner.launch(_boom(0.01, "inner"))
                    await delay(3600)
            except ArithmeticError:
                return "recovered"
            return "unreachable"

        async with Scope() as scope:
            other = scope.launch(sibling())
            job = scope.async_(worker())
            assert await job == "recovered"
            assert other.is_active
        assert seen == ["done"]
        assert job.state is TaskState.COMPLETED
        assert scope.state is ScopeState.COMPLETED

    @pytest.mark.asyncio
    async def test_launch_after_exit_is_rejected(self) -> None:
        async with Scope() as scope:
            pass
        coro = delay(1)
        with pytest.raises(ScopeInactiveError):
            scope.launch(coro)
        assert coro.cr_frame is None

    @pytest.mark.asyncio
    async def test_launch_before_enter_is_rejected(self) -> None:
        scope = Scope()
        with pytest.raises(InvalidStateError):
            scope.launch(delay(1))

    @pytest.mark.asyncio
    async def test_module_launch_needs_a_scope(self) -> None:
        with pytest.raises(InvalidStateError):
            launch(delay(1))

    @pytest.mark.asyncio
    async def test_scope_cannot_be_entered_twice(self) -> None:
        scope = Scope()
        async with scope:
            with pytest.raises(InvalidStateError):
                await scope.__aenter__()

    @pytest.mark.asyncio
    async def test_current_scope_tracks_bodies(self) -> None:
        seen: list[Scope | None] = []

        async def child() -> None:
            seen.append(current_scope())

        async with Scope("outer") as scope:
            assert current_scope() is scope
            scope.launch(child())
        assert current_scope() is None
        body = seen[0]
        assert body is not None
        assert body is not scope
        assert body.parent is scope

    @pytest.mark.asyncio
    async def test_launched_count(self) -> None:
        async with Scope() as scope:
            for i in range(5):
                scope.launch(_value(i))
        assert scope.launched == 5


# ─────────────────────────────────────────────────────────────────────────────
# Detached tasks
# ─────────────────────────────────────────────────────────────────────────────


class TestDetached:
    """detach() escapes structure; failures go to the reporter."""

    @pytest.mark.asyncio
    async def test_detached_does_not_keep_scope_alive(self) -> None:
        async with Scope() as scope:
            daemon = detach(delay(3600), name="daemon")
        assert scope.state is ScopeState.COMPLETED
        assert daemon.is_active
        assert any(h.id == daemon.id for h in detached_tasks())
        daemon.cancel()
        await daemon.join()
        assert daemon.is_cancelled
        assert all(h.id != daemon.id for h in detached_tasks())

    @pytest.mark.asyncio
    async def test_detached_failure_is_reported(self) -> None:
        reports: list[TaskFailure] = []
        previous = set_failure_reporter(lambda failure, exc: reports.append(failure))
        try:
            job = detach(_boom(), name="daemon")
            with pytest.raises(ArithmeticError):
                await job
        finally:
            set_failure_reporter(previous)
        assert len(reports) == 1
        assert reports[0].task_name == "daemon"
        assert reports[0].detached
        assert reports[0].error_type == "ArithmeticError"
        assert job.state is TaskState.FAILED

    @pytest.mark.asyncio
    async def test_default_reporter_logs(self, capture: CaptureRenderer) -> None:
        job = detach(_boom(), name="logged")
        await job.join()
        assert "unhandled task failure" in capture.events("error")
        entry = next(e for e in capture.entries if e.event == "unhandled task failure")
        assert entry.context["task"] == "logged"
        assert entry.context["detached"] is True

    @pytest.mark.asyncio
    async def test_detached_failure_does_not_fail_scope(self) -> None:
        previous = set_failure_reporter(lambda failure, exc: None)
        try:
            async with Scope() as scope:
                job = detach(_boom())
                await job.join()
        finally:
            set_failure_reporter(previous)
        assert scope.state is ScopeState.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# run_scope
# ─────────────────────────────────────────────────────────────────────────────


class TestRunScope:
    """Blocking bridge from synchronous code."""

    def test_returns_main_result(self) -> None:
        async def main(scope: Scope) -> int:
            one = scope.async_(_value(10, 0.01))
            two = scope.async_(_value(5))
            return await one + await two

        assert run_scope(main) == 15

    def test_passes_arguments(self) -> None:
        async def main(scope: Scope, a: int, *, b: int) -> int:
            return a + b

        assert run_scope(main, 1, b=2) == 3

    def test_reraises_failure_unchanged(self) -> None:
        async def main(scope: Scope) -> None:
            scope.launch(_boom(message="root"))
            await delay(3600)

        with pytest.raises(ArithmeticError, match="root"):
            run_scope(main)

    def test_cancelled_root(self) -> None:
        async def main(scope: Scope) -> None:
            scope.cancel()
            await delay(3600)

        with pytest.raises(CancellationSignal):
            run_scope(main)

    @pytest.mark.asyncio
    async def test_inside_running_loop(self) -> None:
        async def main(scope: Scope) -> int:
            return await scope.async_(_value(4))

        assert run_scope(main) == 4
