"""Tasks, handles and suspension points.

A Task is one lightweight unit of concurrent work: a coroutine driven by an
asyncio task on the loop its dispatcher picked. Tasks are created by a
Scope (or ``detach``); callers only ever see a Handle or Deferred.

State machine:

    CREATED -> RUNNING <-> SUSPENDED -> COMPLETED | FAILED | CANCELLED

SUSPENDED is recorded while a task is parked at a runtime suspension point
(``delay``, channel send/receive, join). Cancellation is cooperative: it is
requested with ``Handle.cancel()`` and observed at the next suspension point.

Example:
    >>> async with Scope() as scope:
    ...     one = scope.async_(compute(1))
    ...     two = scope.async_(compute(2))
    ...     total = await one + await two
"""

from __future__ import annotations

import asyncio
import contextvars
import itertools
import threading
from collections.abc import Coroutine, Generator
from contextlib import contextmanager
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from weft.foundation.errors import CancellationSignal, InvalidStateError
from weft.runtime.observability import get_logger

from .waiter import Waiter, call_in_loop, running_loop

if TYPE_CHECKING:
    from .scheduler import Dispatcher
    from .scope import Scope

T = TypeVar("T")

__all__ = [
    "TaskState",
    "Start",
    "Task",
    "Handle",
    "Deferred",
    "current_task",
    "ensure_active",
    "non_cancellable",
    "suspension",
    "delay",
    "yield_now",
]

log = get_logger("weft.task")

_ids = itertools.count(1)

_current_task: contextvars.ContextVar[Task[Any] | None] = contextvars.ContextVar(
    "weft_current_task", default=None
)
_shielded: contextvars.ContextVar[bool] = contextvars.ContextVar("weft_shielded", default=False)


class TaskState(StrEnum):
    """Task lifecycle states."""
    CREATED = "created"      # Not yet scheduled (or lazily deferred)
    RUNNING = "running"      # Executing between suspension points
    SUSPENDED = "suspended"  # Parked at a suspension point
    COMPLETED = "completed"  # Finished successfully
    FAILED = "failed"        # Raised an exception
    CANCELLED = "cancelled"  # Unwound after a cancellation request

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class Start(StrEnum):
    """When a task is scheduled."""
    DEFAULT = "default"  # Immediately on creation
    LAZY = "lazy"        # On start(), join() or await_result()


class Task(Generic[T]):
    """Runtime record of one unit of work.

    Owned by exactly one Scope (or none when detached). The completion
    record (state, outcome, waiters, callbacks) is guarded by a lock since
    joins and cancels may come from other threads.
    """

    __slots__ = (
        "id", "name", "scope", "parent", "dispatcher", "detached", "context",
        "_coro", "_payload", "_state", "_lock", "_cancel_requested", "_scheduled",
        "_loop", "_aio", "_result", "_exception", "_waiters", "_callbacks",
    )

    def __init__(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        dispatcher: Dispatcher,
        name: str | None = None,
        scope: Scope | None = None,
        parent: Task[Any] | None = None,
        detached: bool = False,
        payload: Coroutine[Any, Any, Any] | None = None,
    ) -> None:
        """
        Args:
            coro: Coroutine the task drives
            dispatcher: Chooses the loop the task runs on
            name: Task name (default ``task-<id>``)
            scope: Owning scope, None for detached tasks
            parent: Task whose body scope owns this one
            detached: Whether the task belongs to no scope
            payload: Inner coroutine wrapped by ``coro``, closed if the task never runs
        """
        self.id = next(_ids)
        self.name = name or f"task-{self.id}"
        self.scope = scope
        self.parent = parent
        self.dispatcher = dispatcher
        self.detached = detached
        self.context = contextvars.copy_context()
        self._coro = coro
        self._payload = payload
        self._state = TaskState.CREATED
        self._lock = threading.Lock()
        self._cancel_requested = False
        self._scheduled = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._aio: asyncio.Task[T] | None = None
        self._result: T | None = None
        self._exception: BaseException | None = None
        self._waiters: list[Waiter[None]] = []
        self._callbacks: list[Callable[[Task[T]], None]] = []

    def __repr__(self) -> str:
        return f"<Task #{self.id} {self.name!r} {self._state}>"

    # ── state ────────────────────────────────────────────────────────────────

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def is_done(self) -> bool:
        return self._state.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def scheduled(self) -> bool:
        """Whether start() has handed the task to its dispatcher."""
        return self._scheduled

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    @property
    def exception(self) -> BaseException | None:
        """The failure of a FAILED task, else None."""
        return self._exception if self._state is TaskState.FAILED else None

    def outcome(self) -> T:
        """Result of a terminal task; re-raises its failure or cancellation."""
        state = self._state
        if state is TaskState.COMPLETED:
            return self._result  # type: ignore[return-value]
        if state is TaskState.FAILED:
            raise self._exception  # type: ignore[misc]
        if state is TaskState.CANCELLED:
            raise CancellationSignal(f"Task {self.name!r} was cancelled")
        raise InvalidStateError(f"Task {self.name!r} is not finished ({state})")

    def _set_suspended(self, suspended: bool) -> None:
        if not self._state.is_terminal:
            self._state = TaskState.SUSPENDED if suspended else TaskState.RUNNING

    # ── scheduling ───────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Schedule the task if it has not been yet. Returns False if already scheduled."""
        with self._lock:
            if self._scheduled or self._state.is_terminal:
                return False
            self._scheduled = True
        from .scheduler import spawn

        try:
            spawn(self)
        except BaseException:
            with self._lock:
                self._scheduled = False
            raise
        return True

    def _discard(self) -> None:
        """Close coroutines that will never run."""
        self._coro.close()
        if self._payload is not None:
            self._payload.close()

    def _attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _bind(self, aio: asyncio.Task[T]) -> None:
        """Record the asyncio task now driving this Task (on its loop)."""
        aio.add_done_callback(self._on_aio_done)
        with self._lock:
            self._aio = aio
            cancel = self._cancel_requested
        if cancel:
            aio.cancel()

    async def _run(self) -> T:
        _current_task.set(self)
        self._state = TaskState.RUNNING
        log.debug("task started", task=self.name, task_id=self.id)
        return await self._coro

    def _on_aio_done(self, aio: asyncio.Task[T]) -> None:
        if aio.cancelled():
            if self._state is TaskState.CREATED:
                # Cancelled before its first step
                self._discard()
            self._finish(TaskState.CANCELLED)
            return
        exc = aio.exception()
        if exc is not None:
            self._finish(TaskState.FAILED, exception=exc)
        else:
            self._finish(TaskState.COMPLETED, result=aio.result())

    def _finish(
        self,
        state: TaskState,
        *,
        result: T | None = None,
        exception: BaseException | None = None,
    ) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            self._state = state
            self._result = result
            self._exception = exception
            waiters, self._waiters = self._waiters, []
            callbacks, self._callbacks = self._callbacks, []
            for waiter in waiters:
                waiter.resolve()
        # Drop the coroutine frame reference once finished
        self._coro = None  # type: ignore[assignment]
        log.debug("task finished", task=self.name, task_id=self.id, state=str(state))
        for callback in callbacks:
            callback(self)

    def add_done_callback(self, callback: Callable[[Task[T]], None]) -> None:
        """Call ``callback(task)`` once terminal; immediately if already terminal."""
        with self._lock:
            if not self._state.is_terminal:
                self._callbacks.append(callback)
                return
        callback(self)

    # ── cancellation ─────────────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Request cooperative cancellation.

        Idempotent: returns False when the task is terminal or a request is
        already pending. A task that was never scheduled is cancelled
        without running.
        """
        with self._lock:
            if self._state.is_terminal or self._cancel_requested:
                return False
            self._cancel_requested = True
            aio = self._aio
            never_scheduled = not self._scheduled
            if never_scheduled:
                self._scheduled = True
        if never_scheduled:
            self._discard()
            self._finish(TaskState.CANCELLED)
        elif aio is not None:
            call_in_loop(aio.get_loop(), aio.cancel)
        log.debug("task cancel requested", task=self.name, task_id=self.id)
        # Otherwise _bind() sees the flag and cancels on creation
        return True

    # ── waiting ──────────────────────────────────────────────────────────────

    async def wait_done(self) -> None:
        """Park until terminal. Works from any loop or thread."""
        with self._lock:
            if self._state.is_terminal:
                return
            waiter: Waiter[None] = Waiter()
            self._waiters.append(waiter)
        try:
            with suspension():
                await waiter.wait()
        except BaseException:
            with self._lock:
                if not waiter.settled:
                    self._waiters.remove(waiter)
            raise


# ─────────────────────────────────────────────────────────────────────────────
# Handles
# ─────────────────────────────────────────────────────────────────────────────


class Handle(Generic[T]):
    """Non-owning reference to a task: join, cancel, inspect.

    Example:
        >>> job = scope.launch(worker())
        >>> job.cancel()
        >>> await job.join()  # returns once the task is terminal
    """

    __slots__ = ("_task",)

    def __init__(self, task: Task[T]) -> None:
        self._task = task

    def __repr__(self) -> str:
        return f"<{type(self).__name__} #{self._task.id} {self._task.name!r} {self._task.state}>"

    @property
    def id(self) -> int:
        return self._task.id

    @property
    def name(self) -> str:
        return self._task.name

    @property
    def state(self) -> TaskState:
        return self._task.state

    @property
    def is_active(self) -> bool:
        """Scheduled, not terminal and not asked to cancel."""
        task = self._task
        if task.is_done or task.cancel_requested:
            return False
        return task.scheduled

    @property
    def is_done(self) -> bool:
        return self._task.is_done

    @property
    def is_cancelled(self) -> bool:
        return self._task.state is TaskState.CANCELLED

    def start(self) -> bool:
        """Schedule a lazily created task. No-op if already started."""
        return self._task.start()

    def cancel(self) -> bool:
        """Request cancellation; observed at the task's next suspension point."""
        return self._task.cancel()

    async def join(self) -> None:
        """Wait until the task is terminal. Never raises the task's failure."""
        ensure_active()
        self._task.start()
        await self._task.wait_done()

    async def cancel_and_join(self) -> None:
        self.cancel()
        await self._task.wait_done()


class Deferred(Handle[T]):
    """Handle to a value-producing task.

    Example:
        >>> answer = scope.async_(compute())
        >>> value = await answer.await_result()  # or: await answer
    """

    __slots__ = ()

    async def await_result(self) -> T:
        """Wait for the task and return its value, re-raising its failure."""
        await self.join()
        return self._task.outcome()

    def result(self) -> T:
        """Value of a finished task without waiting."""
        return self._task.outcome()

    def exception(self) -> BaseException | None:
        return self._task.exception

    def __await__(self) -> Generator[Any, None, T]:
        return self.await_result().__await__()


# ─────────────────────────────────────────────────────────────────────────────
# Suspension points
# ─────────────────────────────────────────────────────────────────────────────


def current_task() -> Task[Any] | None:
    """The Task running in the current context, or None outside weft tasks."""
    return _current_task.get()


def ensure_active() -> None:
    """Raise CancellationSignal if the current task has a pending cancel request.

    Call periodically in long computations that do not otherwise suspend.
    No-op outside weft tasks and inside ``non_cancellable()`` blocks.
    """
    task = _current_task.get()
    if task is not None and task.cancel_requested and not _shielded.get():
        raise CancellationSignal(f"Task {task.name!r} was cancelled")


@contextmanager
def non_cancellable() -> Generator[None, None, None]:
    """Suspend explicit cancellation checks for bounded cleanup.

    The asyncio-level cancellation already delivered is not replayed here;
    cleanup code must re-raise the CancellationSignal it caught when done.

    Example:
        >>> try:
        ...     await work()
        ... except CancellationSignal:
        ...     with non_cancellable():
        ...         await channel.send("bye")
        ...     raise
    """
    token = _shielded.set(True)
    try:
        yield
    finally:
        _shielded.reset(token)


def _context_without_task() -> contextvars.Context:
    """Copy of the current context with no weft task bound, for helper asyncio tasks."""
    ctx = contextvars.copy_context()
    ctx.run(_current_task.set, None)
    return ctx


@contextmanager
def suspension() -> Generator[None, None, None]:
    """Mark the current task SUSPENDED for the duration of the block."""
    task = _current_task.get()
    if task is None:
        yield
        return
    task._set_suspended(True)
    try:
        yield
    finally:
        task._set_suspended(False)


async def delay(seconds: float) -> None:
    """Suspend the current task for ``seconds`` without blocking its thread."""
    ensure_active()
    with suspension():
        await asyncio.sleep(max(0.0, seconds))
    ensure_active()


async def yield_now() -> None:
    """Zero-length suspension point: let other tasks on this loop run."""
    ensure_active()
    with suspension():
        await asyncio.sleep(0)
    ensure_active()
