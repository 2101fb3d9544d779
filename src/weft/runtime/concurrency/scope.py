"""Structured concurrency: scopes own tasks.

A Scope does not finish until every task launched in it is terminal. The
first child failure cancels the siblings and the scope's own body, and is
re-raised unchanged once everything has unwound.

Every task body runs inside its own body scope, so ``launch()`` called from
inside a task creates a child of that task. Scopes opened with
``async with Scope()`` inside a body gate the task's completion but are
separate cancellation domains: their failures only escape by propagating.

Example:
    >>> async def main(scope: Scope) -> int:
    ...     one = scope.async_(compute(10))
    ...     two = scope.async_(compute(5))
    ...     return await one + await two
    >>>
    >>> run_scope(main)
    15

    >>> # First failure cancels siblings and is re-raised
    >>> async with Scope() as scope:
    ...     scope.launch(delay(3600))
    ...     scope.launch(explode())
    Traceback (most recent call last):
    ArithmeticError
"""

from __future__ import annotations

import asyncio
import contextvars
import threading
from collections.abc import Awaitable, Coroutine
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Concatenate, ParamSpec, TypeVar

from weft.foundation.config import get_settings
from weft.foundation.errors import (
    CancellationSignal,
    InvalidStateError,
    ScopeInactiveError,
    TaskFailure,
)
from weft.runtime.observability import get_logger, log_context

from .scheduler import Dispatcher, Dispatchers
from .task import Deferred, Handle, Start, Task, TaskState, current_task, suspension
from .waiter import call_in_loop, running_loop

if TYPE_CHECKING:
    from types import TracebackType

T = TypeVar("T")
P = ParamSpec("P")

__all__ = [
    "ScopeState",
    "Scope",
    "current_scope",
    "launch",
    "async_",
    "detach",
    "cancel_all",
    "run_scope",
    "FailureReporter",
    "set_failure_reporter",
    "detached_tasks",
]

log = get_logger("weft.scope")

_current_scope: contextvars.ContextVar[Scope | None] = contextvars.ContextVar(
    "weft_current_scope", default=None
)


class ScopeState(StrEnum):
    """Scope lifecycle states."""
    ACTIVE = "active"          # Accepting and running children
    CANCELLING = "cancelling"  # Failure or cancel seen, children unwinding
    COMPLETED = "completed"    # Body and every child succeeded
    FAILED = "failed"          # A child or the body failed
    CANCELLED = "cancelled"    # Unwound by cancellation


class Scope:
    """Structured group of tasks.

    Use as an async context manager. Children are launched with
    ``launch()`` (fire-and-forget, returns a Handle) or ``async_()``
    (returns a Deferred with ``await_result()``).

    Attributes:
        name: Scope name for logs
        parent: Enclosing scope at creation, None for roots
        owner: Task whose body this scope is, if any
        dispatcher: Default dispatcher for children
    """

    __slots__ = (
        "name", "parent", "owner", "dispatcher",
        "_lock", "_state", "_children", "_launched", "_sealed",
        "_loop", "_host", "_token", "_entered", "_aborting",
        "_host_cancel_requested", "_cancel_called", "_completed",
        "_failure", "_secondary",
    )

    def __init__(
        self,
        name: str | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        parent: Scope | None = None,
        owner: Task[Any] | None = None,
    ) -> None:
        self.name = name or "scope"
        self.parent = parent if parent is not None else _current_scope.get()
        self.owner = owner
        self.dispatcher = dispatcher or Dispatchers.CONFINED
        self._lock = threading.Lock()
        self._state = ScopeState.ACTIVE
        self._children: set[Task[Any]] = set()
        self._launched = 0
        self._sealed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._host: asyncio.Task[Any] | None = None
        self._token: contextvars.Token[Scope | None] | None = None
        self._entered = False
        self._aborting = False
        self._host_cancel_requested = False
        self._cancel_called = False
        self._completed: asyncio.Future[None] | None = None
        self._failure: BaseException | None = None
        self._secondary: list[BaseException] = []

    def __repr__(self) -> str:
        return f"<Scope {self.name!r} {self._state} children={len(self._children)}>"

    # ── inspection ───────────────────────────────────────────────────────────

    @property
    def state(self) -> ScopeState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ScopeState.ACTIVE and not self._sealed

    @property
    def children(self) -> list[Handle[Any]]:
        """Handles to children that are not terminal yet."""
        with self._lock:
            return [Handle(t) for t in self._children]

    @property
    def launched(self) -> int:
        """Total number of tasks ever launched in this scope."""
        return self._launched

    @property
    def failure(self) -> BaseException | None:
        return self._failure

    # ── launching ────────────────────────────────────────────────────────────

    def launch(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
        dispatcher: Dispatcher | None = None,
        start: Start = Start.DEFAULT,
    ) -> Handle[Any]:
        """Launch a child task and return a Handle to join or cancel it."""
        return Handle(self._spawn(coro, name, dispatcher, start))

    def async_(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        name: str | None = None,
        dispatcher: Dispatcher | None = None,
        start: Start = Start.DEFAULT,
    ) -> Deferred[T]:
        """Launch a value-producing child task and return a Deferred for its result."""
        return Deferred(self._spawn(coro, name, dispatcher, start))

    def _spawn(
        self,
        coro: Coroutine[Any, Any, T],
        name: str | None,
        dispatcher: Dispatcher | None,
        start: Start,
    ) -> Task[T]:
        if not asyncio.iscoroutine(coro):
            raise TypeError(f"Expected a coroutine, got {type(coro).__name__}")
        if not self._entered:
            coro.close()
            raise InvalidStateError(f"Scope {self.name!r} must be entered with 'async with' before launching")

        body = _run_in_body_scope(coro, self)
        task: Task[T] = Task(
            body,
            dispatcher=dispatcher or self.dispatcher,
            name=name,
            scope=self,
            parent=self.owner,
            payload=coro,
        )
        with self._lock:
            if self._sealed or self._state is not ScopeState.ACTIVE:
                inactive = True
            else:
                inactive = False
                self._children.add(task)
                self._launched += 1
        if inactive:
            body.close()
            coro.close()
            raise ScopeInactiveError(f"Scope {self.name!r} is {self._state}; cannot launch")

        task.add_done_callback(self._child_done)
        if start is Start.DEFAULT:
            try:
                task.start()
            except BaseException:
                task.cancel()
                raise
        return task

    # ── cancellation ─────────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Cancel the whole scope: every child and the scope's own body.

        The cancellation is absorbed at the scope boundary; the scope ends
        CANCELLED. Idempotent.
        """
        if not self._entered or self._state in (ScopeState.COMPLETED, ScopeState.FAILED, ScopeState.CANCELLED):
            return
        self._cancel_called = True
        call_in_loop(self._loop, self._cancel_on_host)  # type: ignore[arg-type]

    def _cancel_on_host(self) -> None:
        if not self._aborting:
            self._abort()
        self._cancel_host()

    def cancel_children(self) -> int:
        """Cancel every current child; the scope itself stays active.

        Returns:
            Number of children a cancel request was issued to
        """
        with self._lock:
            children = list(self._children)
        return sum(1 for t in children if t.cancel())

    def _abort(self) -> None:
        self._aborting = True
        if self._state is ScopeState.ACTIVE:
            self._state = ScopeState.CANCELLING
        with self._lock:
            children = list(self._children)
        for t in children:
            t.cancel()

    def _cancel_host(self) -> None:
        host = self._host
        if host is not None and not host.done() and not self._host_cancel_requested:
            self._host_cancel_requested = True
            host.cancel()

    # ── child completion ─────────────────────────────────────────────────────

    def _child_done(self, task: Task[Any]) -> None:
        # Runs on the child's loop; scope bookkeeping happens on the host loop.
        call_in_loop(self._loop, self._on_child_done, task)  # type: ignore[arg-type]

    def _on_child_done(self, task: Task[Any]) -> None:
        with self._lock:
            self._children.discard(task)
            empty = not self._children
        if empty and self._completed is not None and not self._completed.done():
            self._completed.set_result(None)

        if task.state is not TaskState.FAILED:
            return

        exc = task.exception
        assert exc is not None
        self._record_failure(exc, task)
        if not self._aborting:
            self._abort()
        self._cancel_host()

    def _record_failure(self, exc: BaseException, task: Task[Any] | None = None) -> None:
        source = task.name if task is not None else "body"
        if self._failure is None:
            self._failure = exc
            log.debug("scope failing", scope=self.name, source=source, error_type=type(exc).__name__)
        elif exc is not self._failure:
            self._secondary.append(exc)
            log.warning(
                "additional failure while scope was cancelling",
                scope=self.name,
                source=source,
                error_type=type(exc).__name__,
                message=str(exc),
            )

    # ── context manager ──────────────────────────────────────────────────────

    async def __aenter__(self) -> Scope:
        if self._entered:
            raise InvalidStateError(f"Scope {self.name!r} cannot be entered twice")
        host = asyncio.current_task()
        if host is None:
            raise InvalidStateError("Scope must be entered from inside a task")
        self._loop = asyncio.get_running_loop()
        self._host = host
        self._entered = True
        self._token = _current_scope.set(self)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        propagate_cancel: BaseException | None = None

        if exc_val is not None:
            if isinstance(exc_val, asyncio.CancelledError):
                propagate_cancel = exc_val
            else:
                self._record_failure(exc_val)
            if not self._aborting:
                self._abort()

        self._start_lazy_children()

        while True:
            with self._lock:
                if not self._children:
                    self._sealed = True
                    break
            self._completed = self._loop.create_future()  # type: ignore[union-attr]
            try:
                with suspension():
                    await self._completed
            except asyncio.CancelledError as e:
                if not self._aborting:
                    self._abort()
                propagate_cancel = e
            finally:
                self._completed = None

        if self._host_cancel_requested and propagate_cancel is None:
            # Our own cancel request may still be pending delivery; absorb it here.
            try:
                await asyncio.sleep(0)
            except asyncio.CancelledError as e:
                propagate_cancel = e

        if self._token is not None:
            _current_scope.reset(self._token)
            self._token = None

        if self._host_cancel_requested and self._host is not None:
            if self._host.uncancel() == 0:
                propagate_cancel = None

        if self._failure is not None:
            self._state = ScopeState.FAILED
            failure = self._failure
            if self._secondary:
                failure.add_note(
                    f"{len(self._secondary)} more failure(s) in scope {self.name!r}: "
                    + ", ".join(f"{type(e).__name__}: {e}" for e in self._secondary)
                )
                self._secondary.clear()
            log.debug("scope failed", scope=self.name, error_type=type(failure).__name__)
            if failure is exc_val:
                return False
            raise failure

        if propagate_cancel is not None or self._cancel_called:
            self._state = ScopeState.CANCELLED
            log.debug("scope cancelled", scope=self.name)
            if propagate_cancel is not None:
                raise propagate_cancel
            return exc_val is not None and isinstance(exc_val, asyncio.CancelledError)

        self._state = ScopeState.COMPLETED
        log.debug("scope completed", scope=self.name, launched=self._launched)
        return False

    def _start_lazy_children(self) -> None:
        with self._lock:
            lazy = [t for t in self._children if not t.scheduled]
        for t in lazy:
            t.start()


# ─────────────────────────────────────────────────────────────────────────────
# Task bodies
# ─────────────────────────────────────────────────────────────────────────────


async def _run_in_body_scope(coro: Coroutine[Any, Any, T], parent: Scope | None) -> T:
    """Run ``coro`` as a task body: inside its own scope, with log context bound."""
    task = current_task()
    assert task is not None
    body = Scope(task.name, owner=task)
    body.parent = parent
    with log_context(task=task.name):
        async with body:
            return await coro


# ─────────────────────────────────────────────────────────────────────────────
# Module-level helpers bound to the current scope
# ─────────────────────────────────────────────────────────────────────────────


def current_scope() -> Scope | None:
    """Innermost scope of the current context (a task's body scope inside tasks)."""
    return _current_scope.get()


def _require_scope() -> Scope:
    scope = _current_scope.get()
    if scope is None:
        raise InvalidStateError("No current scope; use run_scope() or 'async with Scope()'")
    return scope


def launch(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
    dispatcher: Dispatcher | None = None,
    start: Start = Start.DEFAULT,
) -> Handle[Any]:
    """Launch a child of the current scope."""
    try:
        scope = _require_scope()
    except InvalidStateError:
        coro.close()
        raise
    return scope.launch(coro, name=name, dispatcher=dispatcher, start=start)


def async_(
    coro: Coroutine[Any, Any, T],
    *,
    name: str | None = None,
    dispatcher: Dispatcher | None = None,
    start: Start = Start.DEFAULT,
) -> Deferred[T]:
    """Launch a value-producing child of the current scope."""
    try:
        scope = _require_scope()
    except InvalidStateError:
        coro.close()
        raise
    return scope.async_(coro, name=name, dispatcher=dispatcher, start=start)


def cancel_all(scope: Scope | None = None) -> int:
    """Cancel every child of ``scope`` (default: current scope), keeping the scope active."""
    return (scope or _require_scope()).cancel_children()


# ─────────────────────────────────────────────────────────────────────────────
# Detached tasks and failure reporting
# ─────────────────────────────────────────────────────────────────────────────

FailureReporter = Callable[[TaskFailure, BaseException], None]


def _log_failure(failure: TaskFailure, exc: BaseException) -> None:
    log.error(
        "unhandled task failure",
        task=failure.task_name,
        task_id=failure.task_id,
        error_type=failure.error_type,
        message=failure.message,
        code=str(failure.code),
        detached=failure.detached,
        exc_info=failure.details,
    )


_reporter: FailureReporter = _log_failure
_reporter_lock = threading.Lock()
_detached: set[Task[Any]] = set()
_detached_lock = threading.Lock()


def set_failure_reporter(reporter: FailureReporter | None) -> FailureReporter:
    """Install the process-wide reporter for failures nobody structurally owns.

    Args:
        reporter: Callable receiving the TaskFailure record and the exception;
            None restores the default (log at error level)

    Returns:
        The previously installed reporter
    """
    global _reporter
    with _reporter_lock:
        previous = _reporter
        _reporter = reporter or _log_failure
    return previous


def _report(task: Task[Any], exc: BaseException) -> None:
    failure = TaskFailure.from_exception(task.id, task.name, exc, detached=task.detached)
    with _reporter_lock:
        reporter = _reporter
    reporter(failure, exc)


def _detached_done(task: Task[Any]) -> None:
    with _detached_lock:
        _detached.discard(task)
    if task.state is TaskState.FAILED:
        _report(task, task.exception)  # type: ignore[arg-type]


def detach(
    coro: Coroutine[Any, Any, T],
    *,
    name: str | None = None,
    dispatcher: Dispatcher | None = None,
) -> Deferred[T]:
    """Start a detached ("daemon") task that belongs to no scope.

    Nothing waits for it: it does not keep ``run_scope`` alive and is
    cancelled when its loop shuts down. Its failure is re-raised by
    ``await_result()`` and always passed to the failure reporter.

    Example:
        >>> heartbeat = detach(beat_forever(), dispatcher=Dispatchers.default())
        >>> heartbeat.cancel()
    """
    if not asyncio.iscoroutine(coro):
        raise TypeError(f"Expected a coroutine, got {type(coro).__name__}")
    task: Task[T] = Task(
        _run_in_body_scope(coro, None),
        dispatcher=dispatcher or Dispatchers.CONFINED,
        name=name,
        parent=current_task(),
        detached=True,
        payload=coro,
    )
    with _detached_lock:
        _detached.add(task)
    task.add_done_callback(_detached_done)
    try:
        task.start()
    except BaseException:
        task.cancel()
        raise
    return Deferred(task)


def detached_tasks() -> list[Handle[Any]]:
    """Handles to detached tasks that are still running."""
    with _detached_lock:
        return [Handle(t) for t in _detached]


# ─────────────────────────────────────────────────────────────────────────────
# Blocking bridge
# ─────────────────────────────────────────────────────────────────────────────


def run_scope(
    main: Callable[Concatenate[Scope, P], Awaitable[T]],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Run ``main(scope, *args)`` in a root scope, blocking until the whole tree is done.

    The only call in weft that blocks an OS thread. When the calling thread
    already runs an event loop, the tree runs on a fresh thread instead.

    Returns:
        ``main``'s return value

    Raises:
        The first failure in the tree, unchanged; CancellationSignal if the
        root scope was cancelled.
    """

    async def root() -> T:
        result: T | None = None
        async with Scope("root") as scope:
            result = await main(scope, *args, **kwargs)
        if scope.state is ScopeState.CANCELLED:
            raise CancellationSignal("Root scope was cancelled")
        return result  # type: ignore[return-value]

    debug = get_settings().debug
    try:
        if running_loop() is None:
            return asyncio.run(root(), debug=debug)
        return _run_in_thread_loop(root(), debug)
    except Exception as exc:
        log.error(
            "run_scope failed",
            main=getattr(main, "__qualname__", repr(main)),
            error_type=type(exc).__name__,
            message=str(exc),
        )
        raise


def _run_in_thread_loop(coro: Coroutine[Any, Any, T], debug: bool) -> T:
    """Run coroutine in a new thread with its own event loop."""
    result: T | None = None
    error: BaseException | None = None
    done = threading.Event()

    def runner() -> None:
        nonlocal result, error
        try:
            result = asyncio.run(coro, debug=debug)
        except BaseException as e:
            error = e
        finally:
            done.set()

    thread = threading.Thread(target=runner, name="weft-run-scope", daemon=True)
    thread.start()
    done.wait()

    if error is not None:
        raise error
    return result  # type: ignore[return-value]
