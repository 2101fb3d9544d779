"""Dispatchers: where tasks run.

Tasks are cooperatively multiplexed over event loops. A dispatcher picks
the loop for a new task:

    - Confined: the caller's running loop (single thread, FIFO, deterministic)
    - WorkerPool: a fixed set of worker threads, each running its own loop
    - Dedicated: one private thread and loop

Tasks only yield at ``await`` points; nothing is preempted. Spawning many
tasks never creates more OS threads than the pool size.

Example:
    >>> async with Scope() as scope:
    ...     scope.launch(crunch(), dispatcher=Dispatchers.default())
    ...     with Dedicated("io") as io:
    ...         scope.launch(poll(), dispatcher=io)
"""

from __future__ import annotations

import asyncio
import atexit
import functools
import itertools
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Callable, ParamSpec, TypeVar

from weft.foundation.config import get_settings
from weft.foundation.errors import InvalidStateError
from weft.runtime.observability import get_logger

from .waiter import running_loop

if TYPE_CHECKING:
    from types import TracebackType

    from .task import Task

T = TypeVar("T")
P = ParamSpec("P")

__all__ = [
    "Affinity",
    "Dispatcher",
    "Confined",
    "WorkerPool",
    "Dedicated",
    "Dispatchers",
    "spawn",
    "run_in_thread",
]

log = get_logger("weft.scheduler")


class Affinity(StrEnum):
    """Thread affinity a task requires."""
    NONE = "none"            # Run on the launching loop
    POOLED = "pooled"        # Any worker of a shared pool
    DEDICATED = "dedicated"  # A private thread


class Dispatcher(ABC):
    """Chooses the event loop a task runs on."""

    __slots__ = ()

    affinity: Affinity

    @abstractmethod
    def loop_for(self, caller: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop:
        """Return the loop for a task launched from ``caller`` (None outside async code)."""


class Confined(Dispatcher):
    """Run on the caller's loop. The default."""

    __slots__ = ()

    affinity = Affinity.NONE

    def loop_for(self, caller: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop:
        if caller is None:
            raise InvalidStateError("No running event loop to confine the task to; use a pooled dispatcher")
        return caller

    def __repr__(self) -> str:
        return "Confined()"


class _LoopThread:
    """A daemon thread running one event loop forever."""

    __slots__ = ("name", "loop", "thread", "_ready")

    def __init__(self, name: str) -> None:
        self.name = name
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self.thread.start()
        self._ready.wait()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        try:
            self.loop.run_forever()
        finally:
            try:
                pending = asyncio.all_tasks(self.loop)
                for task in pending:
                    task.cancel()
                if pending:
                    self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
                self.loop.run_until_complete(self.loop.shutdown_asyncgens())
            finally:
                asyncio.set_event_loop(None)
                self.loop.close()

    def stop(self, timeout: float) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread is not threading.current_thread():
            self.thread.join(timeout)
            if self.thread.is_alive():
                log.warning("worker thread did not stop", thread=self.name, timeout=timeout)


@dataclass(slots=True, eq=False)
class WorkerPool(Dispatcher):
    """Fixed pool of worker threads, one event loop each.

    Threads start lazily on first use. Tasks are assigned to workers
    round-robin and stay on their worker for their whole life.

    Example:
        >>> with WorkerPool(workers=4) as pool:
        ...     run_scope(main, pool)
    """

    workers: int = field(default_factory=lambda: get_settings().scheduler.workers)
    thread_name_prefix: str = field(default_factory=lambda: get_settings().scheduler.thread_name_prefix)
    _threads: list[_LoopThread] = field(default_factory=list, repr=False)
    _cursor: itertools.count[int] = field(default_factory=itertools.count, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = field(default=False, repr=False)

    affinity = Affinity.POOLED

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be >= 1")

    def _ensure_started(self) -> list[_LoopThread]:
        if self._threads:
            return self._threads
        with self._lock:
            if self._closed:
                raise InvalidStateError("WorkerPool is shut down")
            if not self._threads:
                threads = [_LoopThread(f"{self.thread_name_prefix}{i}") for i in range(self.workers)]
                for t in threads:
                    t.start()
                self._threads = threads
                log.debug("worker pool started", workers=self.workers)
        return self._threads

    def loop_for(self, caller: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop:
        threads = self._ensure_started()
        return threads[next(self._cursor) % len(threads)].loop

    @property
    def started(self) -> bool:
        return bool(self._threads)

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every worker. Tasks still running on them are cancelled."""
        with self._lock:
            self._closed = True
            threads, self._threads = self._threads, []
        wait = timeout if timeout is not None else get_settings().scheduler.shutdown_timeout
        for t in threads:
            t.stop(wait)
        if threads:
            log.debug("worker pool stopped", workers=len(threads))

    def __enter__(self) -> WorkerPool:
        self._ensure_started()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.shutdown()


@dataclass(slots=True, eq=False)
class Dedicated(Dispatcher):
    """One private thread and loop. Expensive; close it when done."""

    name: str = "weft-dedicated"
    _thread: _LoopThread | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    affinity = Affinity.DEDICATED

    def loop_for(self, caller: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop:
        if self._thread is None:
            with self._lock:
                if self._thread is None:
                    thread = _LoopThread(self.name)
                    thread.start()
                    self._thread = thread
        return self._thread.loop

    def close(self, timeout: float | None = None) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.stop(timeout if timeout is not None else get_settings().scheduler.shutdown_timeout)

    shutdown = close

    def __enter__(self) -> Dedicated:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class Dispatchers:
    """Well-known dispatchers.

    ``CONFINED`` is stateless and shared. ``default()`` is a process-wide
    WorkerPool sized from settings, created on first use and stopped at
    interpreter exit or by ``shutdown()``.
    """

    CONFINED: Dispatcher = Confined()

    _default: WorkerPool | None = None
    _lock = threading.Lock()

    @classmethod
    def default(cls) -> WorkerPool:
        if cls._default is None:
            with cls._lock:
                if cls._default is None:
                    cls._default = WorkerPool()
        return cls._default

    @staticmethod
    def dedicated(name: str) -> Dedicated:
        return Dedicated(name)

    @classmethod
    def shutdown(cls) -> None:
        with cls._lock:
            pool, cls._default = cls._default, None
        if pool is not None:
            pool.shutdown()


atexit.register(Dispatchers.shutdown)


# ─────────────────────────────────────────────────────────────────────────────
# Spawning
# ─────────────────────────────────────────────────────────────────────────────


def spawn(task: Task[T]) -> None:
    """Bind ``task`` to its dispatcher's loop and schedule its first step.

    Safe to call from any thread; scheduling onto another thread's loop
    goes through ``call_soon_threadsafe``.
    """
    caller = running_loop()
    loop = task.dispatcher.loop_for(caller)
    task._attach(loop)
    if loop is caller:
        _create(task, loop)
    else:
        loop.call_soon_threadsafe(_create, task, loop)


def _create(task: Task[T], loop: asyncio.AbstractEventLoop) -> None:
    aio = loop.create_task(task._run(), name=task.name, context=task.context)
    task._bind(aio)


# ─────────────────────────────────────────────────────────────────────────────
# Blocking work
# ─────────────────────────────────────────────────────────────────────────────

_blocking_executor: ThreadPoolExecutor | None = None
_blocking_lock = threading.Lock()


def _get_blocking_executor() -> ThreadPoolExecutor:
    global _blocking_executor
    if _blocking_executor is None:
        with _blocking_lock:
            if _blocking_executor is None:
                _blocking_executor = ThreadPoolExecutor(thread_name_prefix="weft-blocking-")
    return _blocking_executor


async def run_in_thread(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a blocking call off the event loop so the worker keeps serving tasks.

    Example:
        >>> data = await run_in_thread(read_file, path)
    """
    loop = asyncio.get_running_loop()
    if kwargs:
        func = functools.partial(func, **kwargs)
    return await loop.run_in_executor(_get_blocking_executor(), func, *args)
