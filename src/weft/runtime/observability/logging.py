"""Structured logging for the task runtime with context propagation.

Provides context-aware structured logging:
- Bound key/value context (task, scope, channel names)
- Context propagated into tasks via contextvars
- Human-readable dev output, JSON for aggregation

Quick Start:
    >>> from weft.runtime.observability import get_logger, configure_logging
    >>>
    >>> # Configure (once at startup)
    >>> configure_logging(format="console", level="DEBUG")
    >>>
    >>> log = get_logger("weft.scope")
    >>> log.info("scope completed", scope="root", children=3)

Renderer and level are process-wide: tasks may run on worker threads,
which do not inherit the configuring thread's context.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
import traceback
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

from weft.foundation.errors import JsonDict, JsonValue

if TYPE_CHECKING:
    from types import TracebackType

# Context var for bound context (persists across async calls and into child tasks)
_log_context: ContextVar[JsonDict] = ContextVar("log_context", default={})


# ─────────────────────────────────────────────────────────────────────────────
# Core Logger Protocol & Implementation
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class StructuredLogger(Protocol):
    """Protocol for structured loggers."""

    def debug(self, event: str, **kw: JsonValue) -> None: ...
    def info(self, event: str, **kw: JsonValue) -> None: ...
    def warning(self, event: str, **kw: JsonValue) -> None: ...
    def error(self, event: str, **kw: JsonValue) -> None: ...
    def exception(self, event: str, **kw: JsonValue) -> None: ...
    def bind(self, **kw: JsonValue) -> StructuredLogger: ...


@dataclass(slots=True)
class BoundLogger:
    """Structured logger with bound context.

    Binds key-value pairs that appear in every log entry.
    Immutable - bind() returns a new logger with merged context.

    Example:
        >>> log = BoundLogger(context={"logger": "weft.channel"})
        >>> log.debug("sender parked", channel="jobs", waiting=2)
        # => 10:30:45.120 [debug] sender parked channel="jobs" logger="weft.channel" waiting=2
    """

    context: JsonDict = field(default_factory=dict)
    _renderer: LogRenderer | None = None
    _level: int | None = None

    def bind(self, **kw: JsonValue) -> BoundLogger:
        """Create new logger with additional bound context."""
        return BoundLogger(
            context={**self.context, **kw},
            _renderer=self._renderer,
            _level=self._level,
        )

    def unbind(self, *keys: str) -> BoundLogger:
        """Create new logger without specified keys."""
        return BoundLogger(
            context={k: v for k, v in self.context.items() if k not in keys},
            _renderer=self._renderer,
            _level=self._level,
        )

    def is_enabled_for(self, level: int) -> bool:
        return level >= (self._level if self._level is not None else _state.level)

    def _log(self, level: int, event: str, **kw: JsonValue) -> None:
        if not self.is_enabled_for(level):
            return

        # Merge contexts: global -> bound -> call-site
        merged = {**_log_context.get(), **self.context, **kw}

        entry = LogEntry(
            timestamp=time.time(),
            level=_level_name(level),
            event=event,
            context=merged,
        )

        renderer = self._renderer or _state.renderer
        renderer.render(entry)

    def debug(self, event: str, **kw: JsonValue) -> None:
        self._log(logging.DEBUG, event, **kw)

    def info(self, event: str, **kw: JsonValue) -> None:
        self._log(logging.INFO, event, **kw)

    def warning(self, event: str, **kw: JsonValue) -> None:
        self._log(logging.WARNING, event, **kw)

    def error(self, event: str, **kw: JsonValue) -> None:
        self._log(logging.ERROR, event, **kw)

    def exception(self, event: str, **kw: JsonValue) -> None:
        """Log error with the exception currently being handled."""
        kw["exc_info"] = traceback.format_exc()
        self._log(logging.ERROR, event, **kw)


@dataclass(slots=True)
class LogEntry:
    """Immutable log entry with all context."""

    timestamp: float
    level: str
    event: str
    context: JsonDict

    @property
    def ts_iso(self) -> str:
        """ISO formatted timestamp."""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat()

    @property
    def ts_human(self) -> str:
        """Human-readable timestamp (HH:MM:SS.mmm)."""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).strftime("%H:%M:%S.%f")[:-3]


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class LogRenderer(Protocol):
    """Protocol for log output renderers."""

    def render(self, entry: LogEntry) -> None: ...


@dataclass(slots=True)
class ConsoleRenderer:
    """Human-readable colored console output.

    Format: timestamp [level] event key=value key2=value2

    Colors are auto-detected based on TTY, can be forced on/off.
    """

    output: TextIO = field(default_factory=lambda: sys.stderr)
    colors: bool | None = None  # None = auto-detect
    show_timestamp: bool = True
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.colors is None:
            self.colors = hasattr(self.output, "isatty") and self.output.isatty()

    def render(self, entry: LogEntry) -> None:
        c = _COLORS if self.colors else _NO_COLORS
        level_color = _LEVEL_COLORS.get(entry.level, c["dim"]) if self.colors else ""

        parts: list[str] = []

        if self.show_timestamp:
            parts.append(f"{c['dim']}{entry.ts_human}{c['reset']}")

        parts.append(f"{level_color}[{entry.level}]{c['reset']}")
        parts.append(f"{c['bold']}{entry.event}{c['reset']}")

        for k, v in sorted(entry.context.items()):
            if k == "exc_info":
                continue
            parts.append(f"{c['cyan']}{k}{c['reset']}={_format_value(v, c)}")

        line = " ".join(parts)
        with self._lock:
            print(line, file=self.output)
            if "exc_info" in entry.context:
                print(f"{c['red']}{entry.context['exc_info']}{c['reset']}", file=self.output)


@dataclass(slots=True)
class JsonRenderer:
    """JSON Lines output for log aggregation.

    Each entry is a single JSON object on its own line.
    """

    output: TextIO = field(default_factory=lambda: sys.stdout)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def render(self, entry: LogEntry) -> None:
        data = {
            "timestamp": entry.ts_iso,
            "level": entry.level,
            "event": entry.event,
            **entry.context,
        }
        line = json.dumps(data, default=str)
        with self._lock:
            print(line, file=self.output)


@dataclass(slots=True)
class NoOpRenderer:
    """Silent renderer for testing."""

    def render(self, entry: LogEntry) -> None:
        pass


@dataclass(slots=True)
class CaptureRenderer:
    """Keeps entries in memory; used by tests to assert on emitted events."""

    entries: list[LogEntry] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def render(self, entry: LogEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def events(self, level: str | None = None) -> list[str]:
        with self._lock:
            return [e.event for e in self.entries if level is None or e.level == level]


# ─────────────────────────────────────────────────────────────────────────────
# Global Configuration
# ─────────────────────────────────────────────────────────────────────────────


class _LoggingState:
    """Process-wide renderer and level, lazily initialised from settings."""

    __slots__ = ("_renderer", "_level", "_lock")

    def __init__(self) -> None:
        self._renderer: LogRenderer | None = None
        self._level: int | None = None
        self._lock = threading.Lock()

    def _ensure(self) -> None:
        if self._renderer is not None and self._level is not None:
            return
        from weft.foundation.config import get_settings

        settings = get_settings()
        with self._lock:
            if self._level is None:
                self._level = _level_int(settings.effective_log_level)
            if self._renderer is None:
                self._renderer = _make_renderer(settings.logging.format, None, None)

    @property
    def renderer(self) -> LogRenderer:
        self._ensure()
        return self._renderer  # type: ignore[return-value]

    @property
    def level(self) -> int:
        self._ensure()
        return self._level  # type: ignore[return-value]

    def set(self, renderer: LogRenderer, level: int) -> None:
        with self._lock:
            self._renderer = renderer
            self._level = level

    def reset(self) -> None:
        with self._lock:
            self._renderer = None
            self._level = None


_state = _LoggingState()


def configure_logging(
    format: str = "console",  # noqa: A002 - shadows builtin but matches settings field
    level: str = "INFO",
    *,
    output: TextIO | None = None,
    colors: bool | None = None,
    renderer: LogRenderer | None = None,
) -> LogRenderer:
    """Configure process-wide structured logging.

    Args:
        format: Output format - "console" (human), "json" (machine), "none"
        level: Minimum log level - DEBUG, INFO, WARNING, ERROR
        output: Output stream (default: stderr for console, stdout for json)
        colors: Force colors on/off (None = auto-detect)
        renderer: Explicit renderer, overrides ``format``

    Returns:
        Configured renderer instance

    Example:
        >>> configure_logging(format="console", level="DEBUG")
        >>> configure_logging(format="json", level="INFO")
    """
    chosen = renderer or _make_renderer(format, output, colors)
    _state.set(chosen, _level_int(level))
    return chosen


def reset_logging() -> None:
    """Drop explicit configuration; the next log call re-reads settings."""
    _state.reset()


def get_logger(name: str | None = None, **initial_context: JsonValue) -> BoundLogger:
    """Get a structured logger with optional initial context.

    Args:
        name: Logger name (added to context as 'logger')
        **initial_context: Initial bound key-value pairs

    Example:
        >>> log = get_logger("weft.channel", channel="jobs")
        >>> log.debug("closed", buffered=3)
    """
    ctx = dict(initial_context)
    if name:
        ctx["logger"] = name
    return BoundLogger(context=ctx)


class log_context:
    """Context manager for scoped logging context.

    Adds key-value pairs to all log entries within the scope, including
    entries emitted by tasks started inside it.

    Example:
        >>> with log_context(task="worker-1"):
        ...     log.info("processing")  # includes task
        >>> log.info("done")  # no longer includes it
    """

    __slots__ = ("_ctx", "_token")

    def __init__(self, **kw: JsonValue) -> None:
        self._ctx: JsonDict = dict(kw)
        self._token: object | None = None

    def __enter__(self) -> log_context:
        current = _log_context.get()
        self._token = _log_context.set({**current, **self._ctx})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _log_context.reset(self._token)  # type: ignore[arg-type]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


_COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "cyan": "\033[36m",
    "white": "\033[37m",
}

_NO_COLORS = {k: "" for k in _COLORS}

_LEVEL_COLORS = {
    "debug": _COLORS["dim"],
    "info": _COLORS["green"],
    "warning": _COLORS["yellow"],
    "error": _COLORS["red"],
}


def _make_renderer(format: str, output: TextIO | None, colors: bool | None) -> LogRenderer:  # noqa: A002
    if format == "console":
        return ConsoleRenderer(output=output or sys.stderr, colors=colors)
    if format == "json":
        return JsonRenderer(output=output or sys.stdout)
    if format == "none":
        return NoOpRenderer()
    raise ValueError(f"Unknown format: {format}. Use 'console', 'json', or 'none'")


def _level_int(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def _level_name(level: int) -> str:
    """Convert logging level int to lowercase name."""
    return logging.getLevelName(level).lower()


def _format_value(v: object, c: dict[str, str]) -> str:
    """Format a value for console output."""
    if isinstance(v, str):
        return f'{c["yellow"]}"{v}"{c["reset"]}'
    if isinstance(v, bool):
        return f'{c["blue"]}{str(v).lower()}{c["reset"]}'
    if isinstance(v, (int, float)):
        return f'{c["blue"]}{v}{c["reset"]}'
    if isinstance(v, dict):
        return f'{c["dim"]}{{{len(v)} items}}{c["reset"]}'
    if isinstance(v, (list, tuple)):
        return f'{c["dim"]}[{len(v)} items]{c["reset"]}'
    return f'{c["white"]}{v!r}{c["reset"]}'
