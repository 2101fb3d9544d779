"""Error taxonomy for the task runtime.

Exceptions raised by the runtime carry an ErrorCode for programmatic
handling. Uncaught task errors are described by TaskFailure, a frozen
Pydantic record handed to failure reporters and rendered in logs.

The task's own exception object is what propagates through scopes and
``Deferred.await_result()``; TaskFailure only describes it.
"""

from __future__ import annotations

import asyncio
import traceback
from enum import StrEnum
from functools import lru_cache
from typing import Annotated, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)


class ErrorCode(StrEnum):
    """Standard error codes for runtime failures."""
    TASK_FAILED = "TASK_FAILED"
    CANCELLED = "CANCELLED"
    CHANNEL_CLOSED = "CHANNEL_CLOSED"
    END_OF_STREAM = "END_OF_STREAM"
    TIMEOUT = "TIMEOUT"
    SCOPE_INACTIVE = "SCOPE_INACTIVE"
    INVALID_STATE = "INVALID_STATE"
    UNKNOWN = "UNKNOWN"


# Cooperative unwind trigger. Observed at suspension points, must propagate.
CancellationSignal = asyncio.CancelledError


class WeftError(Exception):
    """Base class for runtime errors."""

    code: ErrorCode = ErrorCode.UNKNOWN


class ChannelClosed(WeftError):
    """Send on a closed channel, or a parked sender woken by close()."""

    code = ErrorCode.CHANNEL_CLOSED


class EndOfStream(ChannelClosed):
    """Receive on a channel that is closed and fully drained."""

    code = ErrorCode.END_OF_STREAM


class ScopeInactiveError(WeftError):
    """Launch into a scope that is cancelling or already terminal."""

    code = ErrorCode.SCOPE_INACTIVE


class InvalidStateError(WeftError):
    """Operation not valid for the current task or scope state."""

    code = ErrorCode.INVALID_STATE


class WaitTimeout(WeftError, TimeoutError):
    """A bounded wait elapsed before the awaited event occurred."""

    code = ErrorCode.TIMEOUT


@lru_cache(maxsize=256)
def _classify_cached(exc_type: type[BaseException]) -> ErrorCode:
    if issubclass(exc_type, WeftError):
        return exc_type.code
    if issubclass(exc_type, asyncio.CancelledError):
        return ErrorCode.CANCELLED
    if issubclass(exc_type, TimeoutError):
        return ErrorCode.TIMEOUT
    return ErrorCode.TASK_FAILED


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map an exception to an error code by its type."""
    return _classify_cached(type(exc))


class TaskFailure(BaseModel):
    """Structured description of an uncaught error inside a task body.

    Attributes:
        task_id: Runtime-assigned task id
        task_name: Task name (defaults to ``task-<id>``)
        error_type: Qualified name of the exception class
        message: Human-readable error message
        code: Machine-readable classification
        detached: Whether the task had no owning scope
        details: Formatted traceback, if captured
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        validate_default=True,
        json_schema_extra={
            "title": "Task Failure",
            "description": "Uncaught error from a task body",
            "examples": [{
                "task_id": 7,
                "task_name": "worker-3",
                "error_type": "ZeroDivisionError",
                "message": "division by zero",
                "code": "TASK_FAILED",
            }],
        },
    )

    task_id: Annotated[int, Field(ge=0, description="Runtime-assigned task id")]
    task_name: Annotated[str, Field(min_length=1, description="Task name")]
    error_type: Annotated[str, Field(min_length=1)]
    message: str = Field(default="", description="Exception message")
    code: ErrorCode = Field(default=ErrorCode.TASK_FAILED)
    detached: bool = Field(default=False, description="Task had no owning scope")
    details: str | None = Field(default=None, repr=False, description="Formatted traceback")

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: str | BaseException) -> str:
        """Accept exception objects and extract message."""
        return str(v) if isinstance(v, BaseException) else v

    @computed_field
    @property
    def is_cancellation(self) -> bool:
        """Whether the failure is a cancellation rather than an error."""
        return self.code == ErrorCode.CANCELLED

    @classmethod
    def from_exception(
        cls,
        task_id: int,
        task_name: str,
        exc: BaseException,
        *,
        detached: bool = False,
        include_trace: bool = True,
    ) -> Self:
        """Create from an exception with auto-classification."""
        details = None
        if include_trace and exc.__traceback__ is not None:
            details = "".join(traceback.format_exception(exc))
        return cls(
            task_id=task_id,
            task_name=task_name,
            error_type=type(exc).__qualname__,
            message=str(exc),
            code=classify_exception(exc),
            detached=detached,
            details=details,
        )

    def render(self) -> str:
        """Format for console output."""
        kind = "detached task" if self.detached else "task"
        head = f"Unhandled failure in {kind} {self.task_name!r} (#{self.task_id}): {self.error_type}"
        return f"{head}: {self.message}" if self.message else head

    __str__ = render
