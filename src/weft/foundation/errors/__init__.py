"""Error handling for weft.

- ErrorCode: Standard error codes for runtime failures
- WeftError and subclasses: Exceptions raised by channels, scopes, waits
- CancellationSignal: Cooperative unwind trigger (asyncio.CancelledError)
- TaskFailure: Structured record of an uncaught task error
"""

from .errors import (
    CancellationSignal,
    ChannelClosed,
    EndOfStream,
    ErrorCode,
    InvalidStateError,
    ScopeInactiveError,
    TaskFailure,
    WaitTimeout,
    WeftError,
    classify_exception,
)
from .types import JsonDict, JsonPrimitive, JsonValue

__all__ = [
    "ErrorCode", "WeftError", "classify_exception",
    "ChannelClosed", "EndOfStream", "ScopeInactiveError", "InvalidStateError", "WaitTimeout",
    "CancellationSignal", "TaskFailure",
    "JsonDict", "JsonPrimitive", "JsonValue",
]
