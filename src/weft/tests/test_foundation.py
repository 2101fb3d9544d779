"""Tests for the error taxonomy, failure records and settings."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from weft.foundation.config import WeftSettings, clear_settings_cache, get_settings
from weft.foundation.errors import (
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


# ─────────────────────────────────────────────────────────────────────────────
# Error taxonomy
# ─────────────────────────────────────────────────────────────────────────────


class TestErrors:
    """Exception hierarchy and classification."""

    def test_hierarchy(self) -> None:
        assert issubclass(EndOfStream, ChannelClosed)
        assert issubclass(ChannelClosed, WeftError)
        assert issubclass(WaitTimeout, TimeoutError)
        assert CancellationSignal is asyncio.CancelledError
        assert not issubclass(CancellationSignal, Exception)

    @pytest.mark.parametrize(
        ("exc", "code"),
        [
            (ChannelClosed("x"), ErrorCode.CHANNEL_CLOSED),
            (EndOfStream("x"), ErrorCode.END_OF_STREAM),
            (ScopeInactiveError("x"), ErrorCode.SCOPE_INACTIVE),
            (InvalidStateError("x"), ErrorCode.INVALID_STATE),
            (WaitTimeout("x"), ErrorCode.TIMEOUT),
            (TimeoutError("x"), ErrorCode.TIMEOUT),
            (asyncio.CancelledError(), ErrorCode.CANCELLED),
            (ZeroDivisionError("x"), ErrorCode.TASK_FAILED),
            (WeftError("x"), ErrorCode.UNKNOWN),
        ],
    )
    def test_classify(self, exc: BaseException, code: ErrorCode) -> None:
        assert classify_exception(exc) == code


class TestTaskFailure:
    """Structured failure records."""

    def test_from_exception(self) -> None:
        try:
            1 / 0
        except ZeroDivisionError as exc:
            failure = TaskFailure.from_exception(7, "worker-3", exc)

        assert failure.task_id == 7
        assert failure.task_name == "worker-3"
        assert failure.error_type == "ZeroDivisionError"
        assert failure.message == "division by zero"
        assert failure.code == ErrorCode.TASK_FAILED
        assert not failure.detached
        assert not failure.is_cancellation
        assert failure.details is not None
        assert "ZeroDivisionError" in failure.details

    def test_without_trace(self) -> None:
        failure = TaskFailure.from_exception(1, "t", ValueError("bad"), include_trace=False)
        assert failure.details is None

    def test_cancellation(self) -> None:
        failure = TaskFailure.from_exception(1, "t", asyncio.CancelledError(), detached=True)
        assert failure.is_cancellation
        assert failure.detached

    def test_render(self) -> None:
        failure = TaskFailure(task_id=2, task_name="daemon", error_type="KeyError", message="'k'", detached=True)
        assert str(failure) == "Unhandled failure in detached task 'daemon' (#2): KeyError: 'k'"
        bare = TaskFailure(task_id=2, task_name="t", error_type="KeyError")
        assert bare.render() == "Unhandled failure in task 't' (#2): KeyError"

    def test_message_from_exception(self) -> None:
        failure = TaskFailure(task_id=1, task_name="t", error_type="E", message=RuntimeError("  padded  "))
        assert failure.message == "padded"

    def test_frozen_and_validated(self) -> None:
        failure = TaskFailure(task_id=1, task_name="t", error_type="E")
        with pytest.raises(ValidationError):
            failure.task_id = 2  # type: ignore[misc]
        with pytest.raises(ValidationError):
            TaskFailure(task_id=-1, task_name="t", error_type="E")
        with pytest.raises(ValidationError):
            TaskFailure(task_id=1, task_name="", error_type="E")

    def test_serializes(self) -> None:
        failure = TaskFailure(task_id=1, task_name="t", error_type="E", code=ErrorCode.TIMEOUT)
        data = failure.model_dump()
        assert data["code"] == "TIMEOUT"
        assert data["is_cancellation"] is False


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────


class TestSettings:
    """Environment-driven configuration."""

    def test_defaults(self) -> None:
        settings = get_settings()
        assert settings.channel.default_capacity == 0
        assert settings.ticker.mode == "fixed_period"
        assert settings.scheduler.workers >= 1
        assert settings.scheduler.thread_name_prefix == "weft-worker-"
        assert settings.logging.format == "console"
        assert not settings.debug

    def test_cached(self) -> None:
        assert get_settings() is get_settings()
        first = get_settings()
        clear_settings_cache()
        assert get_settings() is not first

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WEFT_SCHEDULER_WORKERS", "3")
        monkeypatch.setenv("WEFT_CHANNEL_DEFAULT_CAPACITY", "16")
        monkeypatch.setenv("WEFT_LOG_LEVEL", "warning")
        clear_settings_cache()
        settings = get_settings()
        assert settings.scheduler.workers == 3
        assert settings.channel.default_capacity == 16
        assert settings.logging.level == "WARNING"
        assert settings.effective_log_level == "WARNING"

    def test_debug_forces_debug_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WEFT_DEBUG", "true")
        settings = WeftSettings()
        assert settings.debug
        assert settings.effective_log_level == "DEBUG"

    def test_invalid_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WEFT_SCHEDULER_WORKERS", "0")
        with pytest.raises(ValidationError):
            WeftSettings()

    def test_invalid_ticker_mode(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WEFT_TICKER_MODE", "sometimes")
        with pytest.raises(ValidationError):
            WeftSettings()
