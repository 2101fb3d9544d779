"""Tests for structured logging."""

from __future__ import annotations

import io
import json

import pytest

from weft import Scope, delay, get_logger, log_context
from weft.runtime.observability import (
    CaptureRenderer,
    ConsoleRenderer,
    JsonRenderer,
    NoOpRenderer,
    configure_logging,
)


class TestBoundLogger:
    """Context binding and level filtering."""

    def test_bound_context(self, capture: CaptureRenderer) -> None:
        log = get_logger("weft.test", component="scheduler")
        log.bind(worker=2).info("started", tasks=5)
        entry = capture.entries[-1]
        assert entry.event == "started"
        assert entry.level == "info"
        assert entry.context == {"logger": "weft.test", "component": "scheduler", "worker": 2, "tasks": 5}

    def test_unbind(self, capture: CaptureRenderer) -> None:
        log = get_logger("weft.test", secret="x").unbind("secret")
        log.info("clean")
        assert "secret" not in capture.entries[-1].context

    def test_level_filtering(self) -> None:
        capture = CaptureRenderer()
        configure_logging(level="WARNING", renderer=capture)
        log = get_logger("weft.test")
        log.debug("hidden")
        log.info("hidden")
        log.warning("shown")
        log.error("shown too")
        assert capture.events() == ["shown", "shown too"]
        assert capture.events("error") == ["shown too"]

    def test_exception_includes_trace(self, capture: CaptureRenderer) -> None:
        try:
            raise RuntimeError("bad")
        except RuntimeError:
            get_logger().exception("failed")
        entry = capture.entries[-1]
        assert entry.level == "error"
        assert "RuntimeError: bad" in entry.context["exc_info"]


class TestLogContext:
    """Scoped context shared by everything logged inside it."""

    def test_nested_context(self, capture: CaptureRenderer) -> None:
        log = get_logger()
        with log_context(request="r1"):
            with log_context(stage="parse"):
                log.info("inner")
            log.info("outer")
        log.info("after")
        inner, outer, after = capture.entries[-3:]
        assert inner.context == {"request": "r1", "stage": "parse"}
        assert outer.context == {"request": "r1"}
        assert after.context == {}

    @pytest.mark.asyncio
    async def test_task_bodies_are_tagged(self, capture: CaptureRenderer) -> None:
        async def work() -> None:
            await delay(0)
            get_logger("weft.test").info("inside")

        async with Scope() as scope:
            scope.launch(work(), name="tagged")
        entry = next(e for e in capture.entries if e.event == "inside")
        assert entry.context["task"] == "tagged"


class TestRenderers:
    """Output formats."""

    def test_json_lines(self) -> None:
        out = io.StringIO()
        configure_logging(format="json", level="INFO", output=out)
        get_logger("weft.test").info("hello", n=1)
        record = json.loads(out.getvalue().strip())
        assert record["event"] == "hello"
        assert record["level"] == "info"
        assert record["n"] == 1
        assert record["logger"] == "weft.test"

    def test_console_without_colors(self) -> None:
        out = io.StringIO()
        configure_logging(format="console", level="INFO", output=out, colors=False)
        get_logger().info("ready", port=8)
        line = out.getvalue()
        assert "ready" in line
        assert "port=8" in line
        assert "\033[" not in line

    def test_none_format(self) -> None:
        assert isinstance(configure_logging(format="none"), NoOpRenderer)
        assert isinstance(configure_logging(format="console", output=io.StringIO()), ConsoleRenderer)
        assert isinstance(configure_logging(format="json", output=io.StringIO()), JsonRenderer)

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError):
            configure_logging(format="xml")
