from __future__ import annotations

import pytest

from weft.foundation.config import clear_settings_cache
from weft.runtime.observability import CaptureRenderer, configure_logging, reset_logging


@pytest.fixture(autouse=True)
def quiet_logging() -> object:
    """Silence runtime logs and reload settings around each test."""
    clear_settings_cache()
    configure_logging(format="none")
    yield
    reset_logging()
    clear_settings_cache()


@pytest.fixture
def capture() -> CaptureRenderer:
    """Collect every log entry at DEBUG and above."""
    renderer = CaptureRenderer()
    configure_logging(level="DEBUG", renderer=renderer)
    return renderer
