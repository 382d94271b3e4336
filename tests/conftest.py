"""Shared test fixtures for the workflow builder test suite."""
from __future__ import annotations

import logging
from typing import Generator

import pytest

from src.shared.logging import request_id_var


@pytest.fixture(autouse=True)
def _reset_request_id() -> Generator[None, None, None]:
    """Ensure no request id leaks between tests."""
    token = request_id_var.set("")
    yield
    request_id_var.reset(token)


@pytest.fixture
def clean_src_logger() -> Generator[logging.Logger, None, None]:
    """Restore the package logger after a test installs handlers on it."""
    logger = logging.getLogger("src")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)
