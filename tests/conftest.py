"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
import sys

from loguru import logger
import pytest


@pytest.fixture(autouse=True)
def _reset_logger() -> Iterator[None]:
    """Restore the default loguru sink after each test.

    The CLI callback replaces all sinks with one bound to the stderr stream
    the test runner swaps in, which is closed once the command returns.
    """
    yield
    logger.remove()
    logger.add(sys.stderr)
