"""Loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger


def _stderr_sink(message: str) -> None:
    # sys.stderr is looked up per write; it may be swapped after setup.
    sys.stderr.write(message)


def setup_logging(level: str = "INFO") -> None:
    """Replace the default loguru sink with a stderr sink at ``level``."""
    logger.remove()
    logger.add(
        _stderr_sink,
        level=(level or "INFO").upper(),
        format="{time:HH:mm:ss} | {level: <8} | {name}:{line} - {message}",
    )
