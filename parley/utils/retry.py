"""Bounded exponential-backoff retry for async operations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

RetryObserver = Callable[[int, BaseException, float], None]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 8.0


def backoff_delay(attempt: int, base_delay_s: float, max_delay_s: float) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    return min(max_delay_s, base_delay_s * (2 ** max(0, attempt - 1)))


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_s: float = DEFAULT_BASE_DELAY_S,
    max_delay_s: float = DEFAULT_MAX_DELAY_S,
    on_retry: RetryObserver | None = None,
) -> T:
    """
    Run ``operation(attempt)`` until it succeeds or attempts run out.

    The last exception is re-raised once the budget is spent. ``on_retry`` is
    called with (attempt, error, delay_s) before each sleep.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt >= max_attempts:
                break
            delay = backoff_delay(attempt, base_delay_s, max_delay_s)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if delay > 0:
                await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error
    raise RuntimeError("Retry attempts exhausted.")
