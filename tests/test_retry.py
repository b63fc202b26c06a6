import asyncio

import pytest

from parley.errors import LLMRetryError
from parley.utils.retry import backoff_delay, retry_with_backoff


def test_backoff_delay_doubles_and_caps():
    assert backoff_delay(1, 1.0, 8.0) == 1.0
    assert backoff_delay(2, 1.0, 8.0) == 2.0
    assert backoff_delay(3, 1.0, 8.0) == 4.0
    assert backoff_delay(5, 1.0, 8.0) == 8.0


def test_retry_returns_after_transient_failures():
    calls: list[int] = []
    observed: list[tuple[int, str, float]] = []

    async def flaky(attempt: int) -> str:
        calls.append(attempt)
        if attempt < 3:
            raise RuntimeError(f"boom {attempt}")
        return "ok"

    result = asyncio.run(
        retry_with_backoff(
            flaky,
            max_attempts=3,
            base_delay_s=0,
            max_delay_s=0,
            on_retry=lambda attempt, error, delay: observed.append((attempt, str(error), delay)),
        )
    )

    assert result == "ok"
    assert calls == [1, 2, 3]
    assert observed == [(1, "boom 1", 0), (2, "boom 2", 0)]


def test_retry_reraises_last_error_when_exhausted():
    calls: list[int] = []

    async def always_fails(attempt: int) -> str:
        calls.append(attempt)
        raise ValueError(f"failure {attempt}")

    with pytest.raises(ValueError, match="failure 2"):
        asyncio.run(retry_with_backoff(always_fails, max_attempts=2, base_delay_s=0, max_delay_s=0))
    assert calls == [1, 2]


def test_retry_rejects_zero_attempts():
    async def never_called(attempt: int) -> str:
        raise AssertionError("should not run")

    with pytest.raises(ValueError):
        asyncio.run(retry_with_backoff(never_called, max_attempts=0))


def test_llm_retry_error_names_call_site():
    error = LLMRetryError("evaluator", 4, RuntimeError("timeout"))
    assert str(error) == "LLM evaluator failed after 4 attempts: timeout"
    assert error.service == "evaluator"
    assert error.attempts == 4

    assert "Unknown failure" in str(LLMRetryError("responder", 3))
