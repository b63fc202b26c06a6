"""Typed errors raised by the parley runtime."""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for runtime errors."""


class ModelCallError(ParleyError):
    """A single model call failed or returned nothing usable."""


class LLMRetryError(ParleyError):
    """A model call site exhausted its retry budget."""

    def __init__(self, service: str, attempts: int, cause: BaseException | str | None = None):
        if isinstance(cause, BaseException):
            reason = str(cause) or type(cause).__name__
        elif isinstance(cause, str) and cause:
            reason = cause
        else:
            reason = "Unknown failure"
        super().__init__(f"LLM {service} failed after {attempts} attempts: {reason}")
        self.service = service
        self.attempts = attempts
        self.cause = cause


class ProactiveScheduleError(ParleyError):
    """A proactive message could not be scheduled."""


class ProactiveLimitError(ProactiveScheduleError):
    """The conversation already holds the maximum number of pending messages."""

    def __init__(self, conversation_key: str, pending: int, limit: int):
        super().__init__(
            f"Conversation {conversation_key} already has {pending} scheduled proactive messages "
            f"(limit {limit})"
        )
        self.conversation_key = conversation_key
        self.pending = pending
        self.limit = limit
