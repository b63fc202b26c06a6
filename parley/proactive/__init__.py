"""Proactive (self-initiated) messages."""

from parley.proactive.scheduler import (
    MAX_PENDING_PER_CONVERSATION,
    ProactiveScheduler,
    ProactiveSummary,
    encode_public_id,
)

__all__ = [
    "MAX_PENDING_PER_CONVERSATION",
    "ProactiveScheduler",
    "ProactiveSummary",
    "encode_public_id",
]
