"""Scheduling of agent-initiated (proactive) messages."""

from __future__ import annotations

import asyncio
import math
import secrets
import string
from dataclasses import dataclass
from typing import Any

from loguru import logger

from parley.errors import ProactiveLimitError, ProactiveScheduleError
from parley.storage.base import (
    PROACTIVE_STATUSES,
    STATUS_CANCELLED,
    STATUS_SCHEDULED,
    ProactiveMessage,
    ProactiveStore,
)

MAX_PENDING_PER_CONVERSATION = 2
PUBLIC_ID_LENGTH = 5
_BASE36 = string.digits + string.ascii_lowercase


def encode_public_id(internal_id: int, width: int = PUBLIC_ID_LENGTH) -> str:
    """Lower-case base-36 id zero-padded to ``width``; larger ids grow past it."""
    if internal_id < 0:
        raise ValueError("internal_id must be non-negative")
    digits = ""
    value = internal_id
    while True:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
        if value == 0:
            break
    return digits.rjust(width, "0")


def summarise_content(content: str) -> str:
    trimmed = (content or "").strip()
    if len(trimmed) <= 80:
        return trimmed
    return trimmed[:77] + "..."


@dataclass
class ProactiveSummary:
    """What the models see about a pending proactive message."""

    id: str
    scheduled_at: int
    content_preview: str
    status: str
    reason: str | None = None


class ProactiveScheduler:
    """
    Lifecycle of proactive messages: scheduled -> sent | cancelled.

    Rows are never deleted. Mutations against rows that already left the
    scheduled state are ignored, so every operation is safe to repeat.
    """

    def __init__(self, store: ProactiveStore, max_pending: int = MAX_PENDING_PER_CONVERSATION):
        self.store = store
        self.max_pending = max_pending

    async def schedule(
        self,
        key: str,
        persona_id: str,
        content: str,
        scheduled_at_ms: int | float,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProactiveMessage:
        pending = await asyncio.to_thread(self.store.list_by_status, key, STATUS_SCHEDULED)
        if len(pending) >= self.max_pending:
            raise ProactiveLimitError(key, len(pending), self.max_pending)
        valid_number = isinstance(scheduled_at_ms, (int, float)) and not isinstance(scheduled_at_ms, bool)
        if not valid_number or not math.isfinite(scheduled_at_ms):
            raise ProactiveScheduleError(f"scheduled_at must be a finite timestamp, got {scheduled_at_ms!r}")

        placeholder = "tmp_" + "".join(secrets.choice(_BASE36) for _ in range(PUBLIC_ID_LENGTH))
        internal_id = await asyncio.to_thread(
            lambda: self.store.insert(
                public_id=placeholder,
                conversation_key=key,
                persona_id=persona_id,
                content=content,
                scheduled_at=int(scheduled_at_ms),
                reason=reason,
                metadata=metadata,
            )
        )
        public_id = encode_public_id(internal_id)
        await asyncio.to_thread(self.store.set_public_id, internal_id, public_id)
        logger.info(f"Scheduled proactive message {public_id} for {key} at {int(scheduled_at_ms)}")

        row = await asyncio.to_thread(self.store.get_by_public_id, public_id)
        if row is None:
            raise ProactiveScheduleError(f"Proactive row {public_id} vanished after insert")
        return row

    async def list_due(self, now_ms: int) -> list[ProactiveMessage]:
        return await asyncio.to_thread(self.store.list_due, now_ms)

    async def list_pending(self, key: str) -> list[ProactiveMessage]:
        return await asyncio.to_thread(self.store.list_by_status, key, STATUS_SCHEDULED)

    async def pending_summaries(self, key: str) -> list[ProactiveSummary]:
        return [
            ProactiveSummary(
                id=row.public_id,
                scheduled_at=row.scheduled_at,
                content_preview=summarise_content(row.content),
                status=row.status,
                reason=row.reason,
            )
            for row in await self.list_pending(key)
        ]

    async def get(self, public_id: str) -> ProactiveMessage | None:
        return await asyncio.to_thread(self.store.get_by_public_id, public_id.strip().lower())

    async def cancel(self, public_ids: list[str]) -> int:
        """Cancel scheduled rows; returns how many changed state."""
        changed = 0
        for public_id in public_ids:
            normalized = (public_id or "").strip().lower()
            if not normalized:
                continue
            if await asyncio.to_thread(self.store.update_status, normalized, STATUS_CANCELLED):
                changed += 1
                logger.info(f"Cancelled proactive message {normalized}")
        return changed

    async def mark_status(self, public_id: str, status: str) -> bool:
        if status not in PROACTIVE_STATUSES:
            raise ProactiveScheduleError(f"Unknown proactive status: {status}")
        return await asyncio.to_thread(self.store.update_status, public_id.strip().lower(), status)

    async def reschedule(
        self,
        public_id: str,
        new_time_ms: int,
        new_content: str | None = None,
        new_reason: str | None = None,
    ) -> bool:
        normalized = public_id.strip().lower()
        changed = await asyncio.to_thread(
            self.store.reschedule, normalized, int(new_time_ms), new_content, new_reason
        )
        if changed:
            logger.info(f"Rescheduled proactive message {normalized} to {int(new_time_ms)}")
        return changed

    async def update_content(self, public_id: str, content: str) -> bool:
        return await asyncio.to_thread(self.store.update_content, public_id.strip().lower(), content)

