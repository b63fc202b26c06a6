"""Durable store contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from parley.bus.events import ChatMessage

STATUS_SCHEDULED = "scheduled"
STATUS_SENT = "sent"
STATUS_CANCELLED = "cancelled"
PROACTIVE_STATUSES = (STATUS_SCHEDULED, STATUS_SENT, STATUS_CANCELLED)


@dataclass
class ProactiveMessage:
    """A message the agent scheduled for itself."""

    internal_id: int
    public_id: str
    conversation_key: str
    persona_id: str
    content: str
    scheduled_at: int
    status: str = STATUS_SCHEDULED
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "internal_id": self.internal_id,
            "public_id": self.public_id,
            "conversation_key": self.conversation_key,
            "persona_id": self.persona_id,
            "content": self.content,
            "scheduled_at": self.scheduled_at,
            "status": self.status,
            "reason": self.reason,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProactiveMessage:
        return cls(
            internal_id=int(data["internal_id"]),
            public_id=str(data.get("public_id", "")),
            conversation_key=str(data.get("conversation_key", "")),
            persona_id=str(data.get("persona_id", "")),
            content=str(data.get("content", "")),
            scheduled_at=int(data.get("scheduled_at", 0)),
            status=str(data.get("status", STATUS_SCHEDULED)),
            reason=data.get("reason"),
            metadata=dict(data.get("metadata") or {}),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
        )


class MessageStore(ABC):
    """Durable message log, one stream per conversation."""

    @abstractmethod
    def get_recent_messages(self, key: str, limit: int, min_timestamp: int) -> list[ChatMessage]:
        """Messages at or after ``min_timestamp``, newest first, at most ``limit``."""

    @abstractmethod
    def persist_messages(self, key: str, parent_key: str | None, messages: list[ChatMessage]) -> None:
        """Insert or replace messages by id."""

    @abstractmethod
    def mark_responded(self, key: str, message_id: str) -> None:
        """Flag a stored message as answered."""


class ProactiveStore(ABC):
    """Durable rows for scheduled proactive messages."""

    @abstractmethod
    def insert(
        self,
        *,
        public_id: str,
        conversation_key: str,
        persona_id: str,
        content: str,
        scheduled_at: int,
        reason: str | None,
        metadata: dict[str, Any] | None,
    ) -> int:
        """Insert a scheduled row and return its internal id."""

    @abstractmethod
    def set_public_id(self, internal_id: int, public_id: str) -> None: ...

    @abstractmethod
    def get_by_public_id(self, public_id: str) -> ProactiveMessage | None: ...

    @abstractmethod
    def list_by_status(self, key: str | None, status: str) -> list[ProactiveMessage]:
        """Rows in ``status`` (for one conversation, or all when key is None), by scheduled time."""

    @abstractmethod
    def list_due(self, now_ms: int) -> list[ProactiveMessage]:
        """Scheduled rows with ``scheduled_at <= now_ms``, by scheduled time."""

    @abstractmethod
    def update_status(self, public_id: str, status: str) -> bool:
        """Move a scheduled row to ``status``. Rows in a terminal state are not touched."""

    @abstractmethod
    def reschedule(
        self,
        public_id: str,
        scheduled_at: int,
        content: str | None = None,
        reason: str | None = None,
    ) -> bool: ...

    @abstractmethod
    def update_content(self, public_id: str, content: str) -> bool: ...
