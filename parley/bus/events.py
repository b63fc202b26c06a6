"""Event types flowing from chat platforms into the runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from parley.utils.helpers import now_ms


@dataclass
class MessageReference:
    """Pointer to the message a reply was made to."""

    message_id: str | None = None
    conversation_key: str | None = None
    parent_key: str | None = None


@dataclass
class ChatMessage:
    """A chat message as seen by the runtime.

    Everything except ``responded_to`` is treated as immutable after intake.
    """

    id: str
    conversation_key: str
    author_id: str
    author_name: str
    content: str
    timestamp: int = field(default_factory=now_ms)  # epoch milliseconds
    parent_key: str | None = None
    is_bot: bool = False
    mentioned_users: list[str] = field(default_factory=list)
    mentioned_roles: list[str] = field(default_factory=list)
    mentions_everyone: bool = False
    reference: MessageReference | None = None
    has_attachments: bool = False
    has_embeds: bool = False
    responded_to: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_key": self.conversation_key,
            "parent_key": self.parent_key,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "content": self.content,
            "timestamp": self.timestamp,
            "is_bot": self.is_bot,
            "mentioned_users": list(self.mentioned_users),
            "mentioned_roles": list(self.mentioned_roles),
            "mentions_everyone": self.mentions_everyone,
            "reference": (
                {
                    "message_id": self.reference.message_id,
                    "conversation_key": self.reference.conversation_key,
                    "parent_key": self.reference.parent_key,
                }
                if self.reference
                else None
            ),
            "has_attachments": self.has_attachments,
            "has_embeds": self.has_embeds,
            "responded_to": self.responded_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        reference_raw = data.get("reference")
        reference = None
        if isinstance(reference_raw, dict):
            reference = MessageReference(
                message_id=reference_raw.get("message_id"),
                conversation_key=reference_raw.get("conversation_key"),
                parent_key=reference_raw.get("parent_key"),
            )
        return cls(
            id=str(data["id"]),
            conversation_key=str(data["conversation_key"]),
            parent_key=data.get("parent_key"),
            author_id=str(data.get("author_id", "")),
            author_name=str(data.get("author_name", "")),
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp", 0)),
            is_bot=bool(data.get("is_bot", False)),
            mentioned_users=[str(v) for v in data.get("mentioned_users") or []],
            mentioned_roles=[str(v) for v in data.get("mentioned_roles") or []],
            mentions_everyone=bool(data.get("mentions_everyone", False)),
            reference=reference,
            has_attachments=bool(data.get("has_attachments", False)),
            has_embeds=bool(data.get("has_embeds", False)),
            responded_to=bool(data.get("responded_to", False)),
        )


@dataclass
class ConversationContext:
    """Rolling window of recent messages for one conversation, oldest first."""

    conversation_key: str
    parent_key: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    last_updated_at: int = field(default_factory=now_ms)

    def find(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None
