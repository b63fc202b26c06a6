"""Message intake: event types and the batching queue."""

from parley.bus.events import ChatMessage, ConversationContext, MessageReference
from parley.bus.queue import IntakeQueue

__all__ = ["ChatMessage", "ConversationContext", "MessageReference", "IntakeQueue"]
