"""Chat platform client contract."""

from abc import ABC, abstractmethod


class BaseChatClient(ABC):
    """
    Outbound side of a chat platform integration.

    Inbound events are delivered by the integration itself through
    ``ConversationLoop.handle_inbound``.
    """

    name: str = "base"

    @abstractmethod
    async def send_text(self, conversation_key: str, content: str) -> str | None:
        """
        Send one message.

        Returns:
            The platform id of the sent message, or None when it is unknown.
        """
        pass

    async def send_typing(self, conversation_key: str) -> None:
        """Show a typing indicator. Platforms without one may ignore this."""
        return None
