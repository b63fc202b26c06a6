"""Chat platform integrations."""

from parley.channels.base import BaseChatClient

__all__ = ["BaseChatClient"]
