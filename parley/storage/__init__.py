"""Durable stores."""

from parley.storage.base import MessageStore, ProactiveMessage, ProactiveStore
from parley.storage.message_log import JsonlMessageStore
from parley.storage.proactive_rows import JsonProactiveStore

__all__ = [
    "MessageStore",
    "ProactiveStore",
    "ProactiveMessage",
    "JsonlMessageStore",
    "JsonProactiveStore",
]
