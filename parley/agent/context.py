"""Bounded per-conversation context windows backed by the durable message log."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from cachetools import LRUCache
from loguru import logger

from parley.bus.events import ChatMessage, ConversationContext
from parley.storage.base import MessageStore
from parley.utils.helpers import now_ms


class ContextStore:
    """
    Keeps the most recent messages of each conversation in an LRU cache.

    The durable store is the source of truth: updates are persisted first and
    the window is then reloaded from it. Windows are ordered oldest first and
    bounded by message count and age.
    """

    def __init__(
        self,
        store: MessageStore,
        max_messages: int = 20,
        max_age_s: int = 3600,
        cache_size: int = 500,
        limit_resolver: Callable[[str], int | None] | None = None,
    ):
        self.store = store
        self.max_messages = max_messages
        self.max_age_s = max_age_s
        self._limit_resolver = limit_resolver
        self._cache: LRUCache[str, ConversationContext] = LRUCache(maxsize=cache_size)

    def max_messages_for(self, key: str) -> int:
        """Per-conversation window size, falling back to the global default."""
        if self._limit_resolver is not None:
            override = self._limit_resolver(key)
            if override and override > 0:
                return override
        return self.max_messages

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def cached(self, key: str) -> ConversationContext | None:
        return self._cache.get(key)

    def _min_timestamp(self) -> int:
        return now_ms() - self.max_age_s * 1000

    def _bound(self, key: str, messages: list[ChatMessage]) -> list[ChatMessage]:
        cutoff = self._min_timestamp()
        fresh = [m for m in messages if m.timestamp >= cutoff]
        fresh.sort(key=lambda m: m.timestamp)
        limit = self.max_messages_for(key)
        return fresh[-limit:] if limit > 0 else []

    async def _load_window(self, key: str) -> list[ChatMessage]:
        newest_first = await asyncio.to_thread(
            self.store.get_recent_messages,
            key,
            self.max_messages_for(key),
            self._min_timestamp(),
        )
        return self._bound(key, list(reversed(newest_first)))

    async def get_context(self, key: str) -> ConversationContext | None:
        """Cached window for ``key``, rehydrated from the durable store on a miss."""
        context = self._cache.get(key)
        if context is not None:
            return context

        try:
            messages = await self._load_window(key)
        except Exception as e:
            logger.error(f"Failed to load context for {key}: {e}")
            return None
        if not messages:
            return None

        context = ConversationContext(
            conversation_key=key,
            parent_key=messages[-1].parent_key,
            messages=messages,
            last_updated_at=now_ms(),
        )
        self._cache[key] = context
        logger.debug(f"Rehydrated context for {key} with {len(messages)} messages")
        return context

    async def update_context(
        self,
        key: str,
        parent_key: str | None,
        new_messages: list[ChatMessage],
    ) -> ConversationContext:
        """Persist ``new_messages`` and refresh the cached window."""
        messages: list[ChatMessage] | None = None
        try:
            await asyncio.to_thread(self.store.persist_messages, key, parent_key, new_messages)
            messages = await self._load_window(key)
        except Exception as e:
            logger.error(f"Failed to persist context for {key}; keeping window in memory: {e}")

        if messages is None:
            previous = self._cache.get(key)
            merged: dict[str, ChatMessage] = {}
            for message in (previous.messages if previous else []):
                merged[message.id] = message
            for message in new_messages:
                merged[message.id] = message
            messages = self._bound(key, list(merged.values()))

        previous = self._cache.get(key)
        context = ConversationContext(
            conversation_key=key,
            parent_key=parent_key or (previous.parent_key if previous else None),
            messages=messages,
            last_updated_at=now_ms(),
        )
        self._cache[key] = context
        return context

    async def mark_responded(self, key: str, message_id: str) -> bool:
        """Flag a message as answered. Returns whether it was in the cached window."""
        found = False
        context = self._cache.get(key)
        if context is not None:
            message = context.find(message_id)
            if message is not None:
                message.responded_to = True
                found = True

        try:
            await asyncio.to_thread(self.store.mark_responded, key, message_id)
        except Exception as e:
            logger.warning(f"Failed to persist responded flag for {message_id} in {key}: {e}")
        return found
