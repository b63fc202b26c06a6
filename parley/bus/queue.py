"""Per-conversation debounce queue that turns message bursts into batches."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from parley.bus.events import ChatMessage

FlushCallback = Callable[[str, list[ChatMessage]], Awaitable[None]]


@dataclass
class _KeyBuffer:
    messages: list[ChatMessage] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class IntakeQueue:
    """
    Buffers incoming messages per conversation key and flushes them as a batch.

    A batch is flushed when the buffer reaches ``buffer_size`` or when the
    conversation stays quiet for the adaptive idle window. Each new message
    re-arms the timer, and the window grows with the buffer so busy
    conversations are answered in larger chunks.
    """

    def __init__(
        self,
        buffer_size: int = 10,
        base_window_s: float = 5.0,
        max_window_s: float = 30.0,
        backoff_multiplier: float = 1.5,
        jitter_range: tuple[float, float] = (1.2, 1.43),
        rng: random.Random | None = None,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self.base_window_s = base_window_s
        self.max_window_s = max_window_s
        self.backoff_multiplier = backoff_multiplier
        self.jitter_range = jitter_range
        self._rng = rng or random.Random()
        self._buffers: dict[str, _KeyBuffer] = {}
        self._callback: FlushCallback | None = None
        self._deliveries: set[asyncio.Task[None]] = set()

    def set_flush_callback(self, callback: FlushCallback) -> None:
        self._callback = callback

    def compute_window(self, n: int, jitter: float | None = None) -> float:
        """Idle window in seconds for a buffer holding ``n`` messages."""
        if jitter is None:
            low, high = self.jitter_range
            jitter = self._rng.uniform(low, high)
        window = self.base_window_s * jitter
        if n > 1:
            window *= self.backoff_multiplier ** (n - 1)
        return min(self.max_window_s, window)

    def pending(self, key: str) -> int:
        entry = self._buffers.get(key)
        return len(entry.messages) if entry else 0

    def add_message(self, message: ChatMessage) -> None:
        """Buffer a message; must be called from the running event loop."""
        key = message.conversation_key
        entry = self._buffers.setdefault(key, _KeyBuffer())
        entry.messages.append(message)
        size = len(entry.messages)

        if size >= self.buffer_size:
            logger.debug(f"Buffer full for {key} ({size} messages), flushing")
            self._spawn_delivery(key, self._take(key))
            return

        if entry.timer is not None:
            entry.timer.cancel()
        window = self.compute_window(size)
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(window, self._on_timer, key)
        logger.debug(f"Buffered message {message.id} for {key}: {size} pending, window={window:.2f}s")

    async def flush(self, key: str) -> None:
        """Flush one conversation now. Safe to call when nothing is buffered."""
        batch = self._take(key)
        if batch:
            await self._deliver(key, batch)

    async def flush_all(self) -> None:
        """Flush every buffered conversation and wait for in-flight deliveries."""
        keys = list(self._buffers.keys())
        batches = [(key, self._take(key)) for key in keys]
        in_flight = list(self._deliveries)
        await asyncio.gather(
            *(self._deliver(key, batch) for key, batch in batches if batch),
            *in_flight,
            return_exceptions=True,
        )

    def close(self) -> None:
        """Cancel all idle timers without flushing."""
        for entry in self._buffers.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._buffers.clear()

    def _take(self, key: str) -> list[ChatMessage]:
        entry = self._buffers.pop(key, None)
        if entry is None:
            return []
        if entry.timer is not None:
            entry.timer.cancel()
        return entry.messages

    def _on_timer(self, key: str) -> None:
        batch = self._take(key)
        if batch:
            logger.debug(f"Idle window elapsed for {key}, flushing {len(batch)} messages")
            self._spawn_delivery(key, batch)

    def _spawn_delivery(self, key: str, batch: list[ChatMessage]) -> None:
        if not batch:
            return
        task = asyncio.create_task(self._deliver(key, batch))
        self._deliveries.add(task)
        task.add_done_callback(lambda done_task: self._deliveries.discard(done_task))

    async def _deliver(self, key: str, batch: list[ChatMessage]) -> None:
        if self._callback is None:
            logger.warning(f"No flush callback registered; dropping {len(batch)} messages for {key}")
            return
        try:
            await self._callback(key, batch)
        except Exception as exc:
            logger.error(f"Flush callback failed for {key} ({len(batch)} messages dropped): {exc}")
