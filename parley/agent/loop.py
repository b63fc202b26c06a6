"""Conversation loop: the pipeline from inbound message to delivered reply."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

from loguru import logger

from parley.agent.context import ContextStore
from parley.agent.decision import DecisionEngine
from parley.agent.directives import EmotionDelta, ProactiveDraft
from parley.agent.emotions import EmotionSink
from parley.agent.evaluator import Evaluator
from parley.agent.responder import ResponseGenerator, ResponseSegment
from parley.agent.scorer import MessageScorer
from parley.bus.events import ChatMessage
from parley.bus.queue import IntakeQueue
from parley.channels.base import BaseChatClient
from parley.config.schema import Config
from parley.errors import LLMRetryError, ProactiveLimitError, ProactiveScheduleError
from parley.proactive.scheduler import ProactiveScheduler
from parley.providers.gateway import ModelGateway
from parley.storage.base import STATUS_SCHEDULED, STATUS_SENT
from parley.storage.message_log import JsonlMessageStore
from parley.storage.proactive_rows import JsonProactiveStore
from parley.utils.helpers import now_ms

Sleep = Callable[[float], Awaitable[None]]


class ConversationLoop:
    """
    Wires the intake queue, decision engine, responder and proactive
    scheduler together for one chat client.

    Nothing raised while handling a batch escapes: failures are logged and
    the conversation simply gets no reply.
    """

    def __init__(
        self,
        config: Config,
        client: BaseChatClient,
        queue: IntakeQueue,
        context_store: ContextStore,
        decision_engine: DecisionEngine,
        responder: ResponseGenerator,
        scheduler: ProactiveScheduler,
        emotion_sink: EmotionSink | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.client = client
        self.queue = queue
        self.context_store = context_store
        self.decision_engine = decision_engine
        self.responder = responder
        self.scheduler = scheduler
        self.emotion_sink = emotion_sink
        self._sleep = sleep
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}
        self._proactive_task: asyncio.Task[None] | None = None
        self._running = False
        self.queue.set_flush_callback(self.process_batch)

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: BaseChatClient,
        gateway: ModelGateway | None = None,
        emotion_sink: EmotionSink | None = None,
        data_dir: Path | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> ConversationLoop:
        """Construct every collaborator from configuration."""
        root = data_dir or config.data_path
        gateway = gateway or ModelGateway.from_config(config)
        context_store = ContextStore(
            JsonlMessageStore(root),
            max_messages=config.context.max_messages,
            max_age_s=config.context.max_age_seconds,
            cache_size=config.context.cache_size,
            limit_resolver=config.max_context_messages_for,
        )
        queue = IntakeQueue(
            buffer_size=config.buffer.size,
            base_window_s=config.buffer.base_window_s,
            max_window_s=config.buffer.max_window_s,
            backoff_multiplier=config.buffer.backoff_multiplier,
            jitter_range=(config.buffer.jitter_min, config.buffer.jitter_max),
        )
        delta_caps = config.emotions.delta_caps
        evaluator = Evaluator(
            gateway,
            base_threshold=config.decision.base_threshold,
            retry=config.retry.evaluator,
            lookback=config.decision.evaluation_lookback,
            delta_caps=delta_caps,
        )
        engine = DecisionEngine(
            MessageScorer(config.scoring, bot_user_id=config.bot_user_id),
            evaluator,
            context_store,
            respond_threshold=config.scoring.respond_threshold,
            discard_threshold=config.scoring.discard_threshold,
            config=config.decision,
        )
        responder = ResponseGenerator(gateway, context_store, retry=config.retry.responder, delta_caps=delta_caps)
        scheduler = ProactiveScheduler(
            JsonProactiveStore(root), max_pending=config.proactive.max_pending_per_conversation
        )
        return cls(
            config,
            client,
            queue,
            context_store,
            engine,
            responder,
            scheduler,
            emotion_sink=emotion_sink,
            sleep=sleep,
        )

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize work on one conversation; the lock is dropped once nobody holds or awaits it."""
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if self._lock_holders[key] == 0:
                del self._lock_holders[key]
                del self._key_locks[key]

    async def handle_inbound(self, message: ChatMessage) -> None:
        """Record an inbound message and queue it for a decision."""
        await self.context_store.update_context(message.conversation_key, message.parent_key, [message])
        if self.config.bot_user_id and message.author_id == self.config.bot_user_id:
            return
        self.queue.add_message(message)

    async def process_batch(self, key: str, batch: list[ChatMessage]) -> None:
        """Flush callback: decide, generate, deliver and apply directives."""
        async with self._key_lock(key):
            try:
                await self._process_batch(key, batch)
            except Exception as e:
                logger.exception(f"[{key}] batch processing failed: {e}")

    async def _process_batch(self, key: str, batch: list[ChatMessage]) -> None:
        persona = self.config.persona_for(key)
        persona_id = self.config.persona_id_for(key)
        override = self.config.conversation(key)

        user_ids = list(dict.fromkeys(m.author_id for m in batch if not m.is_bot))
        snapshots = []
        if self.emotion_sink is not None and self.config.emotions.enabled:
            thresholds = self.config.emotion_thresholds_for(key)
            snapshots = [
                replace(snapshot, thresholds={**thresholds, **(snapshot.thresholds or {})})
                for snapshot in await self.emotion_sink.snapshots(key, user_ids)
            ]
        delta_caps = self.config.delta_caps_for(key)
        pending = await self.scheduler.pending_summaries(key) if self.config.proactive.enabled else []

        decision = await self.decision_engine.decide(
            key,
            batch,
            persona,
            responsiveness=override.responsiveness,
            bot_user_id=self.config.bot_user_id,
            emotion_snapshots=snapshots,
            pending=pending,
            delta_caps=delta_caps,
        )
        if decision.evaluation is not None:
            await self._apply_directives(
                key,
                persona_id,
                decision.evaluation.emotion_deltas,
                decision.evaluation.proactive_messages,
                decision.evaluation.cancel_schedule_ids,
            )
        if not decision.should_respond:
            return

        try:
            await self.client.send_typing(key)
        except Exception as e:
            logger.debug(f"[{key}] typing indicator failed: {e}")

        try:
            result = await self.responder.generate_response(
                key,
                persona,
                language=self.config.language,
                target=decision.target,
                emotion_snapshots=snapshots,
                pending=await self.scheduler.pending_summaries(key) if self.config.proactive.enabled else [],
                bot_user_id=self.config.bot_user_id,
                language_override=override.language,
                delta_caps=delta_caps,
            )
        except LLMRetryError as e:
            logger.error(f"[{key}] response generation failed: {e}")
            return
        if result is None:
            return

        sent = await self._send_segments(key, persona.name, result.segments)
        if sent and decision.target is not None:
            await self.context_store.mark_responded(key, decision.target.id)
        await self._apply_directives(
            key,
            persona_id,
            result.emotion_deltas,
            result.proactive_messages,
            result.cancel_schedule_ids,
        )

    async def _send_segments(self, key: str, author_name: str, segments: list[ResponseSegment]) -> int:
        sent: list[ChatMessage] = []
        for segment in segments:
            if segment.delay_ms > 0:
                await self._sleep(segment.delay_ms / 1000.0)
            message = await self._send(key, author_name, segment.content)
            if message is not None:
                sent.append(message)
        if sent:
            await self.context_store.update_context(key, None, sent)
        return len(sent)

    async def _send(self, key: str, author_name: str, content: str) -> ChatMessage | None:
        try:
            platform_id = await self.client.send_text(key, content)
        except Exception as e:
            logger.warning(f"[{key}] failed to send message: {e}")
            return None
        return ChatMessage(
            id=platform_id or f"local-{uuid.uuid4().hex[:12]}",
            conversation_key=key,
            author_id=self.config.bot_user_id or "bot",
            author_name=author_name,
            content=content,
            is_bot=True,
        )

    async def _apply_directives(
        self,
        key: str,
        persona_id: str,
        deltas: list[EmotionDelta],
        drafts: list[ProactiveDraft],
        cancel_ids: list[str],
    ) -> None:
        if cancel_ids:
            await self._cancel_owned(key, cancel_ids)

        if self.config.proactive.enabled:
            for draft in drafts:
                await self._apply_draft(key, persona_id, draft)

        if deltas and self.emotion_sink is not None and self.config.emotions.enabled:
            try:
                await self.emotion_sink.apply_deltas(key, persona_id, deltas)
            except Exception as e:
                logger.warning(f"[{key}] failed to apply emotion deltas: {e}")

    async def _cancel_owned(self, key: str, cancel_ids: list[str]) -> None:
        owned = []
        for public_id in cancel_ids:
            row = await self.scheduler.get(public_id)
            if row is not None and row.conversation_key == key:
                owned.append(public_id)
            else:
                logger.debug(f"[{key}] ignoring cancel for unknown schedule {public_id}")
        if owned:
            await self.scheduler.cancel(owned)

    async def _apply_draft(self, key: str, persona_id: str, draft: ProactiveDraft) -> None:
        if draft.id:
            row = await self.scheduler.get(draft.id)
            if row is None or row.conversation_key != key:
                logger.debug(f"[{key}] ignoring update for unknown schedule {draft.id}")
                return
            await self.scheduler.reschedule(draft.id, draft.send_at_ms, draft.content, draft.reason)
            return
        try:
            await self.scheduler.schedule(key, persona_id, draft.content, draft.send_at_ms, reason=draft.reason)
        except ProactiveLimitError as e:
            logger.warning(f"[{key}] proactive draft rejected: {e}")
        except ProactiveScheduleError as e:
            logger.warning(f"[{key}] proactive draft invalid: {e}")

    async def deliver_due_proactive(self, now: int | None = None) -> int:
        """Send every due proactive message; returns how many were delivered."""
        current = now if now is not None else now_ms()
        max_lateness_ms = self.config.proactive.max_lateness_s * 1000
        delivered = 0
        for due in await self.scheduler.list_due(current):
            key = due.conversation_key
            async with self._key_lock(key):
                # A batch may have cancelled or moved the row while we waited.
                row = await self.scheduler.get(due.public_id)
                if row is None or row.status != STATUS_SCHEDULED or row.scheduled_at > current:
                    logger.debug(f"[{key}] proactive message {due.public_id} changed before delivery; skipping")
                    continue
                if max_lateness_ms > 0 and current - row.scheduled_at > max_lateness_ms:
                    logger.info(f"[{key}] proactive message {row.public_id} is stale; cancelling")
                    await self.scheduler.cancel([row.public_id])
                    continue
                persona = self.config.personas.get(row.persona_id) or self.config.persona_for(key)
                message = await self._send(key, persona.name, row.content)
                if message is None:
                    continue
                await self.scheduler.mark_status(row.public_id, STATUS_SENT)
                await self.context_store.update_context(key, None, [message])
                delivered += 1
                logger.info(f"[{key}] delivered proactive message {row.public_id}")
        return delivered

    async def _run_proactive(self) -> None:
        while self._running:
            try:
                await self.deliver_due_proactive()
            except Exception as e:
                logger.error(f"Proactive delivery pass failed: {e}")
            await asyncio.sleep(self.config.proactive.poll_interval_s)

    def start(self) -> None:
        """Start the proactive delivery poller. Must be called from the running loop."""
        self._running = True
        if self.config.proactive.enabled and self._proactive_task is None:
            self._proactive_task = asyncio.create_task(self._run_proactive())

    async def shutdown(self) -> None:
        """Stop polling and flush every buffered conversation."""
        self._running = False
        if self._proactive_task is not None:
            self._proactive_task.cancel()
            await asyncio.gather(self._proactive_task, return_exceptions=True)
            self._proactive_task = None
        await self.queue.flush_all()
