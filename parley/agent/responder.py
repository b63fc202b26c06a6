"""Reply generation through the "main" model."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from parley.agent.context import ContextStore
from parley.agent.directives import (
    EmotionDelta,
    ProactiveDraft,
    parse_cancel_ids,
    parse_emotion_deltas,
    parse_proactive_drafts,
)
from parley.agent.emotions import EmotionSnapshot
from parley.agent.prompts import BuiltPrompt, build_response_prompt
from parley.bus.events import ChatMessage
from parley.config.schema import LanguageConfig, PersonaConfig, RetryPolicy
from parley.errors import LLMRetryError, ModelCallError
from parley.proactive.scheduler import ProactiveSummary
from parley.providers.gateway import MAIN, ModelGateway
from parley.utils.retry import retry_with_backoff
from parley.utils.structured_json import parse_structured_json

AI_DISCLAIMER = "as an ai language model"


@dataclass
class ResponseSegment:
    sequence: int
    delay_ms: int
    content: str


@dataclass
class ResponderResult:
    segments: list[ResponseSegment]
    emotion_deltas: list[EmotionDelta] = field(default_factory=list)
    proactive_messages: list[ProactiveDraft] = field(default_factory=list)
    cancel_schedule_ids: list[str] = field(default_factory=list)
    structured: bool = True


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_segments(entries: list[Any]) -> list[ResponseSegment]:
    """Valid segments sorted by sequence. Entries without usable content are dropped."""
    segments: list[ResponseSegment] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        sequence = _number(entry.get("sequence", index + 1))
        if sequence is None:
            continue
        delay = _number(entry.get("delay_ms", 0))
        segments.append(
            ResponseSegment(
                sequence=max(1, int(round(sequence))),
                delay_ms=int(round(delay)) if delay is not None and delay >= 0 else 0,
                content=content.strip(),
            )
        )
    segments.sort(key=lambda s: s.sequence)
    return segments


def parse_response(raw: str, delta_caps: dict[str, int] | None = None) -> ResponderResult:
    """
    Parse a structured reply; falls back to one segment holding the raw text.

    Accepts ``{"messages": [...], ...}`` or a bare array of segments.
    """
    cleaned = raw.strip()
    parsed = parse_structured_json(cleaned, context="responder")
    data: dict[str, Any] = {}
    entries: Any = None
    if parsed.ok:
        if isinstance(parsed.value, list):
            entries = parsed.value
        elif isinstance(parsed.value, dict):
            data = parsed.value
            entries = data.get("messages")

    segments = parse_segments(entries) if isinstance(entries, list) else []
    if not segments:
        logger.warning("Failed to parse structured response from LLM. Falling back to single message.")
        return ResponderResult(
            segments=[ResponseSegment(sequence=1, delay_ms=0, content=cleaned)],
            structured=False,
        )

    return ResponderResult(
        segments=segments,
        emotion_deltas=parse_emotion_deltas(data.get("emotion_delta"), delta_caps),
        proactive_messages=parse_proactive_drafts(data.get("proactive_messages")),
        cancel_schedule_ids=parse_cancel_ids(data.get("cancel_schedule_ids")),
    )


class ResponseGenerator:
    """Builds the reply prompt, calls the model, and parses the segments."""

    def __init__(
        self,
        gateway: ModelGateway,
        context_store: ContextStore,
        retry: RetryPolicy | None = None,
        delta_caps: dict[str, int] | None = None,
    ):
        self.gateway = gateway
        self.context_store = context_store
        self.retry = retry or RetryPolicy()
        self.delta_caps = delta_caps

    async def generate_response(
        self,
        key: str,
        persona: PersonaConfig,
        language: LanguageConfig | None = None,
        target: ChatMessage | None = None,
        emotion_snapshots: list[EmotionSnapshot] | None = None,
        pending: list[ProactiveSummary] | None = None,
        bot_user_id: str = "",
        language_override: str | None = None,
        delta_caps: dict[str, int] | None = None,
    ) -> ResponderResult | None:
        """
        Generate a reply for conversation ``key``.

        Returns None when the main model is not configured, the conversation
        has no context, or the model produced nothing usable. Raises
        LLMRetryError when every attempt failed.
        """
        if not self.gateway.is_configured(MAIN):
            logger.error("Main model is not configured (model and api key or api base required)")
            return None
        if not persona.system_template.strip():
            logger.error(f"Persona {persona.name} has no system template")
            return None

        context = await self.context_store.get_context(key)
        if context is None or not context.messages:
            logger.error(f"No context found for {key}. Cannot generate response.")
            return None

        language = language or LanguageConfig()
        caps = delta_caps if delta_caps is not None else self.delta_caps
        route = self.gateway.route(MAIN)
        prompt = build_response_prompt(
            persona=persona,
            context_messages=context.messages,
            bot_user_id=bot_user_id,
            language=language_override or language.primary,
            fallback_language=language.fallback,
            auto_detect=language.auto_detect,
            target=target,
            emotion_snapshots=emotion_snapshots,
            pending=pending,
            delta_caps=caps,
            temperature=route.temperature if route else 1.1,
            max_tokens=route.max_tokens if route else 8192,
        )
        raw = await self._call_with_retry(prompt)

        if AI_DISCLAIMER in raw.lower():
            logger.warning("LLM response contained boilerplate AI disclaimer. Discarding.")
            return None

        result = parse_response(raw, caps)
        logger.info(f"[{key}] generated {len(result.segments)} segment(s) (structured={result.structured})")
        return result

    async def _call_with_retry(self, prompt: BuiltPrompt) -> str:
        async def _attempt(attempt: int) -> str:
            raw = await self.gateway.complete(
                MAIN, None, prompt.messages, prompt.temperature, prompt.max_tokens
            )
            if raw is None or not raw.strip():
                raise ModelCallError("LLM responder returned an empty response.")
            return raw.strip()

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(f"Responder LLM call failed (attempt {attempt}): {error}; retrying in {delay:.1f}s")

        try:
            return await retry_with_backoff(
                _attempt,
                max_attempts=self.retry.max_attempts,
                base_delay_s=self.retry.base_delay_s,
                max_delay_s=self.retry.max_delay_s,
                on_retry=_on_retry,
            )
        except Exception as e:
            logger.error(f"Responder LLM retries exhausted: {e}")
            raise LLMRetryError("responder", self.retry.max_attempts, e) from e
