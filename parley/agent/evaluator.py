"""LLM evaluation stage for batches the scorer could not decide."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from parley.agent.directives import (
    EmotionDelta,
    ProactiveDraft,
    parse_cancel_ids,
    parse_emotion_deltas,
    parse_proactive_drafts,
)
from parley.agent.emotions import EmotionSnapshot
from parley.agent.prompts import BuiltPrompt, build_evaluation_prompt
from parley.bus.events import ChatMessage
from parley.config.schema import PersonaConfig, RetryPolicy
from parley.errors import LLMRetryError, ModelCallError
from parley.proactive.scheduler import ProactiveSummary
from parley.providers.gateway import EVAL, ModelGateway
from parley.utils.retry import retry_with_backoff
from parley.utils.structured_json import parse_structured_json

MIN_THRESHOLD = 0.01
MAX_THRESHOLD = 1.0


@dataclass
class EvaluationResult:
    response_score: float
    reason: str
    should_respond: bool
    target_message_id: str | None = None
    effective_threshold: float = 0.0
    emotion_deltas: list[EmotionDelta] = field(default_factory=list)
    proactive_messages: list[ProactiveDraft] = field(default_factory=list)
    cancel_schedule_ids: list[str] = field(default_factory=list)


def effective_threshold(base_threshold: float, responsiveness: float) -> float:
    """Higher responsiveness lowers the bar. Non-positive responsiveness saturates at the maximum."""
    if not math.isfinite(responsiveness) or responsiveness <= 0:
        return MAX_THRESHOLD
    return max(MIN_THRESHOLD, min(MAX_THRESHOLD, base_threshold / responsiveness))


def _valid_score(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and 0.0 <= value <= 1.0


def parse_evaluation(
    raw: str,
    batch_ids: set[str],
    threshold: float,
    delta_caps: dict[str, int] | None = None,
) -> EvaluationResult | None:
    """Validate an evaluator reply. Returns None when the payload is unusable."""
    parsed = parse_structured_json(raw, context="evaluator")
    if not parsed.ok:
        return None
    data = parsed.value
    if not isinstance(data, dict):
        logger.warning(f"Evaluator returned {type(data).__name__}, expected an object")
        return None

    score = data.get("response_score")
    if not _valid_score(score):
        logger.warning(f"Evaluator returned invalid response_score: {score!r}")
        return None
    reason = data.get("reason", "")
    if not isinstance(reason, str):
        logger.warning(f"Evaluator returned non-string reason: {reason!r}")
        return None

    should_respond = data.get("should_respond")
    if not isinstance(should_respond, bool):
        should_respond = score >= threshold

    target_raw = data.get("target_message_id")
    target: str | None = None
    if isinstance(target_raw, (int, float)) and not isinstance(target_raw, bool):
        target = str(int(target_raw)) if float(target_raw).is_integer() else str(target_raw)
    elif isinstance(target_raw, str) and target_raw.strip():
        target = target_raw.strip()
    if target is not None and (target not in batch_ids or not should_respond or score < threshold):
        logger.debug(f"Clearing evaluator target {target}")
        target = None

    return EvaluationResult(
        response_score=float(score),
        reason=reason,
        should_respond=should_respond,
        target_message_id=target,
        effective_threshold=threshold,
        emotion_deltas=parse_emotion_deltas(data.get("emotion_delta"), delta_caps),
        proactive_messages=parse_proactive_drafts(data.get("proactive_messages")),
        cancel_schedule_ids=parse_cancel_ids(data.get("cancel_schedule_ids")),
    )


class Evaluator:
    """Asks the "eval" model whether a batch deserves a reply."""

    def __init__(
        self,
        gateway: ModelGateway,
        base_threshold: float = 0.35,
        retry: RetryPolicy | None = None,
        lookback: int = 10,
        delta_caps: dict[str, int] | None = None,
    ):
        self.gateway = gateway
        self.base_threshold = base_threshold
        self.retry = retry or RetryPolicy(max_attempts=4, base_delay_s=2.0, max_delay_s=30.0)
        self.lookback = lookback
        self.delta_caps = delta_caps

    async def evaluate(
        self,
        key: str,
        batch: list[ChatMessage],
        context_messages: list[ChatMessage],
        persona: PersonaConfig,
        responsiveness: float = 1.0,
        bot_user_id: str = "",
        emotion_snapshots: list[EmotionSnapshot] | None = None,
        pending: list[ProactiveSummary] | None = None,
        delta_caps: dict[str, int] | None = None,
    ) -> EvaluationResult | None:
        """
        Evaluate ``batch`` against the conversation so far.

        Returns None when the model is not configured or its reply is
        unusable. Raises LLMRetryError when every attempt failed.
        """
        if not self.gateway.is_configured(EVAL):
            logger.error("Evaluator model is not configured (model and api key or api base required)")
            return None

        threshold = effective_threshold(self.base_threshold, responsiveness)
        logger.debug(f"[{key}] responsiveness={responsiveness}, effective threshold={threshold:.2f}")

        route = self.gateway.route(EVAL)
        prompt = build_evaluation_prompt(
            persona=persona,
            context_messages=context_messages,
            batch=batch,
            bot_user_id=bot_user_id,
            lookback=self.lookback,
            emotion_snapshots=emotion_snapshots,
            pending=pending,
            effective_threshold=threshold,
            temperature=route.temperature if route else 0.8,
            max_tokens=route.max_tokens if route else 4096,
        )
        raw = await self._call_with_retry(prompt)

        caps = delta_caps if delta_caps is not None else self.delta_caps
        result = parse_evaluation(raw, {m.id for m in batch}, threshold, caps)
        if result is not None:
            logger.info(
                f"[{key}] evaluation: response_score={result.response_score:.2f}, "
                f"should_respond={result.should_respond}, target={result.target_message_id}"
            )
        return result

    async def _call_with_retry(self, prompt: BuiltPrompt) -> str:
        async def _attempt(attempt: int) -> str:
            raw = await self.gateway.complete(
                EVAL, None, prompt.messages, prompt.temperature, prompt.max_tokens
            )
            if raw is None:
                raise ModelCallError("LLM evaluator returned null response.")
            trimmed = raw.strip()
            if not trimmed:
                raise ModelCallError("LLM evaluator returned empty response.")
            return trimmed

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(f"Evaluator LLM call failed (attempt {attempt}): {error}; retrying in {delay:.1f}s")

        try:
            return await retry_with_backoff(
                _attempt,
                max_attempts=self.retry.max_attempts,
                base_delay_s=self.retry.base_delay_s,
                max_delay_s=self.retry.max_delay_s,
                on_retry=_on_retry,
            )
        except Exception as e:
            logger.error(f"Evaluator LLM retries exhausted: {e}")
            raise LLMRetryError("evaluator", self.retry.max_attempts, e) from e
