"""Score -> evaluate orchestration for one flushed batch."""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from parley.agent.context import ContextStore
from parley.agent.emotions import EmotionSnapshot
from parley.agent.evaluator import EvaluationResult, Evaluator
from parley.agent.scorer import IGNORE_FLOOR, MessageScorer, ScoreDecision, ScoringResult, aggregate_decision
from parley.bus.events import ChatMessage
from parley.config.schema import DecisionConfig, PersonaConfig
from parley.errors import LLMRetryError
from parley.proactive.scheduler import ProactiveSummary


@dataclass
class BatchDecision:
    decision: ScoreDecision
    should_respond: bool
    target: ChatMessage | None = None
    scores: list[ScoringResult] = field(default_factory=list)
    evaluation: EvaluationResult | None = None
    evaluator_failed: bool = False


def strongest_message(batch: list[ChatMessage], scores: list[ScoringResult]) -> ChatMessage | None:
    """Highest-scoring message above the ignore floor; the later one wins ties."""
    by_id = {m.id: m for m in batch}
    best: tuple[float, int] | None = None
    chosen: ChatMessage | None = None
    for index, result in enumerate(scores):
        message = by_id.get(result.message_id)
        if message is None or result.score <= IGNORE_FLOOR:
            continue
        rank = (result.score, index)
        if best is None or rank > best:
            best = rank
            chosen = message
    return chosen


class DecisionEngine:
    """Decides whether a batch gets a reply and which message it targets."""

    def __init__(
        self,
        scorer: MessageScorer,
        evaluator: Evaluator,
        context_store: ContextStore,
        respond_threshold: float,
        discard_threshold: float,
        config: DecisionConfig | None = None,
    ):
        self.scorer = scorer
        self.evaluator = evaluator
        self.context_store = context_store
        self.respond_threshold = respond_threshold
        self.discard_threshold = discard_threshold
        self.config = config or DecisionConfig()

    async def decide(
        self,
        key: str,
        batch: list[ChatMessage],
        persona: PersonaConfig,
        responsiveness: float = 1.0,
        bot_user_id: str = "",
        emotion_snapshots: list[EmotionSnapshot] | None = None,
        pending: list[ProactiveSummary] | None = None,
        delta_caps: dict[str, int] | None = None,
    ) -> BatchDecision:
        context = await self.context_store.get_context(key)
        batch_ids = {m.id for m in batch}
        history = [m for m in (context.messages if context else []) if m.id not in batch_ids]

        scores = self.scorer.score_messages(key, batch, history)
        decision = aggregate_decision(scores, self.respond_threshold, self.discard_threshold)
        logger.info(f"[{key}] batch of {len(batch)} scored -> {decision.value}")

        if decision == ScoreDecision.DISCARD:
            return BatchDecision(decision=decision, should_respond=False, scores=scores)

        if decision == ScoreDecision.RESPOND:
            return BatchDecision(
                decision=decision,
                should_respond=True,
                target=strongest_message(batch, scores),
                scores=scores,
            )

        evaluation: EvaluationResult | None = None
        try:
            evaluation = await self.evaluator.evaluate(
                key,
                batch,
                history,
                persona,
                responsiveness=responsiveness,
                bot_user_id=bot_user_id,
                emotion_snapshots=emotion_snapshots,
                pending=pending,
                delta_caps=delta_caps,
            )
        except LLMRetryError as e:
            logger.error(f"[{key}] evaluation failed: {e}")

        if evaluation is None:
            fallback = self.config.respond_on_evaluator_failure
            logger.warning(f"[{key}] evaluator unavailable; {'responding' if fallback else 'staying silent'}")
            return BatchDecision(
                decision=decision,
                should_respond=fallback,
                target=strongest_message(batch, scores) if fallback else None,
                scores=scores,
                evaluator_failed=True,
            )

        target = None
        if evaluation.target_message_id:
            target = next((m for m in batch if m.id == evaluation.target_message_id), None)
        return BatchDecision(
            decision=decision,
            should_respond=evaluation.should_respond,
            target=target,
            scores=scores,
            evaluation=evaluation,
        )
