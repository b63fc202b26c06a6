"""Agent core: context, decisions, replies and the conversation loop."""

from parley.agent.context import ContextStore
from parley.agent.decision import BatchDecision, DecisionEngine
from parley.agent.evaluator import EvaluationResult, Evaluator
from parley.agent.loop import ConversationLoop
from parley.agent.responder import ResponderResult, ResponseGenerator, ResponseSegment
from parley.agent.scorer import MessageScorer, ScoreDecision, ScoringResult, aggregate_decision

__all__ = [
    "ContextStore",
    "BatchDecision",
    "DecisionEngine",
    "EvaluationResult",
    "Evaluator",
    "ConversationLoop",
    "ResponderResult",
    "ResponseGenerator",
    "ResponseSegment",
    "MessageScorer",
    "ScoreDecision",
    "ScoringResult",
    "aggregate_decision",
]
