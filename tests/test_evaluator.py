import asyncio
import itertools
import json
import math
from typing import Any

import pytest

from parley.agent.evaluator import Evaluator, effective_threshold, parse_evaluation
from parley.bus.events import ChatMessage
from parley.config.schema import ModelRouteConfig, PersonaConfig, RetryPolicy
from parley.errors import LLMRetryError
from parley.providers.base import LLMProvider, LLMResponse
from parley.providers.gateway import EVAL, ModelGateway


class ScriptedProvider(LLMProvider):
    def __init__(self, replies: list[LLMResponse]):
        super().__init__(api_key="", api_base=None)
        self.replies = list(replies)
        self.calls: list[list[dict[str, Any]]] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        self.calls.append(messages)
        if self.replies:
            return self.replies.pop(0)
        return LLMResponse(content="Error calling LLM: timed out", finish_reason="error")

    def get_default_model(self) -> str:
        return "eval-model"


def _batch() -> list[ChatMessage]:
    return [
        ChatMessage(id="m1", conversation_key="chan-1", author_id="u1", author_name="alice", content="anyone here?"),
        ChatMessage(id="m2", conversation_key="chan-1", author_id="u2", author_name="bob", content="lol"),
    ]


def _payload(**fields: Any) -> str:
    return json.dumps(fields)


def test_effective_threshold_scales_and_saturates():
    assert effective_threshold(0.35, 1.0) == pytest.approx(0.35)
    assert effective_threshold(0.35, 2.0) == pytest.approx(0.175)
    assert effective_threshold(0.35, 0.2) == 1.0
    assert effective_threshold(0.35, 1000) == 0.01
    assert effective_threshold(0.35, 0) == 1.0
    assert effective_threshold(0.35, -1) == 1.0
    assert effective_threshold(0.35, math.nan) == 1.0


def test_parse_evaluation_accepts_valid_payload_with_directives():
    raw = _payload(
        response_score=0.8,
        reason="asked the room a question",
        should_respond=True,
        target_message_id="m1",
        emotion_delta=[
            {"user_id": "u1", "metric": "curiosity", "delta": 40, "reason": "fun question"},
            {"user_id": "u1", "metric": "jealousy", "delta": 3},
        ],
        proactive_messages=[{"send_at": "2026-01-02T03:04:05Z", "content": " check back later "}],
        cancel_schedule_ids=["ABC12", "abc12", 7],
    )

    result = parse_evaluation(raw, {"m1", "m2"}, 0.35, {"curiosity": 12})

    assert result.target_message_id == "m1"
    assert result.should_respond
    assert [(d.metric, d.delta) for d in result.emotion_deltas] == [("curiosity", 12)]
    assert result.proactive_messages[0].content == "check back later"
    assert result.proactive_messages[0].send_at_ms == 1767323045000
    assert result.cancel_schedule_ids == ["abc12"]


def test_parse_evaluation_rejects_invalid_scores_and_shapes():
    batch_ids = {"m1"}
    assert parse_evaluation(_payload(response_score=True, should_respond=True), batch_ids, 0.35) is None
    assert parse_evaluation(_payload(response_score=1.5, should_respond=True), batch_ids, 0.35) is None
    assert parse_evaluation(_payload(response_score="0.5"), batch_ids, 0.35) is None
    assert parse_evaluation(_payload(response_score=0.5, reason=42), batch_ids, 0.35) is None
    assert parse_evaluation("[0.5]", batch_ids, 0.35) is None
    assert parse_evaluation("not json at all", batch_ids, 0.35) is None


def test_parse_evaluation_defaults_missing_fields():
    result = parse_evaluation(_payload(response_score=0.5), {"m1"}, 0.35)
    assert result.reason == ""
    assert result.should_respond is True
    assert result.target_message_id is None

    numeric_target = parse_evaluation(
        _payload(response_score=0.9, should_respond=True, target_message_id=42), {"42"}, 0.35
    )
    assert numeric_target.target_message_id == "42"


@pytest.mark.parametrize(
    ("score", "should_respond", "target"),
    list(itertools.product([0.0, 0.2, 0.35, 0.6, 1.0], [True, False], ["m1", "m2", "elsewhere", None])),
)
def test_target_is_null_unless_respond_and_above_threshold(score: float, should_respond: bool, target: str | None):
    raw = _payload(response_score=score, reason="", should_respond=should_respond, target_message_id=target)

    result = parse_evaluation(raw, {"m1", "m2"}, 0.35)

    if not should_respond or score < 0.35 or target not in {"m1", "m2"}:
        assert result.target_message_id is None
    else:
        assert result.target_message_id == target


def test_evaluator_returns_none_when_model_not_configured():
    provider = ScriptedProvider([])
    gateway = ModelGateway({EVAL: ModelRouteConfig(model="eval-model")}, {EVAL: provider})

    result = asyncio.run(Evaluator(gateway).evaluate("chan-1", _batch(), [], PersonaConfig()))

    assert result is None
    assert provider.calls == []


def test_evaluator_retries_then_raises_typed_error():
    provider = ScriptedProvider([])
    gateway = ModelGateway({EVAL: ModelRouteConfig(model="eval-model", api_key="sk-test")}, {EVAL: provider})
    evaluator = Evaluator(gateway, retry=RetryPolicy(max_attempts=3, base_delay_s=0, max_delay_s=0))

    with pytest.raises(LLMRetryError, match="LLM evaluator failed after 3 attempts"):
        asyncio.run(evaluator.evaluate("chan-1", _batch(), [], PersonaConfig()))
    assert len(provider.calls) == 3


def test_evaluator_prompt_carries_batch_and_threshold():
    reply = LLMResponse(
        content='```json\n{"response_score": 0.2, "reason": "small talk", "should_respond": false}\n```'
    )
    provider = ScriptedProvider([reply])
    gateway = ModelGateway({EVAL: ModelRouteConfig(model="eval-model", api_key="sk-test")}, {EVAL: provider})

    result = asyncio.run(
        Evaluator(gateway, base_threshold=0.35).evaluate(
            "chan-1", _batch(), [], PersonaConfig(), responsiveness=0.5, bot_user_id="bot-1"
        )
    )

    assert result.should_respond is False
    assert result.effective_threshold == pytest.approx(0.7)
    system, log, schema = provider.calls[0]
    assert "response_score >= 0.70" in system["content"]
    assert log["name"] == "message_log"
    assert "message_id: m1" in log["content"] and "message_id: m2" in log["content"]
    assert "was_replied: false" in log["content"]
    assert "response_score" in schema["content"]
