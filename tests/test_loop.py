import asyncio
from pathlib import Path
from typing import Any

from parley.agent.emotions import MemoryEmotionSink
from parley.agent.loop import ConversationLoop
from parley.bus.events import ChatMessage
from parley.channels.base import BaseChatClient
from parley.config.schema import Config, ModelRouteConfig
from parley.providers.base import LLMProvider, LLMResponse
from parley.providers.gateway import EVAL, MAIN, ModelGateway
from parley.storage.base import STATUS_CANCELLED, STATUS_SCHEDULED, STATUS_SENT
from parley.utils.helpers import now_ms


class ScriptedProvider(LLMProvider):
    def __init__(self, replies: list[str]):
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
        return LLMResponse(content=self.replies.pop(0) if self.replies else "")

    def get_default_model(self) -> str:
        return "scripted"


class RecordingClient(BaseChatClient):
    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []

    async def send_text(self, conversation_key: str, content: str) -> str | None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((conversation_key, content))
        return f"sent-{len(self.sent)}"

    async def send_typing(self, conversation_key: str) -> None:
        self.typing.append(conversation_key)


def _loop(
    tmp_path: Path,
    main_replies: list[str] | None = None,
    eval_replies: list[str] | None = None,
    client: RecordingClient | None = None,
    **overrides: Any,
):
    no_wait = {"max_attempts": 1, "base_delay_s": 0, "max_delay_s": 0}
    config = Config.model_validate(
        {
            "bot_user_id": "bot-1",
            "storage": {"data_dir": str(tmp_path)},
            "retry": {"evaluator": no_wait, "responder": no_wait},
            **overrides,
        }
    )
    main = ScriptedProvider(main_replies or [])
    evaluator = ScriptedProvider(eval_replies or [])
    gateway = ModelGateway(
        {
            MAIN: ModelRouteConfig(model="main-model", api_key="sk-test"),
            EVAL: ModelRouteConfig(model="eval-model", api_key="sk-test"),
        },
        {MAIN: main, EVAL: evaluator},
    )
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    loop = ConversationLoop.from_config(
        config,
        client or RecordingClient(),
        gateway=gateway,
        emotion_sink=MemoryEmotionSink(),
        sleep=fake_sleep,
    )
    return loop, main, evaluator, sleeps


def _msg(message_id: str, content: str, **kwargs: Any) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        conversation_key="chan-1",
        parent_key="guild-1",
        author_id=kwargs.pop("author_id", "u1"),
        author_name=kwargs.pop("author_name", "alice"),
        content=content,
        **kwargs,
    )


async def _deliver(loop: ConversationLoop, *messages: ChatMessage) -> None:
    for message in messages:
        await loop.handle_inbound(message)
    await loop.queue.flush("chan-1")


def test_mention_is_answered_with_segments_and_directives(tmp_path: Path):
    reply = """```json
    {
      "messages": [
        {"sequence": 1, "delay_ms": 1500, "content": "hey!"},
        {"sequence": 2, "delay_ms": 0, "content": "what's up"}
      ],
      "proactive_messages": [{"send_at": "2030-01-01T00:00:00Z", "content": "remember me?"}]
    }
    ```"""
    loop, main, evaluator, sleeps = _loop(tmp_path, main_replies=[reply])
    message = _msg("m1", "hey <@bot-1> are you around", mentioned_users=["bot-1"])

    asyncio.run(_deliver(loop, message))

    assert loop.client.sent == [("chan-1", "hey!"), ("chan-1", "what's up")]
    assert loop.client.typing == ["chan-1"]
    assert sleeps == [1.5]
    assert evaluator.calls == []
    context = loop.context_store.cached("chan-1")
    assert context.find("m1").responded_to
    assert [m.content for m in context.messages if m.is_bot] == ["hey!", "what's up"]
    pending = asyncio.run(loop.scheduler.list_pending("chan-1"))
    assert [row.content for row in pending] == ["remember me?"]


def test_low_scoring_batch_is_discarded_without_model_calls(tmp_path: Path):
    loop, main, evaluator, _ = _loop(tmp_path, scoring={"discard_threshold": 0})

    asyncio.run(_deliver(loop, _msg("m1", "ok")))

    assert loop.client.sent == []
    assert main.calls == []
    assert evaluator.calls == []


def test_evaluated_batch_replies_to_evaluator_target(tmp_path: Path):
    evaluation = (
        '{"response_score": 0.6, "reason": "open invitation", "should_respond": true, '
        '"target_message_id": "m1", "emotion_delta": [{"user_id": "u1", "metric": "affinity", "delta": 4}]}'
    )
    loop, main, evaluator, _ = _loop(tmp_path, main_replies=["sure, count me in"], eval_replies=[evaluation])

    asyncio.run(_deliver(loop, _msg("m1", "anyone watching the game tonight")))

    assert len(evaluator.calls) == 1
    assert len(main.calls) == 1
    assert loop.client.sent == [("chan-1", "sure, count me in")]
    assert loop.context_store.cached("chan-1").find("m1").responded_to
    assert loop.emotion_sink.metrics_for("chan-1", "u1")["affinity"] == 4


def test_declined_evaluation_still_cancels_owned_schedules(tmp_path: Path):
    evaluation = (
        '{"response_score": 0.1, "reason": "small talk", "should_respond": false, '
        '"cancel_schedule_ids": ["00001", "00002"]}'
    )
    loop, main, _, _ = _loop(tmp_path, eval_replies=[evaluation])

    async def scenario() -> None:
        later = now_ms() + 3_600_000
        await loop.scheduler.schedule("chan-1", "default", "old plan", later)
        await loop.scheduler.schedule("chan-2", "default", "someone else's plan", later)
        await _deliver(loop, _msg("m1", "anyone watching the game tonight"))

    asyncio.run(scenario())

    assert main.calls == []
    assert loop.client.sent == []
    assert asyncio.run(loop.scheduler.get("00001")).status == STATUS_CANCELLED
    assert asyncio.run(loop.scheduler.get("00002")).status == STATUS_SCHEDULED


def test_bot_messages_are_recorded_but_not_queued(tmp_path: Path):
    loop, main, _, _ = _loop(tmp_path)

    async def scenario() -> None:
        await loop.handle_inbound(_msg("b1", "my own reply", author_id="bot-1", is_bot=True))
        assert loop.queue.pending("chan-1") == 0

    asyncio.run(scenario())

    assert loop.context_store.cached("chan-1").find("b1") is not None
    assert main.calls == []


def test_failed_sends_leave_target_unanswered(tmp_path: Path):
    loop, main, _, _ = _loop(
        tmp_path,
        main_replies=['{"messages": [{"sequence": 1, "content": "hello"}]}'],
        client=RecordingClient(fail=True),
    )

    asyncio.run(_deliver(loop, _msg("m1", "ping <@bot-1>", mentioned_users=["bot-1"])))

    assert len(main.calls) == 1
    assert not loop.context_store.cached("chan-1").find("m1").responded_to


def test_shutdown_flushes_buffered_messages(tmp_path: Path):
    loop, main, _, _ = _loop(tmp_path, main_replies=['[{"sequence": 1, "content": "bye"}]'])

    async def scenario() -> None:
        loop.start()
        await loop.handle_inbound(_msg("m1", "<@bot-1> goodnight", mentioned_users=["bot-1"]))
        await loop.shutdown()

    asyncio.run(scenario())

    assert loop.client.sent == [("chan-1", "bye")]


def test_due_proactive_messages_are_delivered_or_expired(tmp_path: Path):
    loop, _, _, _ = _loop(tmp_path, proactive={"max_pending_per_conversation": 5})
    now = now_ms()

    async def scenario() -> int:
        await loop.scheduler.schedule("chan-1", "default", "stale", now - 7 * 3600 * 1000)
        await loop.scheduler.schedule("chan-1", "default", "due one", now - 1000)
        await loop.scheduler.schedule("chan-1", "default", "future", now + 3_600_000)
        return await loop.deliver_due_proactive(now)

    delivered = asyncio.run(scenario())

    assert delivered == 1
    assert loop.client.sent == [("chan-1", "due one")]
    statuses = {code: asyncio.run(loop.scheduler.get(code)).status for code in ("00001", "00002", "00003")}
    assert statuses == {"00001": STATUS_CANCELLED, "00002": STATUS_SENT, "00003": STATUS_SCHEDULED}
    context = loop.context_store.cached("chan-1")
    assert [m.content for m in context.messages if m.is_bot] == ["due one"]


def test_proactive_send_failure_keeps_row_scheduled(tmp_path: Path):
    loop, _, _, _ = _loop(tmp_path, client=RecordingClient(fail=True))

    async def scenario() -> int:
        await loop.scheduler.schedule("chan-1", "default", "hello again", now_ms() - 1000)
        return await loop.deliver_due_proactive()

    assert asyncio.run(scenario()) == 0
    assert asyncio.run(loop.scheduler.get("00001")).status == STATUS_SCHEDULED


def test_proactive_rows_changed_while_waiting_for_the_lock_are_not_sent(tmp_path: Path):
    loop, _, _, _ = _loop(tmp_path, proactive={"max_pending_per_conversation": 5})
    listed = asyncio.Event()
    list_due = loop.scheduler.list_due

    async def list_due_and_signal(now: int):
        rows = await list_due(now)
        listed.set()
        return rows

    loop.scheduler.list_due = list_due_and_signal

    async def scenario() -> int:
        now = now_ms()
        cancelled = await loop.scheduler.schedule("chan-1", "default", "cancelled follow-up", now - 1000)
        moved = await loop.scheduler.schedule("chan-1", "default", "moved follow-up", now - 500)
        async with loop._key_lock("chan-1"):
            delivery = asyncio.create_task(loop.deliver_due_proactive(now))
            await listed.wait()
            await loop.scheduler.cancel([cancelled.public_id])
            await loop.scheduler.reschedule(moved.public_id, now + 3_600_000)
        return await delivery

    assert asyncio.run(scenario()) == 0
    assert loop.client.sent == []
    assert asyncio.run(loop.scheduler.get("00001")).status == STATUS_CANCELLED
    assert asyncio.run(loop.scheduler.get("00002")).status == STATUS_SCHEDULED


def test_conversation_locks_are_released_when_idle(tmp_path: Path):
    loop, _, _, _ = _loop(tmp_path, main_replies=['[{"sequence": 1, "content": "hi"}]'])

    asyncio.run(_deliver(loop, _msg("m1", "<@bot-1> hello", mentioned_users=["bot-1"])))

    assert loop.client.sent == [("chan-1", "hi")]
    assert loop._key_locks == {}
    assert loop._lock_holders == {}


def test_persona_emotion_thresholds_shape_relationship_hints(tmp_path: Path):
    loop, main, _, _ = _loop(
        tmp_path,
        main_replies=['[{"sequence": 1, "content": "hey you"}]'],
        personas={"default": {"name": "Parley", "emotion_thresholds": {"affinity": [-100, -99, -98, -97]}}},
    )

    asyncio.run(_deliver(loop, _msg("m1", "<@bot-1> miss me?", mentioned_users=["bot-1"])))

    prompt = "\n".join(part["content"] for part in main.calls[0])
    assert "affinity feels clingy" in prompt
    assert "trust level is cautious trust" in prompt


def test_persona_delta_caps_bound_evaluator_deltas(tmp_path: Path):
    evaluation = (
        '{"response_score": 0.1, "reason": "small talk", "should_respond": false, '
        '"emotion_delta": [{"user_id": "u1", "metric": "affinity", "delta": 9}]}'
    )
    loop, _, _, _ = _loop(
        tmp_path,
        eval_replies=[evaluation],
        personas={"default": {"name": "Parley", "emotion_delta_caps": {"affinity": 3}}},
    )

    asyncio.run(_deliver(loop, _msg("m1", "anyone watching the game tonight")))

    assert loop.emotion_sink.metrics_for("chan-1", "u1")["affinity"] == 3
