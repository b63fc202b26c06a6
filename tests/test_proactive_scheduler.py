import asyncio
import json
from pathlib import Path

import pytest

from parley.errors import ProactiveLimitError, ProactiveScheduleError
from parley.proactive.scheduler import ProactiveScheduler, encode_public_id, summarise_content
from parley.storage.base import STATUS_CANCELLED, STATUS_SCHEDULED, STATUS_SENT
from parley.storage.proactive_rows import JsonProactiveStore


def _scheduler(tmp_path: Path, max_pending: int = 2) -> ProactiveScheduler:
    return ProactiveScheduler(JsonProactiveStore(tmp_path), max_pending=max_pending)


def test_encode_public_id_pads_to_five_and_widens_past_it():
    assert encode_public_id(1) == "00001"
    assert encode_public_id(35) == "0000z"
    assert encode_public_id(36) == "00010"
    assert encode_public_id(36**5 - 1) == "zzzzz"
    assert encode_public_id(36**5 + 37) == "100011"
    assert encode_public_id(36**5 + 37) != encode_public_id(37)
    with pytest.raises(ValueError):
        encode_public_id(-1)


def test_summarise_content_truncates_long_text():
    assert summarise_content("  short  ") == "short"
    long_text = "x" * 100
    assert summarise_content(long_text) == "x" * 77 + "..."


def test_schedule_assigns_public_ids_and_persists(tmp_path: Path):
    scheduler = _scheduler(tmp_path)

    row = asyncio.run(
        scheduler.schedule("chan-1", "default", "morning check-in", 1_700_000_000_000, reason="follow up")
    )

    assert row.public_id == "00001"
    assert row.status == STATUS_SCHEDULED
    assert row.reason == "follow up"
    stored = json.loads((tmp_path / "proactive.json").read_text(encoding="utf-8"))
    assert stored["next_id"] == 2
    assert stored["rows"]["1"]["public_id"] == "00001"


def test_third_pending_message_is_rejected(tmp_path: Path):
    scheduler = _scheduler(tmp_path)

    async def scenario() -> None:
        await scheduler.schedule("chan-1", "default", "one", 1_000)
        await scheduler.schedule("chan-1", "default", "two", 2_000)
        with pytest.raises(ProactiveLimitError) as excinfo:
            await scheduler.schedule("chan-1", "default", "three", 3_000)
        assert excinfo.value.pending == 2
        await scheduler.schedule("chan-2", "default", "other conversation", 3_000)

    asyncio.run(scenario())

    assert len(asyncio.run(scheduler.list_pending("chan-1"))) == 2


def test_schedule_rejects_non_finite_times(tmp_path: Path):
    scheduler = _scheduler(tmp_path)

    with pytest.raises(ProactiveScheduleError):
        asyncio.run(scheduler.schedule("chan-1", "default", "bad", float("inf")))
    with pytest.raises(ProactiveScheduleError):
        asyncio.run(scheduler.schedule("chan-1", "default", "bad", True))


def test_cancelling_sent_message_is_a_no_op(tmp_path: Path):
    scheduler = _scheduler(tmp_path)

    async def scenario() -> None:
        sent = await scheduler.schedule("chan-1", "default", "hello", 1_000)
        pending = await scheduler.schedule("chan-1", "default", "later", 5_000)
        assert await scheduler.mark_status(sent.public_id, STATUS_SENT)

        assert await scheduler.cancel([sent.public_id.upper(), pending.public_id, "zzzzz", ""]) == 1
        assert (await scheduler.get(sent.public_id)).status == STATUS_SENT
        assert (await scheduler.get(pending.public_id)).status == STATUS_CANCELLED
        assert await scheduler.cancel([pending.public_id]) == 0

    asyncio.run(scenario())


def test_due_rows_reschedule_and_content_updates(tmp_path: Path):
    scheduler = _scheduler(tmp_path, max_pending=5)

    async def scenario() -> None:
        early = await scheduler.schedule("chan-1", "default", "early", 1_000)
        late = await scheduler.schedule("chan-2", "default", "late", 9_000)
        assert [r.public_id for r in await scheduler.list_due(5_000)] == [early.public_id]

        assert await scheduler.reschedule(late.public_id, 2_000, new_content="sooner")
        assert await scheduler.update_content(early.public_id, "early, edited")
        due = await scheduler.list_due(5_000)
        assert [(r.public_id, r.content) for r in due] == [
            (early.public_id, "early, edited"),
            (late.public_id, "sooner"),
        ]

        summaries = await scheduler.pending_summaries("chan-2")
        assert summaries[0].id == late.public_id
        assert summaries[0].content_preview == "sooner"

        with pytest.raises(ProactiveScheduleError):
            await scheduler.mark_status(early.public_id, "delivered")

    asyncio.run(scenario())
