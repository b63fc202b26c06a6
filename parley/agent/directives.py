"""Side-channel directives returned by the models alongside a decision or reply."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from loguru import logger

from parley.utils.helpers import parse_iso_to_ms

EMOTION_METRICS = ("affinity", "annoyance", "trust", "curiosity")


@dataclass
class EmotionDelta:
    user_id: str
    metric: str
    delta: int
    reason: str | None = None


@dataclass
class ProactiveDraft:
    """A proactive message the model wants scheduled, or an update to one."""

    send_at_ms: int
    content: str
    id: str | None = None
    reason: str | None = None


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_emotion_deltas(value: Any, caps: dict[str, int] | None = None) -> list[EmotionDelta]:
    """Valid ``emotion_delta`` entries, rounded and clamped to the per-metric cap."""
    if not isinstance(value, list):
        return []
    deltas: list[EmotionDelta] = []
    for entry in value:
        if not isinstance(entry, dict):
            logger.debug(f"Dropping emotion delta entry: not an object ({entry!r})")
            continue
        user_id = entry.get("user_id")
        if isinstance(user_id, int) and not isinstance(user_id, bool):
            user_id = str(user_id)
        user_id = _clean_str(user_id)
        metric = entry.get("metric")
        raw_delta = entry.get("delta")
        if user_id is None or metric not in EMOTION_METRICS:
            logger.debug(f"Dropping emotion delta entry: bad user or metric ({entry!r})")
            continue
        try:
            number = float(raw_delta)
        except (TypeError, ValueError):
            number = math.nan
        if isinstance(raw_delta, bool) or not math.isfinite(number):
            logger.debug(f"Dropping emotion delta entry: delta not a number ({entry!r})")
            continue
        delta = int(round(number))
        cap = (caps or {}).get(metric)
        if cap is not None and cap >= 0:
            delta = max(-cap, min(cap, delta))
        deltas.append(EmotionDelta(user_id=user_id, metric=metric, delta=delta, reason=_clean_str(entry.get("reason"))))
    return deltas


def parse_proactive_drafts(value: Any) -> list[ProactiveDraft]:
    """Valid ``proactive_messages`` entries; ``send_at`` must be an ISO 8601 string."""
    if not isinstance(value, list):
        return []
    drafts: list[ProactiveDraft] = []
    for entry in value:
        if not isinstance(entry, dict):
            logger.debug(f"Dropping proactive entry: not an object ({entry!r})")
            continue
        send_at = entry.get("send_at")
        content = _clean_str(entry.get("content"))
        send_at_ms = parse_iso_to_ms(send_at) if isinstance(send_at, str) else None
        if send_at_ms is None or content is None:
            logger.debug(f"Dropping proactive entry: bad send_at or content ({entry!r})")
            continue
        draft_id = _clean_str(entry.get("id"))
        drafts.append(
            ProactiveDraft(
                send_at_ms=send_at_ms,
                content=content,
                id=draft_id.lower() if draft_id else None,
                reason=_clean_str(entry.get("reason")),
            )
        )
    return drafts


def parse_cancel_ids(value: Any) -> list[str]:
    """Lower-cased schedule ids from ``cancel_schedule_ids``; non-strings are dropped."""
    if not isinstance(value, list):
        return []
    ids: list[str] = []
    for item in value:
        cleaned = _clean_str(item)
        if cleaned and cleaned.lower() not in ids:
            ids.append(cleaned.lower())
    return ids
