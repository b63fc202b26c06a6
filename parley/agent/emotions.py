"""Relationship metrics: read-only snapshots, bucket labels, and the sink contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from parley.agent.directives import EMOTION_METRICS, EmotionDelta

METRICS = EMOTION_METRICS
MIN_VALUE = -100
MAX_VALUE = 100

BUCKET_LABELS: dict[str, list[str]] = {
    "affinity": ["Extremely distant", "Cool", "Neutral", "Warm", "Clingy"],
    "annoyance": ["Calm", "Slightly annoyed", "Annoyed", "Irritated", "Critical"],
    "trust": ["No trust", "Doubtful", "Cautious trust", "Trusting", "Fully trusting"],
    "curiosity": ["No interest", "Mild interest", "Curious", "Very interested", "Highly engaged"],
}

DEFAULT_THRESHOLDS: dict[str, list[int]] = {
    "affinity": [-60, -20, 0, 40],
    "annoyance": [-40, -10, 10, 40],
    "trust": [-50, -15, 10, 45],
    "curiosity": [-30, -5, 20, 50],
}

_TONE_PHRASES = {
    "affinity": "affinity feels {label}",
    "annoyance": "annoyance is {label}",
    "trust": "trust level is {label}",
    "curiosity": "curiosity is {label}",
}


@dataclass
class EmotionSnapshot:
    """How the persona currently feels about one user."""

    target_user_id: str
    metrics: dict[str, int] = field(default_factory=lambda: {m: 0 for m in METRICS})
    thresholds: dict[str, list[int]] | None = None


def clamp_metric(value: float) -> int:
    return int(max(MIN_VALUE, min(MAX_VALUE, round(value))))


def bucket_index(value: int, thresholds: list[int]) -> int:
    ordered = sorted(thresholds)
    for index, boundary in enumerate(ordered):
        if value < boundary:
            return index
    return len(ordered)


def describe_value(value: int, thresholds: list[int], metric: str) -> str:
    labels = BUCKET_LABELS.get(metric) or BUCKET_LABELS["affinity"]
    return labels[min(bucket_index(value, thresholds), len(labels) - 1)]


def summarize_tone(snapshot: EmotionSnapshot) -> str:
    """Bucketed wording for a snapshot; never exposes the raw numbers."""
    pieces = []
    for metric in METRICS:
        thresholds = (snapshot.thresholds or {}).get(metric) or DEFAULT_THRESHOLDS[metric]
        label = describe_value(snapshot.metrics.get(metric, 0), thresholds, metric).lower()
        pieces.append(_TONE_PHRASES[metric].format(label=label))
    return ", ".join(pieces) or "overall neutral"


class EmotionSink(ABC):
    """Owner of relationship state. The pipeline reads snapshots and forwards deltas."""

    @abstractmethod
    async def snapshots(self, key: str, user_ids: list[str]) -> list[EmotionSnapshot]: ...

    @abstractmethod
    async def apply_deltas(self, key: str, persona_id: str, deltas: list[EmotionDelta]) -> None: ...


class MemoryEmotionSink(EmotionSink):
    """Process-local relationship state, clamped to [-100, 100]."""

    def __init__(self, thresholds: dict[str, list[int]] | None = None):
        self.thresholds = thresholds
        self._state: dict[tuple[str, str], dict[str, int]] = {}

    def metrics_for(self, key: str, user_id: str) -> dict[str, int]:
        return self._state.setdefault((key, user_id), {m: 0 for m in METRICS})

    async def snapshots(self, key: str, user_ids: list[str]) -> list[EmotionSnapshot]:
        return [
            EmotionSnapshot(
                target_user_id=user_id,
                metrics=dict(self.metrics_for(key, user_id)),
                thresholds=self.thresholds,
            )
            for user_id in user_ids
        ]

    async def apply_deltas(self, key: str, persona_id: str, deltas: list[EmotionDelta]) -> None:
        for delta in deltas:
            metrics = self.metrics_for(key, delta.user_id)
            metrics[delta.metric] = clamp_metric(metrics.get(delta.metric, 0) + delta.delta)
