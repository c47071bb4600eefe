"""Read-only statistics over history snapshots (dashboard views)."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from therapy_affect.models import Category, EmotionLabel, Observation


class TimelineBucket(BaseModel):
    """Observation counts per category within one time bucket."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    counts: dict[str, int]
    dominant: str | None = None


def category_distribution(history: Iterable[Observation]) -> dict[Category, float]:
    """Share of observations per category, in ``[0, 1]`` (empty → ``{}``)."""
    counts = Counter(o.category for o in history)
    total = sum(counts.values())
    if not total:
        return {}
    return {category: n / total for category, n in counts.most_common()}


def combined_emotion_distribution(*histories: Iterable[Observation]) -> dict[EmotionLabel, float]:
    """Cross-channel distribution with tone categories mapped onto emotions.

    Each observation counts once, weighted by its confidence.
    """
    weights: dict[EmotionLabel, float] = {}
    for history in histories:
        for observation in history:
            emotion = observation.emotion
            weights[emotion] = weights.get(emotion, 0.0) + observation.confidence
    total = sum(weights.values())
    if total <= 0:
        return {}
    return {
        emotion: weights[emotion] / total
        for emotion in EmotionLabel
        if emotion in weights
    }


def timeline(
    history: Iterable[Observation],
    bucket: timedelta = timedelta(minutes=1),
) -> list[TimelineBucket]:
    """Group *history* into fixed-width buckets aligned to the first entry."""
    if bucket <= timedelta(0):
        raise ValueError("bucket width must be positive")

    ordered = sorted(history, key=lambda o: o.timestamp)
    if not ordered:
        return []

    origin = ordered[0].timestamp
    grouped: dict[int, Counter[str]] = {}
    for observation in ordered:
        index = int((observation.timestamp - origin) / bucket)
        grouped.setdefault(index, Counter())[observation.category.value] += 1

    buckets = []
    for index in sorted(grouped):
        counts = grouped[index]
        buckets.append(
            TimelineBucket(
                start=origin + bucket * index,
                counts=dict(counts),
                dominant=counts.most_common(1)[0][0],
            )
        )
    return buckets
