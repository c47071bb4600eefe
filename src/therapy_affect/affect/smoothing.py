"""Temporal smoothing over a bounded per-channel observation history.

A :class:`TemporalSmoother` owns exactly one :class:`HistoryStore`.  Each new
raw ``(category, confidence)`` is blended against the most recent entries
and the *smoothed* result is appended, so the history always records what
was emitted.  Readers only ever get tuple snapshots.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Generic, Iterable, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from therapy_affect.affect.scoring import argmax_in_order
from therapy_affect.config import Settings
from therapy_affect.models import Channel, Observation

logger = structlog.get_logger(__name__)

C = TypeVar("C", bound=Enum)


# ── History store ─────────────────────────────────────────────


class HistoryStore(Generic[C]):
    """Bounded FIFO of observations in chronological order."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"History capacity must be >= 1, got {capacity}")
        self._entries: deque[Observation] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, observation: Observation) -> None:
        self._entries.append(observation)

    def recent(self, k: int) -> tuple[Observation, ...]:
        """The last *k* observations, oldest first."""
        if k <= 0:
            return ()
        start = max(0, len(self._entries) - k)
        return tuple(self._entries)[start:]

    def all(self) -> tuple[Observation, ...]:
        return tuple(self._entries)

    def extend(self, observations: Iterable[Observation]) -> None:
        """Restore previously persisted entries (oldest first)."""
        for observation in observations:
            self.append(observation)


# ── Channel profiles ──────────────────────────────────────────


class SmoothingProfile(BaseModel):
    """Per-channel smoothing parameters."""

    model_config = ConfigDict(frozen=True)

    history_capacity: int = Field(ge=1)
    window: int = Field(ge=1)
    current_boost: float = Field(gt=0)
    confidence_cap: float = Field(gt=0, le=1.0)
    min_confidence: float = Field(default=0.5, ge=0, le=1.0)
    high_confidence_bypass: float = 0.85
    cold_start_entries: int = Field(default=3, ge=0)

    @classmethod
    def from_settings(cls, channel: Channel, settings: Settings) -> SmoothingProfile:
        prefix = channel.value
        return cls(
            history_capacity=getattr(settings, f"{prefix}_history_capacity"),
            window=getattr(settings, f"{prefix}_smoothing_window"),
            current_boost=getattr(settings, f"{prefix}_current_boost"),
            confidence_cap=getattr(settings, f"{prefix}_confidence_cap"),
            min_confidence=settings.min_confidence,
            high_confidence_bypass=settings.high_confidence_bypass,
            cold_start_entries=settings.cold_start_entries,
        )


# ── Smoother ──────────────────────────────────────────────────


class TemporalSmoother(Generic[C]):
    """Stabilise one channel's raw observations against its own history.

    Parameters
    ----------
    channel : Channel
        Channel stamped on every emitted observation.
    categories : type[Enum]
        Category vocabulary; declaration order breaks tally ties.
    profile : SmoothingProfile
        Window, boost, bounds and bypass thresholds.
    """

    def __init__(self, channel: Channel, categories: type[C], profile: SmoothingProfile) -> None:
        self._channel = channel
        self._categories = tuple(categories)
        self._profile = profile
        self._history: HistoryStore[C] = HistoryStore(profile.history_capacity)

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def profile(self) -> SmoothingProfile:
        return self._profile

    def history(self) -> tuple[Observation, ...]:
        return self._history.all()

    def restore(self, observations: Iterable[Observation]) -> None:
        self._history.extend(o for o in observations if o.channel is self._channel)

    def _bound(self, confidence: float) -> float:
        return min(self._profile.confidence_cap, max(self._profile.min_confidence, confidence))

    def smooth(
        self,
        category: C,
        confidence: float,
        *,
        timestamp: datetime | None = None,
    ) -> Observation:
        """Blend ``(category, confidence)`` with recent history and record it."""
        profile = self._profile
        if len(self._history) < profile.cold_start_entries or confidence > profile.high_confidence_bypass:
            stable, stable_conf = category, self._bound(confidence)
        else:
            stable, stable_conf = self._blend(category, confidence)

        observation = Observation(
            channel=self._channel,
            category=stable,
            confidence=stable_conf,
            timestamp=timestamp or datetime.utcnow(),
        )
        self._history.append(observation)
        if stable != category:
            logger.debug(
                "smoother.category_held",
                channel=self._channel.value,
                raw=category.value,
                stable=stable.value,
            )
        return observation

    def _blend(self, category: C, confidence: float) -> tuple[C, float]:
        window = self._history.recent(self._profile.window)
        tally: dict[C, float] = {}
        for i, past in enumerate(window):
            recency = 0.5 + 0.5 * (i + 1) / len(window)
            tally[past.category] = tally.get(past.category, 0.0) + past.confidence * recency
        tally[category] = tally.get(category, 0.0) + confidence * self._profile.current_boost

        winner, winner_tally = argmax_in_order(tally, self._categories)
        total = sum(tally.values())
        consistency = winner_tally / total if total > 0 else 0.0

        blended = 0.7 * max(confidence, consistency) + 0.3 * min(confidence, consistency)
        return winner, self._bound(blended)
