"""Shared Pydantic models and vocabularies used across the affect core.

These models represent:
- The closed category vocabularies of the facial and vocal channels
- Observations emitted by the pipeline (immutable once created)
- Detection-session runtime state and its error taxonomy
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# ── Enums ─────────────────────────────────────────────────────


class Channel(str, Enum):
    """Independent sensing channels of the affect pipeline."""

    FACIAL = "facial"  # camera frames → facial expression
    TEXT = "text"  # speech-to-text transcripts → tone
    VOCAL = "vocal"  # raw microphone audio → tone


class EmotionLabel(str, Enum):
    """Facial-channel categories.  Declaration order is the tie-break order."""

    NEUTRAL = "neutral"
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    FEARFUL = "fearful"
    DISGUSTED = "disgusted"
    CALM = "calm"
    TENSE = "tense"


class ToneLabel(str, Enum):
    """Vocal / transcript tone categories.  Declaration order is the tie-break order."""

    NEUTRAL = "neutral"
    EXCITED = "excited"
    SAD = "sad"
    ANGRY = "angry"
    ANXIOUS = "anxious"
    CALM = "calm"
    UNCERTAIN = "uncertain"


Category = Union[EmotionLabel, ToneLabel]


class ErrorKind(str, Enum):
    """Failure taxonomy of a detection channel."""

    PERMISSION_DENIED = "permission_denied"  # user-recoverable, never auto-retried
    DEVICE_UNAVAILABLE = "device_unavailable"  # no hardware, never auto-retried
    MODEL_LOAD_FAILED = "model_load_failed"  # retried once with backoff
    NO_SIGNAL = "no_signal"  # no face / silence; never surfaced
    TRANSIENT = "transient"  # one tick failed; escalates after a streak


class SessionState(str, Enum):
    """Lifecycle of one channel's detection session."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


# ── Cross-channel reconciliation ──────────────────────────────

TONE_TO_EMOTION: dict[ToneLabel, EmotionLabel] = {
    ToneLabel.NEUTRAL: EmotionLabel.NEUTRAL,
    ToneLabel.EXCITED: EmotionLabel.HAPPY,
    ToneLabel.SAD: EmotionLabel.SAD,
    ToneLabel.ANGRY: EmotionLabel.ANGRY,
    ToneLabel.ANXIOUS: EmotionLabel.FEARFUL,
    ToneLabel.CALM: EmotionLabel.CALM,
    ToneLabel.UNCERTAIN: EmotionLabel.SURPRISED,
}

CHANNEL_CATEGORIES: dict[Channel, type[Enum]] = {
    Channel.FACIAL: EmotionLabel,
    Channel.TEXT: ToneLabel,
    Channel.VOCAL: ToneLabel,
}


def to_emotion(category: Category) -> EmotionLabel:
    """Project any channel category onto the facial emotion vocabulary."""
    if isinstance(category, ToneLabel):
        return TONE_TO_EMOTION[category]
    return category


# ── Data transfer objects ─────────────────────────────────────


class Observation(BaseModel):
    """A single stabilised (or raw) detection result for one channel."""

    model_config = ConfigDict(frozen=True)

    channel: Channel
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("category", mode="before")
    @classmethod
    def _category_for_channel(cls, value: Any, info: ValidationInfo) -> Any:
        # Several labels ("sad", "calm", ...) exist in both vocabularies.
        channel = info.data.get("channel")
        if channel is None or isinstance(value, Enum):
            return value
        return CHANNEL_CATEGORIES[Channel(channel)](value)

    @property
    def emotion(self) -> EmotionLabel:
        return to_emotion(self.category)


class DetectionSession(BaseModel):
    """Read-only snapshot of a channel's runtime state."""

    model_config = ConfigDict(frozen=True)

    channel: Channel
    state: SessionState = SessionState.IDLE
    token: int = 0
    last_error: ErrorKind | None = None
    error_message: str = ""
    consecutive_failures: int = 0

    @property
    def is_ready(self) -> bool:
        return self.state in (SessionState.READY, SessionState.ACTIVE, SessionState.PAUSED)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE
