"""Channel pipelines — extract → score → smooth for one channel.

A pipeline is the synchronous, CPU-bound part of a detection tick.  It owns
the channel's :class:`~therapy_affect.affect.smoothing.TemporalSmoother` (and
therefore its history); orchestrators call :meth:`ChannelPipeline.process`
once per tick and never touch the history directly.

``process`` returns ``None`` when the input carries no usable signal; that is
"no observation this tick", not an error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

import structlog

from therapy_affect.affect.features import (
    AudioChunk,
    FaceDetection,
    extract_audio_features,
    extract_text_features,
)
from therapy_affect.affect.rules import (
    AUDIO_TONE_RULES,
    FACE_GEOMETRY_RULES,
    TEXT_FEATURE_RULES,
    TEXT_LEXICON,
)
from therapy_affect.affect.scoring import ExpressionScorer, RuleScorer, ScoreResult
from therapy_affect.affect.smoothing import SmoothingProfile, TemporalSmoother
from therapy_affect.config import Settings, get_settings
from therapy_affect.models import Channel, EmotionLabel, Observation, ToneLabel

logger = structlog.get_logger(__name__)

I = TypeVar("I")


class ChannelPipeline(ABC, Generic[I]):
    """Base class: subclasses supply :meth:`score` for their raw input type."""

    channel: Channel

    def __init__(self, smoother: TemporalSmoother) -> None:
        if smoother.channel is not self.channel:
            raise ValueError(
                f"{type(self).__name__} needs a {self.channel.value} smoother, "
                f"got {smoother.channel.value}"
            )
        self._smoother = smoother

    @abstractmethod
    def score(self, raw: I) -> ScoreResult | None:
        """Raw (unsmoothed) verdict for one input, or ``None`` for no signal."""

    def process(self, raw: I) -> Observation | None:
        result = self.score(raw)
        if result is None:
            return None
        return self.record(result)

    def record(self, result: ScoreResult) -> Observation:
        """Smooth a raw verdict against history and append it."""
        observation = self._smoother.smooth(result.category, result.confidence)
        logger.debug(
            "pipeline.observation",
            channel=self.channel.value,
            raw=result.category.value,
            raw_confidence=round(result.confidence, 3),
            category=observation.category.value,
            confidence=round(observation.confidence, 3),
        )
        return observation

    def history(self) -> tuple[Observation, ...]:
        return self._smoother.history()

    def restore(self, observations: tuple[Observation, ...] | list[Observation]) -> None:
        self._smoother.restore(observations)


class FacialPipeline(ChannelPipeline[FaceDetection | None]):
    """Classifier probabilities when present, box geometry otherwise."""

    channel = Channel.FACIAL

    def __init__(self, smoother: TemporalSmoother, settings: Settings | None = None) -> None:
        super().__init__(smoother)
        settings = settings or get_settings()
        cap = smoother.profile.confidence_cap
        self._expressions = ExpressionScorer(
            min_probability=settings.min_expression_probability,
            min_confidence=settings.min_confidence,
            confidence_cap=cap,
            floor_score=settings.neutral_floor_score,
        )
        self._geometry = RuleScorer(
            EmotionLabel,
            EmotionLabel.NEUTRAL,
            rules=FACE_GEOMETRY_RULES,
            min_confidence=settings.min_confidence,
            confidence_cap=cap,
            floor_score=settings.neutral_floor_score,
        )

    def score(self, raw: FaceDetection | None) -> ScoreResult | None:
        if raw is None:
            return None
        if raw.expressions:
            return self._expressions.score(raw.expressions)
        if raw.metrics is not None:
            return self._geometry.score(raw.metrics)
        return None


class TextTonePipeline(ChannelPipeline[str]):
    """Tone of a finalised transcript from lexical features and marker words."""

    channel = Channel.TEXT

    def __init__(self, smoother: TemporalSmoother, settings: Settings | None = None) -> None:
        super().__init__(smoother)
        settings = settings or get_settings()
        self._scorer = RuleScorer(
            ToneLabel,
            ToneLabel.NEUTRAL,
            rules=TEXT_FEATURE_RULES,
            lexicon=TEXT_LEXICON,
            text_of=lambda f: f.text,
            min_confidence=settings.min_confidence,
            confidence_cap=smoother.profile.confidence_cap,
            floor_score=settings.neutral_floor_score,
        )

    def score(self, raw: str) -> ScoreResult | None:
        features = extract_text_features(raw)
        if features is None:
            return None
        return self._scorer.score(features)


class VocalTonePipeline(ChannelPipeline[AudioChunk]):
    """Tone of a raw audio buffer from prosodic features."""

    channel = Channel.VOCAL

    def __init__(self, smoother: TemporalSmoother, settings: Settings | None = None) -> None:
        super().__init__(smoother)
        settings = settings or get_settings()
        self._voiced_threshold = settings.audio_voiced_rms_threshold
        self._scorer = RuleScorer(
            ToneLabel,
            ToneLabel.NEUTRAL,
            rules=AUDIO_TONE_RULES,
            min_confidence=settings.min_confidence,
            confidence_cap=smoother.profile.confidence_cap,
            floor_score=settings.neutral_floor_score,
        )

    def score(self, raw: AudioChunk) -> ScoreResult | None:
        features = extract_audio_features(
            raw.samples, raw.sample_rate, voiced_rms_threshold=self._voiced_threshold
        )
        if features is None:
            return None
        return self._scorer.score(features)


_PIPELINES: dict[Channel, tuple[type[ChannelPipeline], type]] = {
    Channel.FACIAL: (FacialPipeline, EmotionLabel),
    Channel.TEXT: (TextTonePipeline, ToneLabel),
    Channel.VOCAL: (VocalTonePipeline, ToneLabel),
}


def build_pipeline(channel: Channel, settings: Settings | None = None) -> ChannelPipeline:
    """Fresh pipeline (with empty history) for *channel*."""
    settings = settings or get_settings()
    pipeline_cls, categories = _PIPELINES[channel]
    smoother = TemporalSmoother(channel, categories, SmoothingProfile.from_settings(channel, settings))
    return pipeline_cls(smoother, settings)


def build_pipelines(settings: Settings | None = None) -> dict[Channel, ChannelPipeline]:
    settings = settings or get_settings()
    return {channel: build_pipeline(channel, settings) for channel in Channel}
