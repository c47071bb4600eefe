"""Hand-tuned rule tables for the three scoring channels.

Rules are plain data consumed by :class:`~therapy_affect.affect.scoring.RuleScorer`:
each :class:`ScoreRule` is a threshold predicate over one feature model, the
increment it adds to its category, and the multiplicative discount it applies
to the neutral score.  Lexicon tables map categories to marker words.

Thresholds are heuristic, not learned.  They are kept here, apart from the
scoring control flow, so each channel can be tuned and tested on its own.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from therapy_affect.affect.features import AudioFeatures, FaceMetrics, TextFeatures
from therapy_affect.models import EmotionLabel, ToneLabel

F = TypeVar("F")
C = TypeVar("C")


@dataclass(frozen=True, slots=True)
class ScoreRule(Generic[F, C]):
    """``when(features)`` holds → add ``boost(features)`` to ``category``."""

    name: str
    category: C
    when: Callable[[F], bool]
    boost: Callable[[F], float]
    neutral_decay: float = 1.0


@dataclass(frozen=True, slots=True)
class LexiconEntry(Generic[C]):
    """Marker words (or short phrases) signalling one category."""

    category: C
    markers: tuple[str, ...]
    weight: float


def _lt(value: float | None, threshold: float) -> bool:
    return value is not None and value < threshold


def _gt(value: float | None, threshold: float) -> bool:
    return value is not None and value > threshold


def _between(value: float | None, low: float, high: float) -> bool:
    return value is not None and low < value < high


# ── Facial geometry ───────────────────────────────────────────

FACE_GEOMETRY_RULES: tuple[ScoreRule[FaceMetrics, EmotionLabel], ...] = (
    ScoreRule(
        "wide_smile",
        EmotionLabel.HAPPY,
        when=lambda m: _gt(m.mouth_width_norm, 0.5) and _gt(m.mouth_aspect_ratio, 2.0),
        boost=lambda m: 0.7 + (m.mouth_width_norm - 0.5) * 0.6,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "narrow_mouth_small_eyes",
        EmotionLabel.SAD,
        when=lambda m: _lt(m.mouth_width_norm, 0.4) and _lt(m.eye_size_norm, 0.15),
        boost=lambda m: 0.6 + (0.15 - m.eye_size_norm) * 2.0,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "wide_eyes_open_mouth",
        EmotionLabel.SURPRISED,
        when=lambda m: _gt(m.eye_size_norm, 0.18) and _gt(m.mouth_height_norm, 0.2),
        boost=lambda m: 0.7 + (m.eye_size_norm - 0.18) * 3.0,
        neutral_decay=0.3,
    ),
    ScoreRule(
        "narrowed_eyes_compressed_mouth",
        EmotionLabel.ANGRY,
        when=lambda m: _lt(m.eye_size_norm, 0.12) and _lt(m.mouth_width_norm, 0.35),
        boost=lambda m: 0.6 + (0.12 - m.eye_size_norm) * 4.0,
        neutral_decay=0.4,
    ),
    ScoreRule(
        "wide_eyes_tense_mouth",
        EmotionLabel.FEARFUL,
        when=lambda m: (
            _gt(m.eye_size_norm, 0.16)
            and _gt(m.mouth_width_norm, 0.4)
            and _lt(m.mouth_height_norm, 0.15)
        ),
        boost=lambda m: 0.6 + (m.eye_size_norm - 0.16) * 2.5,
        neutral_decay=0.4,
    ),
    ScoreRule(
        "narrowed_eyes_raised_lip",
        EmotionLabel.DISGUSTED,
        when=lambda m: _lt(m.eye_size_norm, 0.13) and _lt(m.mouth_height_norm, 0.1),
        boost=lambda m: 0.6 + (0.13 - m.eye_size_norm) * 3.0,
        neutral_decay=0.4,
    ),
    ScoreRule(
        "relaxed_features",
        EmotionLabel.CALM,
        when=lambda m: (
            abs(m.face_aspect_ratio - 0.7) < 0.1
            and _between(m.eye_size_norm, 0.13, 0.17)
            and _between(m.mouth_width_norm, 0.3, 0.45)
        ),
        boost=lambda m: 0.7,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "tightened_features",
        EmotionLabel.TENSE,
        when=lambda m: (
            _lt(m.eye_size_norm, 0.14)
            and _lt(m.mouth_width_norm, 0.4)
            and _lt(m.mouth_height_norm, 0.1)
        ),
        boost=lambda m: 0.65,
        neutral_decay=0.6,
    ),
)

# Expression names reported by common classifiers → facial categories
EXPRESSION_ALIASES: dict[str, EmotionLabel] = {
    "neutral": EmotionLabel.NEUTRAL,
    "happy": EmotionLabel.HAPPY,
    "happiness": EmotionLabel.HAPPY,
    "sad": EmotionLabel.SAD,
    "sadness": EmotionLabel.SAD,
    "angry": EmotionLabel.ANGRY,
    "anger": EmotionLabel.ANGRY,
    "surprised": EmotionLabel.SURPRISED,
    "surprise": EmotionLabel.SURPRISED,
    "fearful": EmotionLabel.FEARFUL,
    "fear": EmotionLabel.FEARFUL,
    "disgusted": EmotionLabel.DISGUSTED,
    "disgust": EmotionLabel.DISGUSTED,
    "calm": EmotionLabel.CALM,
    "tense": EmotionLabel.TENSE,
}


# ── Audio tone ────────────────────────────────────────────────

AUDIO_TONE_RULES: tuple[ScoreRule[AudioFeatures, ToneLabel], ...] = (
    ScoreRule(
        "loud_lively_fast",
        ToneLabel.EXCITED,
        when=lambda f: (
            f.has_speech
            and f.energy_norm > 0.7
            and f.pitch_variability_norm > 0.4
            and f.speech_rate_norm > 0.7
        ),
        boost=lambda f: 0.6 + f.energy_norm * 0.3,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "quiet_low_slow",
        ToneLabel.SAD,
        when=lambda f: (
            f.has_speech
            and f.energy_norm < 0.4
            and f.mean_pitch_norm < 0.3
            and f.speech_rate_norm < 0.4
        ),
        boost=lambda f: 0.6 + (0.4 - f.energy_norm) * 0.5,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "loud_bright_variable",
        ToneLabel.ANGRY,
        when=lambda f: (
            f.has_speech
            and f.energy_norm > 0.6
            and f.spectral_centroid_norm > 0.7
            and f.pitch_variability_norm > 0.5
        ),
        boost=lambda f: 0.6 + f.energy_norm * 0.3,
        neutral_decay=0.4,
    ),
    ScoreRule(
        "fast_with_pauses",
        ToneLabel.ANXIOUS,
        when=lambda f: (
            f.has_speech
            and f.energy_norm > 0.5
            and f.speech_rate_norm > 0.6
            and f.pause_ratio_norm > 0.7
        ),
        boost=lambda f: 0.6 + f.pause_ratio_norm * 0.3,
        neutral_decay=0.5,
    ),
    ScoreRule(
        "soft_smooth_steady",
        ToneLabel.CALM,
        when=lambda f: (
            f.has_speech
            and 0.2 < f.energy_norm < 0.5
            and f.pitch_variability_norm < 0.3
            and 0.3 < f.speech_rate_norm < 0.6
        ),
        boost=lambda f: 0.7,
        neutral_decay=0.4,
    ),
    ScoreRule(
        "hesitant",
        ToneLabel.UNCERTAIN,
        when=lambda f: f.has_speech and f.pause_ratio_norm > 0.6 and f.pitch_variability_norm > 0.4,
        boost=lambda f: 0.5 + f.pause_ratio_norm * 0.3,
        neutral_decay=0.6,
    ),
)


# ── Transcript tone ───────────────────────────────────────────


def _low_repetition(f: TextFeatures) -> bool:
    return f.repetition is not None and f.repetition < 0.7


def _abrupt(f: TextFeatures) -> bool:
    return f.sentence_count >= 2 and f.avg_sentence_length < 15


TEXT_FEATURE_RULES: tuple[ScoreRule[TextFeatures, ToneLabel], ...] = (
    ScoreRule(
        "exclamations",
        ToneLabel.EXCITED,
        when=lambda f: f.exclamation_count > 0,
        boost=lambda f: f.exclamation_count * 0.3,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "exclamations",
        ToneLabel.ANGRY,
        when=lambda f: f.exclamation_count > 0,
        boost=lambda f: f.exclamation_count * 0.1,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "questions",
        ToneLabel.UNCERTAIN,
        when=lambda f: f.question_count > 0,
        boost=lambda f: f.question_count * 0.3,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "shouting",
        ToneLabel.EXCITED,
        when=lambda f: f.capitals_ratio > 0.25,
        boost=lambda f: f.capitals_ratio * 1.5,
        neutral_decay=0.8,
    ),
    ScoreRule(
        "shouting",
        ToneLabel.ANGRY,
        when=lambda f: f.capitals_ratio > 0.25,
        boost=lambda f: f.capitals_ratio * 2.0,
        neutral_decay=0.8,
    ),
    ScoreRule(
        "repetition",
        ToneLabel.ANXIOUS,
        when=_low_repetition,
        boost=lambda f: (1.0 - f.repetition) * 1.5,
        neutral_decay=0.8,
    ),
    ScoreRule(
        "repetition",
        ToneLabel.UNCERTAIN,
        when=_low_repetition,
        boost=lambda f: 1.0 - f.repetition,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "abrupt_sentences",
        ToneLabel.ANGRY,
        when=_abrupt,
        boost=lambda f: 0.5,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "abrupt_sentences",
        ToneLabel.ANXIOUS,
        when=_abrupt,
        boost=lambda f: 0.3,
        neutral_decay=0.9,
    ),
    ScoreRule(
        "flowing_sentences",
        ToneLabel.CALM,
        when=lambda f: f.avg_sentence_length > 40,
        boost=lambda f: 0.5,
        neutral_decay=0.9,
    ),
)

TEXT_LEXICON: tuple[LexiconEntry[ToneLabel], ...] = (
    LexiconEntry(
        ToneLabel.NEUTRAL,
        ("normal", "fine", "okay", "ok", "alright", "good", "well", "sure", "yes", "no"),
        weight=1.0,
    ),
    LexiconEntry(
        ToneLabel.EXCITED,
        (
            "excited", "happy", "great", "amazing", "wonderful", "fantastic", "awesome",
            "excellent", "love", "wow", "cool", "best", "fun", "delighted", "thrilled",
            "perfect", "brilliant",
        ),
        weight=1.2,
    ),
    LexiconEntry(
        ToneLabel.SAD,
        (
            "sad", "depressed", "unhappy", "disappointed", "sorry", "miss", "lost", "hurt",
            "alone", "painful", "grief", "crying", "regret", "unfortunate", "hopeless",
            "heartbroken", "miserable",
        ),
        weight=1.5,
    ),
    LexiconEntry(
        ToneLabel.ANGRY,
        (
            "angry", "upset", "mad", "furious", "hate", "terrible", "worst", "annoying",
            "frustrated", "irritated", "outraged", "unfair", "ridiculous", "wrong", "awful",
            "stupid", "bad",
        ),
        weight=1.5,
    ),
    LexiconEntry(
        ToneLabel.ANXIOUS,
        (
            "worried", "anxious", "nervous", "scared", "afraid", "stress", "panic",
            "concerned", "uncertain", "fear", "frightened", "terrified", "uneasy", "tense",
            "overwhelmed", "doubt",
        ),
        weight=1.3,
    ),
    LexiconEntry(
        ToneLabel.CALM,
        (
            "calm", "relaxed", "peaceful", "balanced", "quiet", "comfortable", "content",
            "steady", "composed", "tranquil", "serene", "patient", "gentle", "stable",
        ),
        weight=1.1,
    ),
    LexiconEntry(
        ToneLabel.UNCERTAIN,
        (
            "maybe", "perhaps", "not sure", "might", "guess", "possibly", "uncertain",
            "confused", "unclear", "wonder", "unsure", "doubt", "confusing", "complicated",
            "hard to say", "thinking",
        ),
        weight=1.2,
    ),
)

INTENSIFIERS = re.compile(
    r"\b(very|really|so|extremely|absolutely|totally|completely|deeply|highly|terribly|incredibly)\b",
    re.IGNORECASE,
)

# Characters either side of a marker searched for an intensifier
INTENSIFIER_WINDOW = 20

# Neutral discount applied once per non-neutral category with lexicon hits
LEXICON_NEUTRAL_DECAY = 0.8
