"""Rule-based category scoring shared by every channel.

Design principles
-----------------
- **One control flow, many tables**: :class:`RuleScorer` is generic over the
  feature model and the category enum; channels differ only in the rule and
  lexicon tables from :mod:`therapy_affect.affect.rules`.
- **Neutral by default**: neutral starts from a baseline and is discounted
  multiplicatively (never below zero) whenever another category gains
  evidence.  A winner whose absolute score stays under the neutral floor is
  reported as neutral at minimum confidence.
- **Deterministic ties**: categories are visited in enum declaration order and
  a later category must score strictly higher to win.
- **Bounded confidence**: ``min_confidence + min(0.5, share * 0.7)`` clamped to
  the channel ceiling; the scorer never reports certainty.

Scoring is pure and synchronous.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generic, Iterable, Mapping, TypeVar

from therapy_affect.affect.rules import (
    EXPRESSION_ALIASES,
    INTENSIFIER_WINDOW,
    INTENSIFIERS,
    LEXICON_NEUTRAL_DECAY,
    LexiconEntry,
    ScoreRule,
)
from therapy_affect.models import EmotionLabel

F = TypeVar("F")
C = TypeVar("C", bound=Enum)


@dataclass(frozen=True, slots=True)
class ScoreResult(Generic[C]):
    """Winning category, its raw confidence and the evidence behind it."""

    category: C
    confidence: float
    scores: dict[C, float] = field(default_factory=dict)
    signals: tuple[str, ...] = ()


def argmax_in_order(scores: Mapping[C, float], order: Iterable[C]) -> tuple[C, float]:
    """Highest-scoring category; the first declared wins ties."""
    best: C | None = None
    best_score = float("-inf")
    for category in order:
        value = scores.get(category, 0.0)
        if value > best_score:
            best, best_score = category, value
    if best is None:
        raise ValueError("Cannot take argmax over an empty category set")
    return best, best_score


def share_confidence(max_score: float, total_score: float, base: float) -> float:
    """Map a winner's share of the total score onto ``[base, base + 0.5]``."""
    if total_score <= 0:
        return base
    return base + min(0.5, (max_score / total_score) * 0.7)


@dataclass(frozen=True, slots=True)
class _CompiledMarker(Generic[C]):
    category: C
    pattern: re.Pattern[str]
    weight: float


class RuleScorer(Generic[F, C]):
    """Score a feature model against rule and lexicon tables.

    Parameters
    ----------
    categories : type[Enum]
        The closed category vocabulary; its declaration order breaks ties.
    neutral : Enum
        The fallback category that carries the baseline score.
    rules : iterable of ScoreRule
        Threshold predicates over the feature model.
    lexicon : iterable of LexiconEntry
        Optional marker-word tables matched against ``text_of(features)``.
    text_of : callable
        Extracts the lower-cased text used for lexicon matching.
    neutral_baseline : float
        Starting score of ``neutral``.
    min_confidence, confidence_cap : float
        Bounds on every confidence this scorer reports.
    floor_score : float
        Absolute score a non-neutral winner must reach.
    """

    def __init__(
        self,
        categories: type[C],
        neutral: C,
        *,
        rules: Iterable[ScoreRule[F, C]] = (),
        lexicon: Iterable[LexiconEntry[C]] = (),
        text_of: Callable[[F], str] | None = None,
        neutral_baseline: float = 0.5,
        min_confidence: float = 0.5,
        confidence_cap: float = 0.95,
        floor_score: float = 0.5,
    ) -> None:
        self._categories = tuple(categories)
        self._neutral = neutral
        self._rules = tuple(rules)
        self._markers = tuple(
            _CompiledMarker(
                category=entry.category,
                pattern=re.compile(rf"\b{re.escape(marker)}\b"),
                weight=entry.weight,
            )
            for entry in lexicon
            for marker in entry.markers
        )
        if self._markers and text_of is None:
            raise ValueError("A lexicon requires a text_of accessor")
        self._text_of = text_of
        self._neutral_baseline = neutral_baseline
        self._min_confidence = min_confidence
        self._confidence_cap = confidence_cap
        self._floor_score = floor_score

    @property
    def categories(self) -> tuple[C, ...]:
        return self._categories

    def score(self, features: F) -> ScoreResult[C]:
        scores: dict[C, float] = {c: 0.0 for c in self._categories}
        scores[self._neutral] = self._neutral_baseline
        signals: list[str] = []

        for rule in self._rules:
            if not rule.when(features):
                continue
            scores[rule.category] += rule.boost(features)
            if rule.category is not self._neutral:
                scores[self._neutral] *= rule.neutral_decay
            signals.append(f"{rule.name}:{rule.category.value}")

        if self._markers:
            signals.extend(self._score_lexicon(self._text_of(features), scores))

        if not signals:
            return ScoreResult(self._neutral, self._min_confidence, scores)

        winner, max_score = argmax_in_order(scores, self._categories)
        confidence = share_confidence(max_score, sum(scores.values()), self._min_confidence)

        if max_score < self._floor_score:
            winner, confidence = self._neutral, self._min_confidence

        confidence = min(self._confidence_cap, max(self._min_confidence, confidence))
        return ScoreResult(winner, confidence, scores, tuple(signals))

    def _score_lexicon(self, text: str, scores: dict[C, float]) -> list[str]:
        """Add weighted marker counts (plus intensifier boosts) to *scores*."""
        hit: set[C] = set()
        signals: list[str] = []
        for marker in self._markers:
            for match in marker.pattern.finditer(text):
                scores[marker.category] += marker.weight
                window = text[
                    max(0, match.start() - INTENSIFIER_WINDOW) : match.end() + INTENSIFIER_WINDOW
                ]
                if INTENSIFIERS.search(window):
                    scores[marker.category] += 0.5 * marker.weight
                    signals.append(f"intensified:{match.group(0)}")
                hit.add(marker.category)
                signals.append(f"marker:{match.group(0)}")

        for category in hit:
            if category is not self._neutral:
                scores[self._neutral] *= LEXICON_NEUTRAL_DECAY
        return signals


class ExpressionScorer:
    """Trust an external classifier's expression probabilities directly.

    The most probable known expression wins (declaration order breaks ties).
    Below ``min_probability`` the frame yields no observation at all; below
    ``floor_score`` it is reported as neutral at minimum confidence.
    """

    def __init__(
        self,
        *,
        min_probability: float = 0.2,
        min_confidence: float = 0.5,
        confidence_cap: float = 0.97,
        floor_score: float = 0.5,
    ) -> None:
        self._min_probability = min_probability
        self._min_confidence = min_confidence
        self._confidence_cap = confidence_cap
        self._floor_score = floor_score

    def score(self, expressions: Mapping[str, float]) -> ScoreResult[EmotionLabel] | None:
        mapped: dict[EmotionLabel, float] = {}
        for name, probability in expressions.items():
            label = EXPRESSION_ALIASES.get(name.lower())
            if label is not None:
                mapped[label] = max(mapped.get(label, 0.0), float(probability))
        if not mapped:
            return None

        winner, probability = argmax_in_order(mapped, EmotionLabel)
        if probability < self._min_probability:
            return None

        signals = (f"expression:{winner.value}",)
        if probability < self._floor_score:
            return ScoreResult(EmotionLabel.NEUTRAL, self._min_confidence, mapped, signals)

        confidence = min(self._confidence_cap, max(self._min_confidence, probability))
        return ScoreResult(winner, confidence, mapped, signals)
