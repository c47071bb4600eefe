"""Affect inference — stabilised emotion / tone estimates from face, text and voice.

This package holds the synchronous core of every detection tick.  It knows
nothing about cameras, microphones or scheduling; those live in
:mod:`therapy_affect.detection`.

Architecture
------------
1. **Feature extraction** (`features.py`)
   - Text-lexical counts from a transcript
   - Prosodic / spectral audio features (librosa: RMS, YIN pitch, centroid)
   - Facial geometry from detection boxes

2. **Scoring** (`rules.py`, `scoring.py`)
   - One generic rule scorer; channels differ only in their rule tables
   - Neutral baseline with multiplicative decay, absolute neutral floor
   - Classifier expression probabilities trusted directly when available

3. **Temporal smoothing** (`smoothing.py`)
   - Bounded FIFO history per channel, owned by its smoother
   - Recency-weighted tally with a boost for the current observation
   - Cold-start and high-confidence bypass

4. **Pipelines & statistics** (`pipeline.py`, `stats.py`)
   - extract → score → smooth for one channel
   - Category distributions and timelines over read-only snapshots

Confidence & limitations
------------------------
- Thresholds are hand-tuned heuristics, not learned models.
- Emitted confidence is always within ``[min_confidence, channel cap]``;
  the pipeline never reports certainty.
"""

from therapy_affect.affect.pipeline import (
    ChannelPipeline,
    FacialPipeline,
    TextTonePipeline,
    VocalTonePipeline,
    build_pipeline,
    build_pipelines,
)
from therapy_affect.affect.scoring import ExpressionScorer, RuleScorer, ScoreResult
from therapy_affect.affect.smoothing import HistoryStore, SmoothingProfile, TemporalSmoother

__all__ = [
    "ChannelPipeline",
    "ExpressionScorer",
    "FacialPipeline",
    "HistoryStore",
    "RuleScorer",
    "ScoreResult",
    "SmoothingProfile",
    "TemporalSmoother",
    "TextTonePipeline",
    "VocalTonePipeline",
    "build_pipeline",
    "build_pipelines",
]
