"""Feature extraction — raw sensor input → channel-specific feature vectors.

This module turns the three kinds of raw input handled by the affect core
into immutable feature models consumed by the rule scorers.

Key responsibilities
--------------------
1. **Text-lexical** — punctuation, capitalisation, structure and repetition
   counts computed from a single utterance (pure function of the string).
2. **Audio-spectral** — energy, pitch (YIN), speaking rate (voiced-segment
   counting), spectral centroid, pause ratio and voice quality from a mono
   sample buffer.
3. **Facial geometry** — face / eye / mouth box proportions normalised to the
   face size, for detectors that report boxes instead of expression
   probabilities.

Every extractor returns ``None`` when the input carries no usable signal
(empty transcript, empty or digitally silent buffer, no face).  Callers treat
``None`` as "no observation this tick", never as an error.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Sequence

import librosa
import numpy as np
import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

_WORD_SPLIT = re.compile(r"\s+")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PUNCTUATION = re.compile(r"[.,!?;:'\"()\[\]{}]")
_UPPERCASE = re.compile(r"[A-Z]")

# Repetition is meaningless on very short utterances
_MIN_WORDS_FOR_REPETITION = 4

STOP_WORDS = frozenset(
    """
    i me my myself we our ours ourselves you your yours yourself yourselves he him
    his himself she her hers herself it its itself they them their theirs themselves
    what which who whom this that these those am is are was were be been being have
    has had having do does did doing a an the and but if or because as until while of
    at by for with about against between into through during before after above below
    to from up down in out on off over under again further then once here there when
    where why how all any both each few more most other some such no nor not only own
    same so than too very s t can will just don should now
    """.split()
)

# Audio analysis framing (shared by RMS, YIN and spectral features so frames align)
_FRAME_LENGTH = 2048
_HOP_LENGTH = 512
_PITCH_FMIN = 65.0
_PITCH_FMAX = 500.0


# ── Text-lexical features ─────────────────────────────────────


class TextFeatures(BaseModel):
    """Lexical and structural features of one utterance."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(description="Lower-cased, trimmed utterance used for lexicon matching.")
    exclamation_count: int = 0
    question_count: int = 0
    capitals_ratio: float = 0.0  # uppercase letters / total characters
    word_count: int = 0
    avg_word_length: float = 0.0
    sentence_count: int = 0
    avg_sentence_length: float = 0.0  # characters per sentence
    repetition: float | None = None  # unique / total words; lower = more repeated
    stop_words: int = 0
    punctuation_density: float = 0.0


def extract_text_features(transcript: str) -> TextFeatures | None:
    """Compute lexical features for *transcript*.

    Returns ``None`` for an empty or whitespace-only utterance.
    """
    if not transcript or not transcript.strip():
        return None

    length = len(transcript)
    lower = transcript.lower().strip()
    words = [w for w in _WORD_SPLIT.split(transcript) if w]
    sentences = [s for s in _SENTENCE_SPLIT.split(transcript) if s.strip()]

    avg_word_length = sum(len(w) for w in words) / len(words) if words else 0.0

    repetition: float | None = None
    lowered_words = [w.lower() for w in words]
    if len(lowered_words) >= _MIN_WORDS_FOR_REPETITION:
        repetition = len(set(lowered_words)) / len(lowered_words)

    return TextFeatures(
        text=lower,
        exclamation_count=transcript.count("!"),
        question_count=transcript.count("?"),
        capitals_ratio=len(_UPPERCASE.findall(transcript)) / max(1, length),
        word_count=len(words),
        avg_word_length=avg_word_length,
        sentence_count=len(sentences),
        avg_sentence_length=length / len(sentences) if sentences else 0.0,
        repetition=repetition,
        stop_words=sum(1 for w in lower.split() if w in STOP_WORDS),
        punctuation_density=len(_PUNCTUATION.findall(transcript)) / max(1, length),
    )


# ── Audio-spectral features ───────────────────────────────────


class AudioFeatures(BaseModel):
    """Prosodic and spectral features of one audio buffer.

    Raw measurements are kept alongside the normalised ``*_norm`` views the
    tone rules are written against.
    """

    model_config = ConfigDict(frozen=True)

    duration_seconds: float
    energy: float  # mean squared amplitude
    rms: float
    mean_pitch: float = 0.0  # Hz over voiced frames, 0 when unvoiced
    pitch_variability: float = 0.0  # coefficient of variation of f0
    speech_rate: float = 0.0  # voiced segments per second
    spectral_centroid: float = 0.0  # Hz over voiced frames
    pause_ratio: float = 0.0  # unvoiced share between first and last voiced frame
    voice_quality: float = 0.0  # 1 - spectral flatness (tonal → 1, noisy → 0)
    voiced_ratio: float = 0.0

    @property
    def has_speech(self) -> bool:
        return self.voiced_ratio > 0.0

    @property
    def energy_norm(self) -> float:
        return min(1.0, self.rms * 10)

    @property
    def mean_pitch_norm(self) -> float:
        # 0 at 100 Hz, 1 at 200 Hz
        return (self.mean_pitch - 100.0) / 100.0

    @property
    def pitch_variability_norm(self) -> float:
        return min(1.0, self.pitch_variability)

    @property
    def speech_rate_norm(self) -> float:
        return min(1.0, self.speech_rate / 6.0)

    @property
    def spectral_centroid_norm(self) -> float:
        return min(1.0, self.spectral_centroid / 3000.0)

    @property
    def pause_ratio_norm(self) -> float:
        return self.pause_ratio

    @property
    def voice_quality_norm(self) -> float:
        return self.voice_quality


class AudioChunk(NamedTuple):
    """One mono buffer handed to the vocal channel."""

    samples: np.ndarray
    sample_rate: int


def _count_segments(mask: np.ndarray) -> int:
    """Number of contiguous ``True`` runs in a boolean frame mask."""
    if mask.size == 0:
        return 0
    padded = np.concatenate(([False], mask))
    return int(np.count_nonzero(padded[1:] & ~padded[:-1]))


def _pause_ratio(mask: np.ndarray) -> float:
    voiced_idx = np.flatnonzero(mask)
    if voiced_idx.size == 0:
        return 0.0
    span = mask[voiced_idx[0] : voiced_idx[-1] + 1]
    return float(np.count_nonzero(~span) / span.size)


def extract_audio_features(
    samples: Sequence[float] | np.ndarray,
    sample_rate: int,
    *,
    voiced_rms_threshold: float = 0.02,
) -> AudioFeatures | None:
    """Compute prosodic features from a mono buffer.

    Pitch uses librosa's YIN estimator restricted to voiced frames; energy is
    RMS based; speaking rate counts voiced segments per second.

    Returns ``None`` for an empty, non-finite or digitally silent buffer.
    """
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")

    y = np.asarray(samples, dtype=np.float32).ravel()
    if y.size == 0 or not np.all(np.isfinite(y)) or not np.any(y):
        logger.debug("features.audio_no_signal", samples=int(y.size))
        return None

    duration = y.size / sample_rate
    energy = float(np.mean(y.astype(np.float64) ** 2))
    rms = float(np.sqrt(energy))

    if y.size < _FRAME_LENGTH:
        y = np.pad(y, (0, _FRAME_LENGTH - y.size))

    frame_rms = librosa.feature.rms(y=y, frame_length=_FRAME_LENGTH, hop_length=_HOP_LENGTH)[0]
    voiced = frame_rms > voiced_rms_threshold
    voiced_ratio = float(np.count_nonzero(voiced) / voiced.size)

    if not voiced.any():
        return AudioFeatures(duration_seconds=duration, energy=energy, rms=rms)

    f0 = librosa.yin(
        y,
        fmin=_PITCH_FMIN,
        fmax=min(_PITCH_FMAX, sample_rate / 2 - 1),
        sr=sample_rate,
        frame_length=_FRAME_LENGTH,
        hop_length=_HOP_LENGTH,
    )
    centroid = librosa.feature.spectral_centroid(
        y=y, sr=sample_rate, n_fft=_FRAME_LENGTH, hop_length=_HOP_LENGTH
    )[0]
    flatness = librosa.feature.spectral_flatness(y=y, n_fft=_FRAME_LENGTH, hop_length=_HOP_LENGTH)[0]

    n = min(f0.size, centroid.size, flatness.size, voiced.size)
    mask = voiced[:n]

    pitches = f0[:n][mask]
    pitches = pitches[np.isfinite(pitches) & (pitches > 0)]
    mean_pitch = float(np.mean(pitches)) if pitches.size else 0.0
    pitch_cv = float(np.std(pitches) / mean_pitch) if pitches.size and mean_pitch > 0 else 0.0

    return AudioFeatures(
        duration_seconds=duration,
        energy=energy,
        rms=rms,
        mean_pitch=mean_pitch,
        pitch_variability=pitch_cv,
        speech_rate=_count_segments(mask) / max(duration, 1e-3),
        spectral_centroid=float(np.mean(centroid[:n][mask])),
        pause_ratio=_pause_ratio(mask),
        voice_quality=float(np.clip(1.0 - np.mean(flatness[:n][mask]), 0.0, 1.0)),
        voiced_ratio=voiced_ratio,
    )


# ── Facial geometry ───────────────────────────────────────────


class Box(NamedTuple):
    """Axis-aligned detection rectangle in pixels."""

    x: int
    y: int
    width: int
    height: int

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2


class FaceMetrics(BaseModel):
    """Face-relative proportions derived from detection boxes.

    Eye metrics are ``None`` unless two eyes were found; mouth metrics are
    ``None`` unless a mouth was found.
    """

    model_config = ConfigDict(frozen=True)

    face_aspect_ratio: float
    eye_distance_norm: float | None = None
    eye_size_norm: float | None = None
    mouth_width_norm: float | None = None
    mouth_height_norm: float | None = None
    mouth_aspect_ratio: float | None = None


class FaceDetection(BaseModel):
    """What an external face detector reports for one frame.

    ``expressions`` maps expression names to probabilities (classifier
    detectors); ``metrics`` carries box geometry (cascade detectors).  At
    least one is set for a detected face.
    """

    model_config = ConfigDict(frozen=True)

    expressions: dict[str, float] | None = None
    metrics: FaceMetrics | None = None


def face_metrics_from_boxes(
    face: Box,
    eyes: Sequence[Box] = (),
    mouths: Sequence[Box] = (),
) -> FaceMetrics:
    """Normalise eye / mouth boxes (relative to the face box) into metrics."""
    if face.width <= 0 or face.height <= 0:
        raise ValueError(f"Degenerate face box: {face}")

    eye_distance_norm = eye_size_norm = None
    if len(eyes) >= 2:
        e1, e2 = eyes[0], eyes[1]
        eye_distance_norm = abs(e1.center_x - e2.center_x) / face.width
        eye_size_norm = (e1.width + e2.width) / 2 / face.width

    mouth_width_norm = mouth_height_norm = mouth_aspect_ratio = None
    if mouths:
        mouth = mouths[0]
        mouth_width_norm = mouth.width / face.width
        mouth_height_norm = mouth.height / face.height
        mouth_aspect_ratio = mouth.width / (mouth.height or 1)

    return FaceMetrics(
        face_aspect_ratio=face.width / face.height,
        eye_distance_norm=eye_distance_norm,
        eye_size_norm=eye_size_norm,
        mouth_width_norm=mouth_width_norm,
        mouth_height_norm=mouth_height_norm,
        mouth_aspect_ratio=mouth_aspect_ratio,
    )
