"""External capabilities consumed by the orchestrators.

Every capability is a :class:`typing.Protocol`, so tests (and alternative
back-ends such as a classifier service) can be injected freely.  The
concrete implementations here wrap OpenCV:

* **OpenCVCamera** — ``cv2.VideoCapture`` frame source.
* **HaarCascadeFaceDetector** — face / eye / smile cascades → box geometry.
* **QueueAudioSource** — push-fed buffer queue for the vocal channel.

Blocking OpenCV calls run in a worker thread (``asyncio.to_thread``).
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

import cv2
import numpy as np
import structlog

from therapy_affect.affect.features import AudioChunk, Box, FaceDetection, face_metrics_from_boxes
from therapy_affect.detection.errors import DeviceUnavailable, ModelLoadFailed

logger = structlog.get_logger(__name__)


# ── Capability protocols ──────────────────────────────────────


@runtime_checkable
class FrameSource(Protocol):
    """Exclusive handle on a camera."""

    async def open(self) -> None: ...

    async def read(self) -> Any | None: ...

    async def close(self) -> None: ...


@runtime_checkable
class ExpressionDetector(Protocol):
    """``detect(frame)`` → expression probabilities and/or geometry, ``None`` if no face."""

    async def load(self) -> None: ...

    async def detect(self, frame: Any) -> FaceDetection | None: ...


@runtime_checkable
class AudioSource(Protocol):
    """Exclusive handle on a microphone yielding mono buffers."""

    async def open(self) -> None: ...

    async def read(self) -> AudioChunk | None: ...

    async def close(self) -> None: ...

    def flush(self) -> int:
        """Discard buffered audio not yet read; returns how many buffers were dropped."""
        ...


@runtime_checkable
class SpeechRecognizer(Protocol):
    """Speech-to-text engine; transcripts are pushed to the orchestrator."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ── OpenCV camera ─────────────────────────────────────────────


class OpenCVCamera:
    """Frame source backed by ``cv2.VideoCapture``."""

    def __init__(self, index: int = 0, *, width: int = 640, height: int = 480) -> None:
        self._index = index
        self._width = width
        self._height = height
        self._capture: cv2.VideoCapture | None = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    async def open(self) -> None:
        if self._capture is not None:
            return
        capture = await asyncio.to_thread(cv2.VideoCapture, self._index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailable(f"Camera {self._index} could not be opened")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        self._capture = capture
        logger.info("camera.opened", index=self._index)

    async def read(self) -> np.ndarray | None:
        if self._capture is None:
            return None
        ok, frame = await asyncio.to_thread(self._capture.read)
        return frame if ok else None

    async def close(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            await asyncio.to_thread(capture.release)
            logger.info("camera.released", index=self._index)


# ── Haar cascade detector ─────────────────────────────────────

_FACE_CASCADE = "haarcascade_frontalface_default.xml"
_EYE_CASCADE = "haarcascade_eye.xml"
_SMILE_CASCADE = "haarcascade_smile.xml"


class HaarCascadeFaceDetector:
    """Face geometry from OpenCV's bundled Haar cascades.

    The largest face wins.  Eyes are searched in the upper half of the face
    and the mouth in the lower half; boxes are reported relative to the face.
    """

    def __init__(self, cascade_dir: str | None = None) -> None:
        self._cascade_dir = cascade_dir or cv2.data.haarcascades
        self._face: cv2.CascadeClassifier | None = None
        self._eyes: cv2.CascadeClassifier | None = None
        self._smile: cv2.CascadeClassifier | None = None

    async def load(self) -> None:
        if self._face is not None:
            return
        self._face, self._eyes, self._smile = await asyncio.to_thread(self._load_cascades)
        logger.info("detector.loaded", cascade_dir=self._cascade_dir)

    def _load_cascades(self) -> tuple[cv2.CascadeClassifier, ...]:
        cascades = []
        for name in (_FACE_CASCADE, _EYE_CASCADE, _SMILE_CASCADE):
            cascade = cv2.CascadeClassifier(self._cascade_dir + name)
            if cascade.empty():
                raise ModelLoadFailed(f"Could not load cascade {name}")
            cascades.append(cascade)
        return tuple(cascades)

    async def detect(self, frame: np.ndarray) -> FaceDetection | None:
        if self._face is None:
            raise ModelLoadFailed("Detector used before load()")
        return await asyncio.to_thread(self._detect, frame)

    def _detect(self, frame: np.ndarray) -> FaceDetection | None:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        gray = cv2.equalizeHist(gray)

        faces = self._face.detectMultiScale(gray, scaleFactor=1.1, minNeighbors=5, minSize=(60, 60))
        if len(faces) == 0:
            return None

        x, y, w, h = max(faces, key=lambda f: f[2] * f[3])
        roi = gray[y : y + h, x : x + w]
        upper, lower = roi[: h // 2], roi[h // 2 :]

        eyes = self._eyes.detectMultiScale(upper, scaleFactor=1.1, minNeighbors=8, minSize=(15, 15))
        mouths = self._smile.detectMultiScale(lower, scaleFactor=1.7, minNeighbors=20, minSize=(25, 15))

        metrics = face_metrics_from_boxes(
            Box(0, 0, int(w), int(h)),
            eyes=sorted((Box(*map(int, e)) for e in eyes), key=lambda b: b.x),
            mouths=[Box(*map(int, m)) for m in mouths],
        )
        return FaceDetection(metrics=metrics)


# ── Audio ─────────────────────────────────────────────────────


class QueueAudioSource:
    """Audio source fed by an external capture callback via :meth:`push`.

    ``read`` waits for the next buffer; ``None`` means the source was closed.
    """

    def __init__(self, sample_rate: int = 16_000, maxsize: int = 32) -> None:
        self.sample_rate = sample_rate
        self._queue: asyncio.Queue[AudioChunk | None] = asyncio.Queue(maxsize=maxsize)
        self._open = False

    async def open(self) -> None:
        self.flush()
        self._open = True

    def flush(self) -> int:
        dropped = 0
        while not self._queue.empty():
            if self._queue.get_nowait() is not None:
                dropped += 1
        if dropped:
            logger.debug("audio.flushed", dropped=dropped)
        return dropped

    def push(self, samples: np.ndarray) -> bool:
        """Enqueue a buffer; drops it (returns ``False``) when closed or full."""
        if not self._open:
            return False
        try:
            self._queue.put_nowait(AudioChunk(np.asarray(samples, dtype=np.float32), self.sample_rate))
        except asyncio.QueueFull:
            logger.warning("audio.buffer_dropped", queued=self._queue.qsize())
            return False
        return True

    async def read(self) -> AudioChunk | None:
        if not self._open and self._queue.empty():
            return None
        return await self._queue.get()

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self.flush()
        self._queue.put_nowait(None)
