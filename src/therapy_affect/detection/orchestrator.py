"""Detection orchestrators — per-channel resource ownership and scheduling.

Architecture
~~~~~~~~~~~~
* **ChannelOrchestrator** — the state machine shared by all channels::

      IDLE → LOADING → READY → ACTIVE ⇄ PAUSED
        any state → STOPPED (disable / acquisition failure)

  It owns the session token, the per-channel busy flag and the
  transient-failure streak.
* **FacialOrchestrator** — fixed-interval frame loop over a camera and an
  expression detector.
* **TranscriptOrchestrator** — event driven; interim transcripts are
  finalised after a pause, final transcripts immediately.
* **VocalOrchestrator** — consumes buffers from an audio source.

Session tokens
~~~~~~~~~~~~~~
Every ``enable`` and every ``disable`` increments the token.  A tick captures
the token when it starts and re-checks it after each suspension point; a
stale tick is discarded before it touches history or fires a callback.

Usage::

    async with FacialOrchestrator(pipeline, on_observation, camera=cam, detector=det) as facial:
        await facial.enable()
        ...
"""

from __future__ import annotations

import asyncio
import inspect
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from therapy_affect.affect.features import FaceDetection
from therapy_affect.affect.pipeline import ChannelPipeline
from therapy_affect.config import Settings, get_settings
from therapy_affect.detection.errors import (
    DetectionError,
    DetectionTransientError,
    ModelLoadFailed,
)
from therapy_affect.detection.sources import (
    AudioSource,
    ExpressionDetector,
    FrameSource,
    SpeechRecognizer,
)
from therapy_affect.logger import channel_logger
from therapy_affect.models import (
    Channel,
    DetectionSession,
    ErrorKind,
    Observation,
    SessionState,
)

ObservationCallback = Callable[[Observation], Awaitable[None]]
NoticeCallback = Callable[[Channel, ErrorKind, str], Any]

# Confidence reported for an interim transcript finalised by the pause timer
INTERIM_FINAL_CONFIDENCE = 0.8

_LIVE_STATES = (SessionState.LOADING, SessionState.READY, SessionState.ACTIVE, SessionState.PAUSED)


class ChannelOrchestrator(ABC):
    """Lifecycle, token and error policy for one detection channel.

    Subclasses implement :meth:`_acquire`, :meth:`_release` and, for
    loop-driven channels, :meth:`_run`.
    """

    channel: Channel

    def __init__(
        self,
        pipeline: ChannelPipeline,
        on_observation: ObservationCallback,
        *,
        on_notice: NoticeCallback | None = None,
        settings: Settings | None = None,
    ) -> None:
        if pipeline.channel is not self.channel:
            raise ValueError(f"{type(self).__name__} needs a {self.channel.value} pipeline")
        self._pipeline = pipeline
        self._on_observation = on_observation
        self._on_notice = on_notice
        self._settings = settings or get_settings()
        self._log = channel_logger(__name__, self.channel)

        self._state = SessionState.IDLE
        self._token = 0
        self._last_error: ErrorKind | None = None
        self._error_message = ""
        self._failures = 0
        self._busy = False
        self._signal_seen = False
        self._task: asyncio.Task | None = None

    # ── Introspection ─────────────────────────────────────────

    @property
    def pipeline(self) -> ChannelPipeline:
        return self._pipeline

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> int:
        return self._token

    @property
    def signal_seen(self) -> bool:
        """Whether a face / voice has been seen since the last (re)start."""
        return self._signal_seen

    @property
    def session(self) -> DetectionSession:
        return DetectionSession(
            channel=self.channel,
            state=self._state,
            token=self._token,
            last_error=self._last_error,
            error_message=self._error_message,
            consecutive_failures=self._failures,
        )

    def history(self) -> tuple[Observation, ...]:
        return self._pipeline.history()

    # ── Lifecycle ─────────────────────────────────────────────

    async def enable(self) -> None:
        """Acquire resources and start detection (no-op while live)."""
        if self._state in _LIVE_STATES:
            return

        self._token += 1
        token = self._token
        self._last_error = None
        self._error_message = ""
        self._failures = 0
        self._set_state(SessionState.LOADING)

        try:
            await self._acquire_with_retry(token)
        except DetectionError as exc:
            if token != self._token:
                return
            self._token += 1
            await self._release()
            self._last_error = exc.kind
            self._error_message = exc.message
            self._set_state(SessionState.STOPPED)
            self._log.error("orchestrator.acquire_failed", kind=exc.kind.value, error=exc.message)
            await self._notify(exc.kind, exc.message)
            return

        if token != self._token:
            # Disabled while acquiring.
            await self._release()
            return

        self._set_state(SessionState.READY)
        self._start(token)
        self._log.info("orchestrator.enabled", token=token)

    async def pause(self) -> None:
        """Stop the detection loop but keep the resource."""
        if self._state is not SessionState.ACTIVE:
            return
        self._token += 1
        await self._cancel_task()
        await self._on_pause()
        self._set_state(SessionState.PAUSED)

    async def resume(self) -> None:
        if self._state is not SessionState.PAUSED:
            return
        self._token += 1
        await self._on_resume()
        self._start(self._token)

    async def disable(self) -> None:
        """Cancel detection and release the resource.  Idempotent."""
        self._token += 1
        await self._cancel_task()
        await self._on_pause()
        await self._release()
        self._set_state(SessionState.STOPPED)
        self._log.info("orchestrator.disabled", token=self._token)

    async def retry(self) -> None:
        """Tear down, let the hardware settle, then re-acquire.

        Clears the signal-seen flag; the smoothing history is kept.
        """
        await self.disable()
        await asyncio.sleep(self._settings.retry_settle_delay_ms / 1000)
        self._signal_seen = False
        await self.enable()

    async def __aenter__(self) -> ChannelOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disable()

    # ── Subclass hooks ────────────────────────────────────────

    @abstractmethod
    async def _acquire(self) -> None:
        """Open devices / load models; raise a :class:`DetectionError` on failure."""

    @abstractmethod
    async def _release(self) -> None:
        """Release devices; must be safe to call repeatedly."""

    async def _run(self, token: int) -> None:  # noqa: ARG002
        """Detection loop; event-driven channels keep the default."""

    async def _on_pause(self) -> None:
        """Cancel channel-specific pending work (timers)."""

    async def _on_resume(self) -> None:
        """Drop input captured while paused."""

    # ── Internals ─────────────────────────────────────────────

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            self._log.debug("orchestrator.state", previous=self._state.value, state=state.value)
        self._state = state

    async def _acquire_with_retry(self, token: int) -> None:
        try:
            await self._acquire()
        except ModelLoadFailed as exc:
            backoff = self._settings.model_load_retry_backoff_seconds
            self._log.warning("orchestrator.model_load_retry", error=exc.message, backoff=backoff)
            await asyncio.sleep(backoff)
            if token != self._token:
                return
            await self._acquire()

    def _start(self, token: int) -> None:
        self._set_state(SessionState.ACTIVE)
        self._task = asyncio.create_task(self._run_guarded(token))

    async def _run_guarded(self, token: int) -> None:
        try:
            await self._run(token)
        except asyncio.CancelledError:
            raise
        except DetectionError as exc:
            if token != self._token:
                return
            self._log.error("orchestrator.loop_failed", kind=exc.kind.value, error=exc.message)
            await self._stop_with_error(exc.kind, exc.message)
        except Exception as exc:  # noqa: BLE001
            if token != self._token:
                return
            message = f"Detection loop crashed: {type(exc).__name__}: {exc}"
            self._log.exception("orchestrator.loop_crashed", error=str(exc))
            await self._stop_with_error(ErrorKind.DEVICE_UNAVAILABLE, message)

    async def _stop_with_error(self, kind: ErrorKind, message: str) -> None:
        # Called from inside the loop task; disable() must not await it.
        self._task = None
        await self.disable()
        self._last_error = kind
        self._error_message = message
        await self._notify(kind, message)

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _tick(self, token: int, step: Callable[[], Awaitable[Observation | None]]) -> None:
        """Run one extract → score → smooth step with the busy guard."""
        if self._busy:
            self._log.debug("orchestrator.tick_skipped", reason="busy")
            return
        self._busy = True
        try:
            observation = await step()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if token == self._token:
                await self._record_failure(DetectionTransientError(cause=exc))
            return
        finally:
            self._busy = False

        self._failures = 0
        if observation is not None and token == self._token:
            await self._emit(observation)

    def _is_current(self, token: int) -> bool:
        return token == self._token and self._state is SessionState.ACTIVE

    async def _emit(self, observation: Observation) -> None:
        try:
            await self._on_observation(observation)
        except Exception:  # noqa: BLE001
            self._log.exception("orchestrator.callback_failed")

    async def _record_failure(self, error: DetectionTransientError) -> None:
        self._failures += 1
        self._log.warning(
            "orchestrator.tick_failed",
            error=error.message,
            consecutive=self._failures,
        )
        threshold = self._settings.transient_error_escalation
        if self._failures == threshold:
            message = f"{self._failures} consecutive detection failures: {error.message}"
            self._log.warning("orchestrator.escalated", consecutive=self._failures)
            await self._notify(ErrorKind.TRANSIENT, message)

    async def _notify(self, kind: ErrorKind, message: str) -> None:
        if self._on_notice is None:
            return
        try:
            result = self._on_notice(self.channel, kind, message)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            self._log.exception("orchestrator.notice_failed", kind=kind.value)


# ── Facial ────────────────────────────────────────────────────


class FacialOrchestrator(ChannelOrchestrator):
    """Poll the camera every ``facial_interval_ms`` and score the face."""

    channel = Channel.FACIAL

    def __init__(
        self,
        pipeline: ChannelPipeline,
        on_observation: ObservationCallback,
        *,
        camera: FrameSource,
        detector: ExpressionDetector,
        on_notice: NoticeCallback | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(pipeline, on_observation, on_notice=on_notice, settings=settings)
        self._camera = camera
        self._detector = detector
        self._interval = self._settings.facial_interval_ms / 1000

    async def _acquire(self) -> None:
        await self._camera.open()
        await self._detector.load()

    async def _release(self) -> None:
        await self._camera.close()

    async def _run(self, token: int) -> None:
        while self._is_current(token):
            await self._tick(token, lambda: self._detect_once(token))
            await asyncio.sleep(self._interval)

    async def _detect_once(self, token: int) -> Observation | None:
        frame = await self._camera.read()
        if frame is None:
            return None
        detection: FaceDetection | None = await self._detector.detect(frame)
        if not self._is_current(token):
            return None
        if detection is None:
            return None
        self._signal_seen = True
        return self._pipeline.process(detection)


# ── Transcript ────────────────────────────────────────────────

_WHITESPACE = re.compile(r"\s+")
_LONE_I = re.compile(r"\bi\b")
_SENTENCE_START = re.compile(r"(^|[.!?]\s+)([a-z])")


def normalize_transcript(transcript: str) -> str:
    """Collapse whitespace and restore the capitalisation recognisers drop."""
    text = _WHITESPACE.sub(" ", transcript).strip()
    if not text:
        return ""
    text = _LONE_I.sub("I", text)
    return _SENTENCE_START.sub(lambda m: m.group(1) + m.group(2).upper(), text)


class TranscriptOrchestrator(ChannelOrchestrator):
    """Score finalised utterances pushed by a speech recogniser.

    Call :meth:`submit` for every recogniser result.  Interim results restart
    a pause timer; if no further result arrives within
    ``speech_pause_threshold_ms`` the last interim text is finalised.
    """

    channel = Channel.TEXT

    def __init__(
        self,
        pipeline: ChannelPipeline,
        on_observation: ObservationCallback,
        *,
        recognizer: SpeechRecognizer | None = None,
        on_notice: NoticeCallback | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(pipeline, on_observation, on_notice=on_notice, settings=settings)
        self._recognizer = recognizer
        self._pause = self._settings.speech_pause_threshold_ms / 1000
        self._pending: asyncio.Task | None = None
        self.last_transcript: str = ""
        self.last_transcript_confidence: float | None = None

    async def _acquire(self) -> None:
        if self._recognizer is not None:
            await self._recognizer.start()

    async def _release(self) -> None:
        if self._recognizer is not None:
            await self._recognizer.stop()

    async def _on_pause(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass

    async def submit(
        self,
        transcript: str,
        *,
        is_final: bool,
        confidence: float | None = None,
    ) -> None:
        """Handle one recogniser result."""
        if self._state is not SessionState.ACTIVE:
            self._log.debug("transcript.dropped", state=self._state.value)
            return
        text = normalize_transcript(transcript)
        if not text:
            return

        self._signal_seen = True
        token = self._token
        await self._on_pause()
        if is_final:
            await self._finalize(token, text, confidence)
        else:
            self._pending = asyncio.create_task(self._finalize_after_pause(token, text))

    async def _finalize_after_pause(self, token: int, text: str) -> None:
        await asyncio.sleep(self._pause)
        self._pending = None
        await self._finalize(token, text, INTERIM_FINAL_CONFIDENCE)

    async def _finalize(self, token: int, text: str, confidence: float | None) -> None:
        if not self._is_current(token):
            return
        self.last_transcript = text
        self.last_transcript_confidence = confidence
        self._log.debug("transcript.finalized", length=len(text), confidence=confidence)

        async def step() -> Observation | None:
            return self._pipeline.process(text)

        await self._tick(token, step)


# ── Vocal ─────────────────────────────────────────────────────


class VocalOrchestrator(ChannelOrchestrator):
    """Score every buffer read from the audio source."""

    channel = Channel.VOCAL

    def __init__(
        self,
        pipeline: ChannelPipeline,
        on_observation: ObservationCallback,
        *,
        source: AudioSource,
        on_notice: NoticeCallback | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(pipeline, on_observation, on_notice=on_notice, settings=settings)
        self._source = source
        self._source_ended = False
        # Pause between reads while the source keeps failing
        self._failure_backoff = self._settings.retry_settle_delay_ms / 1000

    async def _acquire(self) -> None:
        await self._source.open()

    async def _release(self) -> None:
        await self._source.close()

    async def _on_resume(self) -> None:
        dropped = self._source.flush()
        if dropped:
            self._log.debug("orchestrator.paused_audio_dropped", dropped=dropped)

    async def _run(self, token: int) -> None:
        self._source_ended = False
        while self._is_current(token) and not self._source_ended:
            await self._tick(token, lambda: self._read_once(token))
            if self._failures:
                await asyncio.sleep(self._failure_backoff)

    async def _read_once(self, token: int) -> Observation | None:
        chunk = await self._source.read()
        if chunk is None:
            self._source_ended = True
            self._log.info("orchestrator.source_ended")
            return None
        return await self._score_chunk(token, chunk)

    async def _score_chunk(self, token: int, chunk: Any) -> Observation | None:
        # Feature extraction is CPU bound; smoothing stays on the loop.
        result = await asyncio.to_thread(self._pipeline.score, chunk)
        if result is None or not self._is_current(token):
            return None
        self._signal_seen = True
        return self._pipeline.record(result)
