"""Tests for the detection orchestrators: lifecycle, tokens and error policy."""

from __future__ import annotations

import asyncio
import threading

import numpy as np
import pytest

from conftest import BlockingDetector, FakeCamera, FakeDetector, FakeRecognizer, wait_for
from therapy_affect.affect.features import AudioChunk
from therapy_affect.affect.pipeline import build_pipeline
from therapy_affect.affect.scoring import ScoreResult
from therapy_affect.detection.errors import DeviceUnavailable, PermissionDenied
from therapy_affect.detection.orchestrator import (
    INTERIM_FINAL_CONFIDENCE,
    FacialOrchestrator,
    TranscriptOrchestrator,
    VocalOrchestrator,
    normalize_transcript,
)
from therapy_affect.detection.sources import QueueAudioSource
from therapy_affect.models import Channel, EmotionLabel, ErrorKind, SessionState, ToneLabel

SR = 16_000


def _facial(settings, recorder, notices, *, camera=None, detector=None) -> FacialOrchestrator:
    return FacialOrchestrator(
        build_pipeline(Channel.FACIAL, settings),
        recorder,
        camera=camera or FakeCamera(),
        detector=detector or FakeDetector(),
        on_notice=notices,
        settings=settings,
    )


def _transcript(settings, recorder, recognizer=None) -> TranscriptOrchestrator:
    return TranscriptOrchestrator(
        build_pipeline(Channel.TEXT, settings),
        recorder,
        recognizer=recognizer,
        settings=settings,
    )


# ── Facial lifecycle ──────────────────────────────────────────


class TestFacialOrchestrator:
    @pytest.mark.asyncio
    async def test_emits_observations_while_active(self, settings, recorder, notices):
        camera = FakeCamera()
        orch = _facial(settings, recorder, notices, camera=camera)

        await orch.enable()
        assert orch.state is SessionState.ACTIVE
        assert orch.session.is_active
        await wait_for(lambda: len(recorder.observations) >= 3)
        await orch.disable()

        first = recorder.observations[0]
        assert first.channel is Channel.FACIAL
        assert first.category is EmotionLabel.HAPPY
        assert first.confidence == pytest.approx(0.8)
        assert all(o.category is EmotionLabel.HAPPY for o in recorder.observations)
        assert orch.signal_seen
        assert orch.state is SessionState.STOPPED
        assert not camera.is_open
        assert notices.notices == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, kind",
        [
            (PermissionDenied("camera access denied"), ErrorKind.PERMISSION_DENIED),
            (DeviceUnavailable(), ErrorKind.DEVICE_UNAVAILABLE),
        ],
    )
    async def test_acquisition_failure_stops_without_retry(self, settings, recorder, notices, error, kind):
        camera = FakeCamera(error=error)
        detector = FakeDetector()
        orch = _facial(settings, recorder, notices, camera=camera, detector=detector)

        await orch.enable()

        assert orch.state is SessionState.STOPPED
        assert orch.session.last_error is kind
        assert notices.kinds() == [kind]
        assert camera.open_calls == 1
        assert detector.load_calls == 0
        assert recorder.observations == []

    @pytest.mark.asyncio
    async def test_model_load_retried_once(self, settings, recorder, notices):
        detector = FakeDetector(load_failures=1)
        orch = _facial(settings, recorder, notices, detector=detector)

        await orch.enable()
        try:
            assert orch.state is SessionState.ACTIVE
            assert detector.load_calls == 2
            assert notices.notices == []
        finally:
            await orch.disable()

    @pytest.mark.asyncio
    async def test_model_load_fails_after_retry(self, settings, recorder, notices):
        detector = FakeDetector(load_failures=2)
        orch = _facial(settings, recorder, notices, detector=detector)

        await orch.enable()

        assert orch.state is SessionState.STOPPED
        assert orch.session.last_error is ErrorKind.MODEL_LOAD_FAILED
        assert detector.load_calls == 2
        assert notices.kinds() == [ErrorKind.MODEL_LOAD_FAILED]

    @pytest.mark.asyncio
    async def test_disable_discards_in_flight_detection(self, settings, recorder, notices):
        camera = FakeCamera()
        detector = BlockingDetector()
        orch = _facial(settings, recorder, notices, camera=camera, detector=detector)

        await orch.enable()
        await asyncio.wait_for(detector.started.wait(), timeout=2.0)
        stale_token = orch.token
        await orch.disable()
        assert recorder.observations == []

        await orch.enable()
        assert orch.token > stale_token
        await wait_for(lambda: detector.detect_calls >= 2)
        detector.release.set()
        await wait_for(lambda: len(recorder.observations) >= 2)
        await orch.disable()

        # The first detect call belonged to the stale session; every later
        # call completed under the new token and produced one observation.
        assert len(recorder.observations) == detector.detect_calls - 1
        assert camera.open_calls == 2
        assert orch.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_transient_errors_escalate_once(self, settings, recorder, notices):
        detector = FakeDetector(error=RuntimeError("inference crashed"))
        orch = _facial(settings, recorder, notices, detector=detector)

        await orch.enable()
        await wait_for(lambda: detector.detect_calls >= 6)
        try:
            assert orch.state is SessionState.ACTIVE
            assert notices.kinds() == [ErrorKind.TRANSIENT]
            assert orch.session.consecutive_failures >= 3
            assert recorder.observations == []
        finally:
            await orch.disable()

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self, settings, recorder, notices):
        detector = FakeDetector(error=RuntimeError("flaky"))
        orch = _facial(settings, recorder, notices, detector=detector)

        await orch.enable()
        await wait_for(lambda: detector.detect_calls >= 2)
        detector.error = None
        await wait_for(lambda: len(recorder.observations) >= 1)
        await orch.disable()

        assert orch.session.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_no_face_is_not_an_error(self, settings, recorder, notices):
        detector = FakeDetector()
        detector.detection = None
        orch = _facial(settings, recorder, notices, detector=detector)

        await orch.enable()
        await wait_for(lambda: detector.detect_calls >= 3)
        await orch.disable()

        assert recorder.observations == []
        assert notices.notices == []
        assert not orch.signal_seen

    @pytest.mark.asyncio
    async def test_disable_is_idempotent(self, settings, recorder, notices):
        camera = FakeCamera()
        orch = _facial(settings, recorder, notices, camera=camera)

        await orch.disable()
        await orch.disable()
        await orch.enable()
        await orch.disable()
        await orch.disable()

        assert orch.state is SessionState.STOPPED
        assert not camera.is_open

    @pytest.mark.asyncio
    async def test_enable_while_live_is_noop(self, settings, recorder, notices):
        camera = FakeCamera()
        orch = _facial(settings, recorder, notices, camera=camera)

        await orch.enable()
        token = orch.token
        await orch.enable()
        await orch.disable()

        assert camera.open_calls == 1
        assert orch.token == token + 1

    @pytest.mark.asyncio
    async def test_retry_reacquires_and_keeps_history(self, settings, recorder, notices):
        camera = FakeCamera()
        orch = _facial(settings, recorder, notices, camera=camera)

        await orch.enable()
        await wait_for(lambda: len(recorder.observations) >= 2)
        before = len(orch.history())
        await orch.retry()
        try:
            assert orch.state is SessionState.ACTIVE
            assert camera.open_calls == 2
            assert len(orch.history()) >= before
        finally:
            await orch.disable()

    @pytest.mark.asyncio
    async def test_pause_keeps_resource(self, settings, recorder, notices):
        camera = FakeCamera()
        orch = _facial(settings, recorder, notices, camera=camera)

        await orch.enable()
        await wait_for(lambda: len(recorder.observations) >= 1)
        await orch.pause()
        assert orch.state is SessionState.PAUSED
        count = len(recorder.observations)
        await asyncio.sleep(0.05)
        assert len(recorder.observations) == count
        assert camera.is_open

        await orch.resume()
        assert orch.state is SessionState.ACTIVE
        await wait_for(lambda: len(recorder.observations) > count)
        await orch.disable()

    @pytest.mark.asyncio
    async def test_context_manager_releases(self, settings, recorder, notices):
        camera = FakeCamera()
        async with _facial(settings, recorder, notices, camera=camera) as orch:
            await orch.enable()
            assert camera.is_open
        assert orch.state is SessionState.STOPPED
        assert not camera.is_open

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_stop_loop(self, settings, notices):
        calls = []

        async def explode(observation):
            calls.append(observation)
            raise RuntimeError("consumer bug")

        orch = _facial(settings, explode, notices)
        await orch.enable()
        await wait_for(lambda: len(calls) >= 3)
        try:
            assert orch.state is SessionState.ACTIVE
            assert len(orch.history()) >= 3
        finally:
            await orch.disable()

    @pytest.mark.asyncio
    async def test_busy_channel_skips_tick(self, settings, recorder, notices):
        orch = _facial(settings, recorder, notices)
        ran = []

        async def step():
            ran.append(True)
            return None

        orch._busy = True
        await orch._tick(orch.token, step)
        assert ran == []

        orch._busy = False
        await orch._tick(orch.token, step)
        assert ran == [True]

    def test_pipeline_channel_checked(self, settings, recorder):
        with pytest.raises(ValueError):
            FacialOrchestrator(
                build_pipeline(Channel.TEXT, settings),
                recorder,
                camera=FakeCamera(),
                detector=FakeDetector(),
                settings=settings,
            )


# ── Transcript ────────────────────────────────────────────────


class TestNormalizeTranscript:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("  i think   i am fine. thanks", "I think I am fine. Thanks"),
            ("hello", "Hello"),
            ("what? no way", "What? No way"),
            ("   ", ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_transcript(raw) == expected


class TestTranscriptOrchestrator:
    @pytest.mark.asyncio
    async def test_final_result_scored_immediately(self, settings, recorder):
        recognizer = FakeRecognizer()
        orch = _transcript(settings, recorder, recognizer)

        await orch.enable()
        assert recognizer.started == 1
        await orch.submit("I am SO angry!!! This is terrible and unfair!!", is_final=True, confidence=0.9)

        assert len(recorder.observations) == 1
        obs = recorder.observations[0]
        assert obs.channel is Channel.TEXT
        assert obs.category is ToneLabel.ANGRY
        assert obs.confidence == pytest.approx(0.95)
        assert orch.last_transcript == "I am SO angry!!! This is terrible and unfair!!"
        assert orch.last_transcript_confidence == 0.9

        await orch.disable()
        assert recognizer.stopped == 1

    @pytest.mark.asyncio
    async def test_interim_finalised_after_pause(self, settings, recorder):
        orch = _transcript(settings, recorder)
        await orch.enable()

        await orch.submit("i feel so happy today", is_final=False)
        assert recorder.observations == []
        await wait_for(lambda: len(recorder.observations) == 1)

        assert orch.last_transcript == "I feel so happy today"
        assert orch.last_transcript_confidence == INTERIM_FINAL_CONFIDENCE
        await orch.disable()

    @pytest.mark.asyncio
    async def test_superseded_interim_emits_once(self, settings, recorder):
        orch = _transcript(settings, recorder)
        await orch.enable()

        await orch.submit("i am", is_final=False)
        await orch.submit("i am happy", is_final=False)
        await wait_for(lambda: len(recorder.observations) == 1)
        await asyncio.sleep(0.1)

        assert len(recorder.observations) == 1
        assert orch.last_transcript == "I am happy"
        await orch.disable()

    @pytest.mark.asyncio
    async def test_final_cancels_pending_interim(self, settings, recorder):
        orch = _transcript(settings, recorder)
        await orch.enable()

        await orch.submit("i am", is_final=False)
        await orch.submit("i am calm and relaxed", is_final=True)
        await asyncio.sleep(0.1)

        assert len(recorder.observations) == 1
        assert orch.last_transcript == "I am calm and relaxed"
        await orch.disable()

    @pytest.mark.asyncio
    async def test_results_dropped_when_not_active(self, settings, recorder):
        orch = _transcript(settings, recorder)
        await orch.submit("i am happy", is_final=True)
        assert recorder.observations == []

        await orch.enable()
        await orch.submit("i am happy", is_final=False)
        await orch.disable()
        await asyncio.sleep(0.1)

        assert recorder.observations == []
        assert orch.history() == ()

    @pytest.mark.asyncio
    async def test_blank_result_ignored(self, settings, recorder):
        orch = _transcript(settings, recorder)
        await orch.enable()
        await orch.submit("   ", is_final=True)
        assert recorder.observations == []
        assert not orch.signal_seen
        await orch.disable()


# ── Vocal ─────────────────────────────────────────────────────


class FlakySource:
    """Audio source whose first ``failures`` reads raise, then serves ``chunks``."""

    def __init__(self, failures: int, chunks: list[AudioChunk] | None = None) -> None:
        self.failures = failures
        self.chunks = list(chunks or [])
        self.reads = 0
        self._idle = asyncio.Event()

    async def open(self) -> None:
        pass

    async def read(self) -> AudioChunk | None:
        self.reads += 1
        if self.reads <= self.failures:
            raise OSError("mic glitch")
        if self.chunks:
            return self.chunks.pop(0)
        await self._idle.wait()
        return None

    async def close(self) -> None:
        self._idle.set()

    def flush(self) -> int:
        return 0


def _vocal(settings, recorder, notices, source, pipeline=None) -> VocalOrchestrator:
    return VocalOrchestrator(
        pipeline or build_pipeline(Channel.VOCAL, settings),
        recorder,
        source=source,
        on_notice=notices,
        settings=settings,
    )


def _chunk(value: float = 0.1) -> AudioChunk:
    return AudioChunk(np.full(SR // 10, value, dtype=np.float32), SR)


class TestVocalOrchestrator:
    @pytest.mark.asyncio
    async def test_scores_pushed_buffers(self, settings, recorder, notices):
        source = QueueAudioSource(sample_rate=SR)
        orch = _vocal(settings, recorder, notices, source)

        await orch.enable()
        assert source.push(np.zeros(SR, dtype=np.float32))
        assert source.push(np.random.default_rng(2).normal(0, 0.001, SR))
        # First use of the audio stack can be slow.
        await wait_for(lambda: len(recorder.observations) == 1, timeout=30.0)
        await orch.disable()

        obs = recorder.observations[0]
        assert obs.channel is Channel.VOCAL
        assert obs.category is ToneLabel.NEUTRAL
        assert obs.confidence == 0.5
        assert orch.signal_seen
        assert not source.push(np.zeros(10))
        assert notices.notices == []

    @pytest.mark.asyncio
    async def test_failing_reads_escalate_without_killing_loop(self, settings, recorder, notices):
        source = FlakySource(failures=10_000)
        orch = _vocal(settings, recorder, notices, source)

        await orch.enable()
        await wait_for(lambda: source.reads >= 5)
        try:
            assert orch.state is SessionState.ACTIVE
            assert notices.kinds() == [ErrorKind.TRANSIENT]
            assert orch.session.consecutive_failures >= 3
            assert orch._task is not None and not orch._task.done()
        finally:
            await orch.disable()

    @pytest.mark.asyncio
    async def test_loop_recovers_after_failed_read(self, settings, recorder, notices):
        pipeline = build_pipeline(Channel.VOCAL, settings)
        pipeline.score = lambda chunk: ScoreResult(ToneLabel.CALM, 0.7)
        source = FlakySource(failures=1, chunks=[_chunk(), _chunk()])
        orch = _vocal(settings, recorder, notices, source, pipeline)

        await orch.enable()
        await wait_for(lambda: len(recorder.observations) == 2)
        await orch.disable()

        assert orch.session.consecutive_failures == 0
        assert notices.notices == []

    @pytest.mark.asyncio
    async def test_crashed_loop_stops_with_notice(self, settings, recorder, notices):
        class CrashingVocal(VocalOrchestrator):
            async def _run(self, token: int) -> None:
                raise RuntimeError("audio backend exploded")

        source = QueueAudioSource(sample_rate=SR)
        orch = CrashingVocal(
            build_pipeline(Channel.VOCAL, settings),
            recorder,
            source=source,
            on_notice=notices,
            settings=settings,
        )

        await orch.enable()
        await wait_for(lambda: orch.state is SessionState.STOPPED)

        assert orch.session.last_error is ErrorKind.DEVICE_UNAVAILABLE
        assert notices.kinds() == [ErrorKind.DEVICE_UNAVAILABLE]
        assert "audio backend exploded" in notices.notices[0][2]
        assert not source.push(np.zeros(10))

    @pytest.mark.asyncio
    async def test_disable_discards_in_flight_scoring(self, settings, recorder, notices):
        entered = threading.Event()
        release = threading.Event()
        pipeline = build_pipeline(Channel.VOCAL, settings)

        def blocking_score(chunk):
            entered.set()
            release.wait(timeout=5.0)
            return ScoreResult(ToneLabel.CALM, 0.7)

        pipeline.score = blocking_score
        source = QueueAudioSource(sample_rate=SR)
        orch = _vocal(settings, recorder, notices, source, pipeline)

        await orch.enable()
        assert source.push(np.full(SR // 10, 0.1))
        await wait_for(entered.is_set)
        await orch.disable()
        await orch.enable()
        release.set()
        await asyncio.sleep(0.05)

        assert recorder.observations == []
        assert orch.history() == ()

        assert source.push(np.full(SR // 10, 0.1))
        await wait_for(lambda: len(recorder.observations) == 1)
        await asyncio.sleep(0.05)
        await orch.disable()

        assert len(recorder.observations) == 1
        assert recorder.observations[0].category is ToneLabel.CALM
        assert len(orch.history()) == 1

    @pytest.mark.asyncio
    async def test_audio_pushed_while_paused_is_dropped(self, settings, recorder, notices):
        scored: list[float] = []
        pipeline = build_pipeline(Channel.VOCAL, settings)

        def record_first_sample(chunk):
            scored.append(float(chunk.samples[0]))

        pipeline.score = record_first_sample
        source = QueueAudioSource(sample_rate=SR)
        orch = _vocal(settings, recorder, notices, source, pipeline)

        await orch.enable()
        await orch.pause()
        for _ in range(3):
            assert source.push(np.full(SR // 10, 0.1))
        await asyncio.sleep(0.02)
        await orch.resume()
        assert source.push(np.full(SR // 10, 0.2))
        await wait_for(lambda: len(scored) >= 1)
        await asyncio.sleep(0.02)
        await orch.disable()

        assert scored == [pytest.approx(0.2)]
        assert recorder.observations == []
