"""Tests for capability protocols and the OpenCV / queue implementations."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeCamera, FakeDetector, FakeRecognizer
from therapy_affect.detection.errors import DeviceUnavailable, ModelLoadFailed
from therapy_affect.detection.sources import (
    AudioSource,
    ExpressionDetector,
    FrameSource,
    HaarCascadeFaceDetector,
    OpenCVCamera,
    QueueAudioSource,
    SpeechRecognizer,
)


def test_doubles_satisfy_protocols():
    assert isinstance(FakeCamera(), FrameSource)
    assert isinstance(FakeDetector(), ExpressionDetector)
    assert isinstance(FakeRecognizer(), SpeechRecognizer)
    assert isinstance(QueueAudioSource(), AudioSource)
    assert isinstance(OpenCVCamera(), FrameSource)
    assert isinstance(HaarCascadeFaceDetector(), ExpressionDetector)


class TestHaarCascadeFaceDetector:
    @pytest.mark.asyncio
    async def test_blank_frame_has_no_face(self):
        detector = HaarCascadeFaceDetector()
        await detector.load()
        frame = np.zeros((240, 320, 3), dtype=np.uint8)
        assert await detector.detect(frame) is None

    @pytest.mark.asyncio
    async def test_missing_cascades(self, tmp_path):
        detector = HaarCascadeFaceDetector(cascade_dir=f"{tmp_path}/")
        with pytest.raises(ModelLoadFailed):
            await detector.load()

    @pytest.mark.asyncio
    async def test_detect_before_load(self):
        with pytest.raises(ModelLoadFailed):
            await HaarCascadeFaceDetector().detect(np.zeros((10, 10), dtype=np.uint8))


class TestOpenCVCamera:
    @pytest.mark.asyncio
    async def test_missing_device(self):
        camera = OpenCVCamera(index=97)
        with pytest.raises(DeviceUnavailable):
            await camera.open()
        assert not camera.is_open
        assert await camera.read() is None
        await camera.close()


class TestQueueAudioSource:
    @pytest.mark.asyncio
    async def test_push_read_close(self):
        source = QueueAudioSource(sample_rate=8_000)
        assert not source.push(np.zeros(4))

        await source.open()
        assert source.push([0.1, 0.2])
        chunk = await source.read()
        assert chunk.sample_rate == 8_000
        assert chunk.samples.dtype == np.float32

        await source.close()
        assert await source.read() is None

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        source = QueueAudioSource(maxsize=1)
        await source.open()
        assert source.push(np.ones(4))
        assert not source.push(np.ones(4))

    @pytest.mark.asyncio
    async def test_flush_drops_queued_buffers(self):
        source = QueueAudioSource()
        await source.open()
        for _ in range(3):
            source.push(np.ones(4))
        assert source.flush() == 3
        assert source.flush() == 0

        assert source.push(np.full(4, 0.25))
        chunk = await source.read()
        assert chunk.samples[0] == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_reopen_discards_stale_buffers(self):
        source = QueueAudioSource()
        await source.open()
        source.push(np.ones(4))
        await source.close()
        await source.open()
        assert source.push(np.full(4, 0.5))
        chunk = await source.read()
        assert chunk.samples[0] == pytest.approx(0.5)
