"""Shared pytest fixtures and capability test doubles."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from therapy_affect.affect.features import FaceDetection
from therapy_affect.config import Settings
from therapy_affect.detection.errors import ModelLoadFailed
from therapy_affect.models import Channel, Category, ErrorKind, Observation
from therapy_affect.storage.database import init_db
from therapy_affect.storage.repository import StatsCache


# ── Settings ──────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Defaults with fast timers and an isolated database file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
        facial_interval_ms=10,
        speech_pause_threshold_ms=50,
        retry_settle_delay_ms=5,
        model_load_retry_backoff_seconds=0.01,
    )


@pytest_asyncio.fixture
async def db_session(settings):
    """Session on a fresh SQLite file with the cache table created."""
    engine = create_async_engine(settings.database_url)
    await init_db(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def stats_cache(db_session) -> StatsCache:
    return StatsCache(db_session)


# ── Recorders ─────────────────────────────────────────────────


class ObservationRecorder:
    """Async ``on_observation`` callback that keeps what it receives."""

    def __init__(self) -> None:
        self.observations: list[Observation] = []

    async def __call__(self, observation: Observation) -> None:
        self.observations.append(observation)


class NoticeRecorder:
    def __init__(self) -> None:
        self.notices: list[tuple[Channel, ErrorKind, str]] = []

    def __call__(self, channel: Channel, kind: ErrorKind, message: str) -> None:
        self.notices.append((channel, kind, message))

    def kinds(self) -> list[ErrorKind]:
        return [kind for _, kind, _ in self.notices]


@pytest.fixture
def recorder() -> ObservationRecorder:
    return ObservationRecorder()


@pytest.fixture
def notices() -> NoticeRecorder:
    return NoticeRecorder()


# ── Capability doubles ────────────────────────────────────────


class FakeCamera:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.open_calls = 0
        self.close_calls = 0
        self.is_open = False

    async def open(self) -> None:
        self.open_calls += 1
        if self.error is not None:
            raise self.error
        self.is_open = True

    async def read(self) -> Any | None:
        return "frame" if self.is_open else None

    async def close(self) -> None:
        self.close_calls += 1
        self.is_open = False


class FakeDetector:
    """Returns ``detection`` (or raises ``error``); can fail ``load`` N times."""

    def __init__(
        self,
        detection: FaceDetection | None = None,
        *,
        error: Exception | None = None,
        load_failures: int = 0,
    ) -> None:
        self.detection = detection or FaceDetection(expressions={"happy": 0.8, "neutral": 0.2})
        self.error = error
        self.load_failures = load_failures
        self.load_calls = 0
        self.detect_calls = 0

    async def load(self) -> None:
        self.load_calls += 1
        if self.load_calls <= self.load_failures:
            raise ModelLoadFailed("weights missing")

    async def detect(self, frame: Any) -> FaceDetection | None:
        self.detect_calls += 1
        if self.error is not None:
            raise self.error
        return self.detection


class BlockingDetector(FakeDetector):
    """``detect`` blocks until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def detect(self, frame: Any) -> FaceDetection | None:
        self.detect_calls += 1
        self.started.set()
        await self.release.wait()
        return self.detection


class FakeRecognizer:
    def __init__(self) -> None:
        self.started = 0
        self.stopped = 0

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1


# ── Helpers ───────────────────────────────────────────────────


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.005)


def make_observation(
    channel: Channel,
    category: Category,
    confidence: float = 0.7,
    timestamp: datetime | None = None,
) -> Observation:
    return Observation(
        channel=channel,
        category=category,
        confidence=confidence,
        timestamp=timestamp or datetime.utcnow(),
    )
