"""DetectionHub — one façade over the per-channel orchestrators.

Collaborators (prompt builder, dashboards) talk to the hub only: lifecycle
controls per channel, read-only history snapshots, the latest fresh
observation, and cross-channel statistics.  Channels run independently;
a failure on one never stops the others.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Iterable

import structlog

from therapy_affect.affect.pipeline import build_pipelines
from therapy_affect.affect.stats import category_distribution, combined_emotion_distribution
from therapy_affect.config import Settings, get_settings
from therapy_affect.detection.orchestrator import (
    ChannelOrchestrator,
    FacialOrchestrator,
    NoticeCallback,
    ObservationCallback,
    TranscriptOrchestrator,
    VocalOrchestrator,
)
from therapy_affect.detection.sources import (
    AudioSource,
    ExpressionDetector,
    FrameSource,
    SpeechRecognizer,
)
from therapy_affect.models import Category, Channel, DetectionSession, EmotionLabel, Observation
from therapy_affect.storage.repository import StatsCache

logger = structlog.get_logger(__name__)


class DetectionHub:
    """Registry and lifecycle façade for channel orchestrators.

    Integration::

        hub = DetectionHub([facial, transcript, vocal], cache=StatsCache())
        async with hub:
            await hub.enable(Channel.FACIAL)
            state = hub.latest(Channel.FACIAL)
    """

    def __init__(
        self,
        orchestrators: Iterable[ChannelOrchestrator] = (),
        *,
        cache: StatsCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cache = cache
        self._orchestrators: dict[Channel, ChannelOrchestrator] = {}
        for orchestrator in orchestrators:
            self.register(orchestrator)

    def register(self, orchestrator: ChannelOrchestrator) -> None:
        if orchestrator.channel in self._orchestrators:
            raise ValueError(f"Channel {orchestrator.channel.value} already registered")
        self._orchestrators[orchestrator.channel] = orchestrator

    def orchestrator(self, channel: Channel) -> ChannelOrchestrator:
        try:
            return self._orchestrators[channel]
        except KeyError:
            raise KeyError(f"No orchestrator registered for channel {channel.value}") from None

    @property
    def channels(self) -> list[Channel]:
        return list(self._orchestrators)

    # ── Lifecycle controls ────────────────────────────────────

    async def enable(self, channel: Channel) -> DetectionSession:
        orchestrator = self.orchestrator(channel)
        await orchestrator.enable()
        return orchestrator.session

    async def disable(self, channel: Channel) -> DetectionSession:
        orchestrator = self.orchestrator(channel)
        await orchestrator.disable()
        return orchestrator.session

    async def retry(self, channel: Channel) -> DetectionSession:
        orchestrator = self.orchestrator(channel)
        await orchestrator.retry()
        return orchestrator.session

    async def pause(self, channel: Channel) -> DetectionSession:
        orchestrator = self.orchestrator(channel)
        await orchestrator.pause()
        return orchestrator.session

    async def resume(self, channel: Channel) -> DetectionSession:
        orchestrator = self.orchestrator(channel)
        await orchestrator.resume()
        return orchestrator.session

    def sessions(self) -> dict[Channel, DetectionSession]:
        return {channel: o.session for channel, o in self._orchestrators.items()}

    async def shutdown(self) -> None:
        """Disable every channel and persist histories when a cache is set."""
        results = await asyncio.gather(
            *(o.disable() for o in self._orchestrators.values()),
            return_exceptions=True,
        )
        for channel, result in zip(self._orchestrators, results):
            if isinstance(result, BaseException):
                logger.error("hub.disable_failed", channel=channel.value, error=str(result))
        if self._cache is not None:
            await self.persist()
        logger.info("hub.shutdown", channels=[c.value for c in self._orchestrators])

    async def __aenter__(self) -> DetectionHub:
        if self._cache is not None:
            await self.restore()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ── Queries ───────────────────────────────────────────────

    def get_history(self, channel: Channel) -> tuple[Observation, ...]:
        return self.orchestrator(channel).history()

    def latest(self, channel: Channel, *, now: datetime | None = None) -> Observation | None:
        """Most recent observation if still fresh, else ``None`` (no detected emotion)."""
        history = self.get_history(channel)
        if not history:
            return None
        observation = history[-1]
        now = now or datetime.utcnow()
        if now - observation.timestamp > timedelta(seconds=self._settings.observation_max_age_seconds):
            return None
        return observation

    def distribution(self, channel: Channel) -> dict[Category, float]:
        return category_distribution(self.get_history(channel))

    def combined_distribution(self) -> dict[EmotionLabel, float]:
        return combined_emotion_distribution(*(o.history() for o in self._orchestrators.values()))

    # ── Persistence ───────────────────────────────────────────

    async def persist(self) -> None:
        if self._cache is None:
            return
        for channel, orchestrator in self._orchestrators.items():
            await self._cache.save_history(channel, orchestrator.history())

    async def restore(self) -> None:
        """Seed empty channel histories from the cache."""
        if self._cache is None:
            return
        for channel, orchestrator in self._orchestrators.items():
            if orchestrator.history():
                continue
            observations = await self._cache.load_history(channel)
            orchestrator.pipeline.restore(observations)
            logger.debug("hub.restored", channel=channel.value, count=len(observations))


def create_hub(
    on_observation: ObservationCallback,
    *,
    camera: FrameSource | None = None,
    detector: ExpressionDetector | None = None,
    audio_source: AudioSource | None = None,
    recognizer: SpeechRecognizer | None = None,
    on_notice: NoticeCallback | None = None,
    cache: StatsCache | None = None,
    settings: Settings | None = None,
) -> DetectionHub:
    """Wire fresh pipelines and orchestrators for the available devices.

    The transcript channel is always registered; the facial channel needs a
    camera and a detector, the vocal channel an audio source.
    """
    settings = settings or get_settings()
    pipelines = build_pipelines(settings)
    common = {"on_notice": on_notice, "settings": settings}

    orchestrators: list[ChannelOrchestrator] = [
        TranscriptOrchestrator(
            pipelines[Channel.TEXT], on_observation, recognizer=recognizer, **common
        )
    ]
    if camera is not None and detector is not None:
        orchestrators.append(
            FacialOrchestrator(
                pipelines[Channel.FACIAL], on_observation, camera=camera, detector=detector, **common
            )
        )
    if audio_source is not None:
        orchestrators.append(
            VocalOrchestrator(pipelines[Channel.VOCAL], on_observation, source=audio_source, **common)
        )
    return DetectionHub(orchestrators, cache=cache, settings=settings)
