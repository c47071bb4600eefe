"""Data-access layer — the local key-value cache of observation history."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import structlog
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from therapy_affect.models import Channel, Observation
from therapy_affect.storage.database import KeyValueRow, get_session_factory

logger = structlog.get_logger(__name__)

_HISTORY_KEY = "emotion_stats:{channel}"


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(self, session: AsyncSession | None = None) -> None:
        self._external_session = session

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._external_session is not None:
            yield self._external_session
            return
        async with get_session_factory()() as session:
            yield session


class StatsCache(BaseRepository):
    """JSON documents under string keys, plus per-channel history helpers."""

    # ── Raw key-value access ──────────────────────────────────

    async def get(self, key: str) -> Any | None:
        async with self._session() as session:
            row = await session.get(KeyValueRow, key)
            return None if row is None else json.loads(row.value_json)

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        async with self._session() as session:
            row = await session.get(KeyValueRow, key)
            if row is None:
                session.add(KeyValueRow(key=key, value_json=payload))
            else:
                row.value_json = payload
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self._session() as session:
            result = await session.execute(delete(KeyValueRow).where(KeyValueRow.key == key))
            await session.commit()
            return result.rowcount > 0

    async def keys(self) -> list[str]:
        async with self._session() as session:
            result = await session.execute(select(KeyValueRow.key).order_by(KeyValueRow.key))
            return list(result.scalars().all())

    # ── Observation history ───────────────────────────────────

    async def save_history(self, channel: Channel, observations: Iterable[Observation]) -> int:
        documents = [o.model_dump(mode="json") for o in observations if o.channel is channel]
        await self.set(_HISTORY_KEY.format(channel=channel.value), documents)
        logger.debug("stats_cache.saved", channel=channel.value, count=len(documents))
        return len(documents)

    async def load_history(self, channel: Channel) -> list[Observation]:
        """Stored history, oldest first; malformed entries are skipped."""
        documents = await self.get(_HISTORY_KEY.format(channel=channel.value)) or []
        observations = []
        for document in documents:
            try:
                observations.append(Observation.model_validate(document))
            except ValidationError:
                logger.warning("stats_cache.invalid_entry", channel=channel.value)
        return observations

    async def clear_history(self, channel: Channel | None = None) -> None:
        channels = [channel] if channel is not None else list(Channel)
        for ch in channels:
            await self.delete(_HISTORY_KEY.format(channel=ch.value))
