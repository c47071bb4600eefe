"""Chat client — remote conversational service with a canned local fallback.

``ChatClient.chat`` never raises: a missing endpoint, a timeout, a transport
error or an unreadable payload all produce one of :data:`FALLBACK_RESPONSES`.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from therapy_affect.config import Settings, get_settings

logger = structlog.get_logger(__name__)

FALLBACK_RESPONSES: tuple[str, ...] = (
    "I understand how you feel. Would you like to tell me more?",
    "Thanks for sharing that. What's been the hardest part?",
    "I'm here to listen. What would help you the most right now?",
    "That's really brave of you to share. How do you feel about it?",
    "I hear you. What would make you feel better today?",
)


@dataclass(frozen=True, slots=True)
class ChatReply:
    content: str
    fallback: bool = False


def _extract_content(payload: Any) -> str:
    """Accept ``{"message": {"content": ...}}`` or ``{"content": ...}``."""
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(payload.get("content"), str):
            return payload["content"]
    raise ValueError("Chat response has no content")


class ChatClient:
    """POST prompts to ``chat_api_url``.

    Parameters
    ----------
    settings : Settings, optional
        Endpoint, API key and timeout; defaults to :func:`get_settings`.
    client : httpx.AsyncClient, optional
        Injected transport (tests use ``httpx.MockTransport``).
    rng : random.Random, optional
        Picks the fallback response.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._url = settings.chat_api_url
        self._api_key = settings.chat_api_key
        self._timeout = settings.chat_timeout_seconds
        self._client = client
        self._rng = rng or random.Random()

    @property
    def configured(self) -> bool:
        return bool(self._url)

    def fallback(self) -> ChatReply:
        return ChatReply(content=self._rng.choice(FALLBACK_RESPONSES), fallback=True)

    async def chat(self, prompt: str) -> ChatReply:
        if not self._url:
            logger.debug("chat.fallback", reason="not_configured")
            return self.fallback()

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self._url, json={"prompt": prompt}, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json={"prompt": prompt}, headers=headers)
            resp.raise_for_status()
            content = _extract_content(resp.json())
        except httpx.TimeoutException:
            logger.warning("chat.fallback", reason="timeout", timeout=self._timeout)
            return self.fallback()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("chat.fallback", reason="error", error=str(exc))
            return self.fallback()

        logger.info("chat.replied", length=len(content))
        return ChatReply(content=content)
