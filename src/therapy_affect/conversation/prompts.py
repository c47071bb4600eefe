"""Prompt templates for the conversational collaborator.

The prompt carries the detected facial emotion and voice tone so replies can
be tuned to the user's state without the assistant saying it is analysing
them.  A missing observation simply omits the detected-state block.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Literal

from pydantic import BaseModel

from therapy_affect.models import EmotionLabel, ToneLabel

SYSTEM_MESSAGE = """\
You are a friendly AI helper. Your responses must be:
- Short and simple (1-3 sentences only)
- Kind and understanding
- Easy to understand
- Focused on the user's feelings
- Never giving medical advice

Keep all responses brief and easy to understand, regardless of age group.
"""

STATE_AWARENESS = """\
Respond with awareness of their emotional state, but don't explicitly \
mention that you're analyzing their emotions unless they ask."""

# Number of prior messages included, newest first
HISTORY_LIMIT = 10


class AgeGroup(str, Enum):
    CHILDREN = "children"
    TEENAGERS = "teenagers"
    ADULTS = "adults"


AGE_GUIDANCE: dict[AgeGroup, str] = {
    AgeGroup.CHILDREN: (
        "The user is a child. Use very simple words and short sentences. "
        "Be friendly and encouraging."
    ),
    AgeGroup.TEENAGERS: (
        "The user is a teenager. Be direct and honest. Don't talk down to them."
    ),
}


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


def build_prompt(
    message: str,
    *,
    emotion: EmotionLabel | None = None,
    tone: ToneLabel | None = None,
    age_group: AgeGroup = AgeGroup.ADULTS,
    history: Iterable[ChatMessage] = (),
) -> str:
    """Assemble the full prompt text sent to the chat service."""
    parts = [SYSTEM_MESSAGE]

    guidance = AGE_GUIDANCE.get(age_group)
    if guidance:
        parts.append(guidance)

    if emotion is not None or tone is not None:
        state = ["Detected user state:"]
        if emotion is not None:
            state.append(f'- Facial expression suggests they may be feeling "{emotion.value}"')
        if tone is not None:
            state.append(f'- Voice tone suggests they may be feeling "{tone.value}"')
        parts.append("\n".join(state))
        parts.append(STATE_AWARENESS)

    recent = list(history)[-HISTORY_LIMIT:]
    if recent:
        lines = ["Conversation history (most recent first):"]
        lines.extend(f"{m.role.upper()}: {m.content}" for m in reversed(recent))
        parts.append("\n".join(lines))

    parts.append(f"USER: {message}\n\nASSISTANT:")
    return "\n\n".join(p.strip("\n") for p in parts)
