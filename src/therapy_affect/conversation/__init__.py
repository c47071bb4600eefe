"""Conversation collaborator — prompt assembly and the chat client."""

from therapy_affect.conversation.client import FALLBACK_RESPONSES, ChatClient, ChatReply
from therapy_affect.conversation.prompts import AgeGroup, ChatMessage, build_prompt

__all__ = [
    "FALLBACK_RESPONSES",
    "AgeGroup",
    "ChatClient",
    "ChatMessage",
    "ChatReply",
    "build_prompt",
]
