"""Ollama Assistant: chat and code-completion sessions for local Ollama models."""

from ollama_assistant.config import AssistantConfig, load_config
from ollama_assistant.core import ChatSession, CodeCompletionService
from ollama_assistant.events.bus import EventBus
from ollama_assistant.types import EventType, SessionEvent

__version__ = "0.3.0"

__all__ = [
    "AssistantConfig",
    "ChatSession",
    "CodeCompletionService",
    "EventBus",
    "EventType",
    "SessionEvent",
    "load_config",
]
