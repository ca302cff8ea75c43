"""Event bus for Ollama Assistant."""

from ollama_assistant.events.bus import ALL_EVENTS, EventBus

__all__ = ["ALL_EVENTS", "EventBus"]
