"""LLM backends for Ollama Assistant."""

from ollama_assistant.llm.backend import (
    BackendBinding,
    BackendFactory,
    StreamingChatBackend,
    default_backend_factory,
)
from ollama_assistant.llm.client import OllamaChatClient, list_models

__all__ = [
    "BackendBinding",
    "BackendFactory",
    "OllamaChatClient",
    "StreamingChatBackend",
    "default_backend_factory",
    "list_models",
]
