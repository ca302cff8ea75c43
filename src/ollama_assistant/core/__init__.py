"""Core session components for Ollama Assistant."""

from ollama_assistant.core.completion import CodeCompletionService
from ollama_assistant.core.postprocess import FinalizedResponse, ResponsePostProcessor
from ollama_assistant.core.session import ChatSession
from ollama_assistant.core.usage import UsageSummary, UsageTracker

__all__ = [
    "ChatSession",
    "CodeCompletionService",
    "FinalizedResponse",
    "ResponsePostProcessor",
    "UsageSummary",
    "UsageTracker",
]
