"""Exception hierarchy for Ollama Assistant."""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(AssistantError):
    """Missing or invalid endpoint / model configuration."""


class BackendError(AssistantError):
    """Transport failure, HTTP error or malformed stream item from a backend."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
