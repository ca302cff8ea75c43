"""Backend capability consumed by sessions and completion services.

A backend is a connection to one model on one model-serving endpoint.  The
core never talks HTTP itself; it only uses the protocol below, which the
Ollama client in :mod:`ollama_assistant.llm.client` implements.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Protocol, Sequence

from ollama_assistant.types import BackendOptions, ConversationTurn, StreamContent

_logger = logging.getLogger(__name__)


class StreamingChatBackend(Protocol):
    """Protocol that all backends must implement."""

    def open_stream(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamContent]:
        """Stream the response to *turns* as text / usage / unknown items.

        Implementations should stop yielding once *cancel_event* is set.
        """
        ...

    async def complete_once(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Non-streaming request; return the full response text."""
        ...

    async def aclose(self) -> None:
        """Release the underlying connection."""
        ...


# (endpoint_url, model_name) -> a fresh backend
BackendFactory = Callable[[str, str], StreamingChatBackend]


def default_backend_factory(timeout: float = 120) -> BackendFactory:
    """Return a factory building :class:`OllamaChatClient` instances."""
    from ollama_assistant.llm.client import OllamaChatClient

    def _factory(endpoint_url: str, model_name: str) -> StreamingChatBackend:
        return OllamaChatClient(endpoint_url, model_name, timeout=timeout)

    return _factory


class BackendBinding:
    """Owns the single live backend of a session or service.

    The binding is valid only while its ``(url, model)`` matches the latest
    configuration snapshot; ``ensure()`` closes the stale client before a
    new one is built, so there are never two live clients at once.
    """

    def __init__(self, factory: BackendFactory) -> None:
        self._factory = factory
        self._client: StreamingChatBackend | None = None
        self._url: str | None = None
        self._model: str | None = None

    @property
    def client(self) -> StreamingChatBackend | None:
        return self._client

    def matches(self, url: str, model: str) -> bool:
        return self._client is not None and self._url == url and self._model == model

    async def ensure(self, url: str, model: str) -> StreamingChatBackend:
        """Return a client bound to ``(url, model)``, rebinding if needed."""
        if self.matches(url, model):
            assert self._client is not None
            return self._client
        if self._client is not None:
            _logger.info(
                "Rebinding backend %s (%s) -> %s (%s)",
                self._url, self._model, url, model,
            )
        await self.release()
        self._client = self._factory(url, model)
        self._url = url
        self._model = model
        return self._client

    async def release(self) -> None:
        """Close the current client, if any."""
        client, self._client = self._client, None
        self._url = None
        self._model = None
        if client is not None:
            await client.aclose()
