"""Shared fakes for session and completion tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ollama_assistant.config import AssistantConfig
from ollama_assistant.types import BackendOptions, ConversationTurn

# Stream script item that blocks until the consumer gives up
HANG = object()


class FakeBackend:
    """In-memory backend replaying its factory's script."""

    def __init__(self, factory: FakeBackendFactory, url: str, model: str) -> None:
        self.factory = factory
        self.url = url
        self.model = model
        self.closed = 0
        self.stream_calls: list[tuple[list[ConversationTurn], BackendOptions]] = []
        self.once_calls: list[tuple[list[ConversationTurn], BackendOptions]] = []

    async def open_stream(self, turns, options, cancel_event=None):
        self.stream_calls.append((list(turns), options))
        for item in list(self.factory.items):
            await asyncio.sleep(0)
            if item is HANG:
                await asyncio.Event().wait()
            if isinstance(item, Exception):
                raise item
            yield item

    async def complete_once(self, turns, options, cancel_event=None):
        self.once_calls.append((list(turns), options))
        await asyncio.sleep(0)
        if self.factory.error is not None:
            raise self.factory.error
        if self.factory.reply is HANG:
            await asyncio.Event().wait()
        return self.factory.reply

    async def aclose(self) -> None:
        self.closed += 1


class FakeBackendFactory:
    def __init__(self, items: list[Any] | None = None, reply: Any = "",
                 error: Exception | None = None) -> None:
        self.items = list(items or [])
        self.reply = reply
        self.error = error
        self.created: list[FakeBackend] = []

    def __call__(self, url: str, model: str) -> FakeBackend:
        backend = FakeBackend(self, url, model)
        self.created.append(backend)
        return backend


@pytest.fixture
def config() -> AssistantConfig:
    return AssistantConfig(endpoint_url="http://localhost:11434", model_name="llama3")


@pytest.fixture
def factory() -> FakeBackendFactory:
    return FakeBackendFactory()
