"""Inline code completion: one-shot requests with no conversation history."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from ollama_assistant.config import ConfigSupplier, validate_endpoint
from ollama_assistant.errors import BackendError, ConfigError
from ollama_assistant.events.bus import EventBus
from ollama_assistant.llm.backend import (
    BackendBinding,
    BackendFactory,
    default_backend_factory,
)
from ollama_assistant.types import (
    BackendOptions,
    ConversationTurn,
    EventType,
    RequestState,
    Role,
    SessionEvent,
)

_logger = logging.getLogger(__name__)

# Editors only ask for a suggestion once this much code precedes the cursor
MIN_CODE_BEFORE = 10

_CODE_BLOCK_RE = re.compile(r"```([^\n]*)\n([\s\S]*?)```")

_COMPLETION_TEMPLATE = """\
You are an expert {language}code autocompleter. Given the full context of the code \
(both before and after the cursor), generate only the minimal and logically correct \
completion at the current cursor position. Do not repeat existing keywords or syntax \
already present.

Do not add explanations, comments, or markdown formatting. Output only the new code \
needed to complete the current statement or structure.

Existing code before cursor:
{code_before}

Existing code after cursor:
{code_after}

Completion:"""


def build_completion_prompt(
    code_before: str, code_after: str, language: str | None = None,
) -> str:
    """Prompt asking for only the new code at the cursor."""
    return _COMPLETION_TEMPLATE.format(
        language=f"{language} " if language else "",
        code_before=code_before,
        code_after=code_after,
    )


class CodeCompletionService:
    """Single-flight inline completion against its own backend client.

    Never touches a chat history.  Failures produce an ERROR event on the
    attached bus and an empty result; nothing is raised to the caller.
    """

    def __init__(
        self,
        config: ConfigSupplier,
        backend_factory: BackendFactory | None = None,
        event_bus: EventBus | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._config = config
        self._binding = BackendBinding(
            backend_factory
            or default_backend_factory(getattr(config, "timeout", 120))
        )
        self._event_bus = event_bus
        self._max_tokens = max_tokens
        self._state = RequestState.IDLE
        self._cancel_event: asyncio.Event | None = None

    def is_active(self) -> bool:
        return self._state is RequestState.ACTIVE

    async def complete(
        self,
        code_before: str,
        code_after: str,
        language: str | None = None,
    ) -> str:
        """Return the trimmed completion for the cursor position.

        Returns an empty string when busy, canceled or on error.  Echoed
        source and stray fences are left in place; see
        :func:`extract_new_code` for the editor-side cleanup.
        """
        if self.is_active():
            return ""

        self._state = RequestState.ACTIVE
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        try:
            url, model = validate_endpoint(self._config)
            client = await self._binding.ensure(url, model)
            prompt = build_completion_prompt(code_before, code_after, language)
            options = BackendOptions(
                temperature=getattr(self._config, "temperature", None),
                max_tokens=self._max_tokens,
            )
            text = await client.complete_once(
                [ConversationTurn(Role.USER, prompt)], options, cancel_event,
            )
            if cancel_event.is_set():
                return ""
            return (text or "").strip()
        except (BackendError, ConfigError) as e:
            _logger.warning("Code completion failed: %s", e)
            await self._emit(EventType.ERROR, {"text": str(e) or type(e).__name__})
            return ""
        except Exception as e:
            _logger.exception("Code completion failed")
            await self._emit(EventType.ERROR, {"text": str(e) or type(e).__name__})
            return ""
        finally:
            self._cancel_event = None
            self._state = RequestState.IDLE

    def cancel(self) -> None:
        """Request cancellation of the in-flight completion (no-op when idle)."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def aclose(self) -> None:
        """Cancel any in-flight completion and release the backend client."""
        self.cancel()
        await self._binding.release()

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(SessionEvent(type=event_type, data=data))


# ---------------------------------------------------------------------------
# Editor-side helpers
# ---------------------------------------------------------------------------

def should_request_completion(code_before: str) -> bool:
    """Whether the text before the cursor warrants a suggestion."""
    if len(code_before) < MIN_CODE_BEFORE:
        return False
    return not code_before.endswith((" ", "\n"))


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or *text* unchanged."""
    m = _CODE_BLOCK_RE.search(text)
    if m:
        return m.group(2).strip()
    return text


def remove_overlap(response: str, code_before: str) -> str:
    """Drop the longest prefix of *response* that repeats the end of *code_before*."""
    if not response or not code_before:
        return response or ""
    for length in range(min(len(code_before), len(response)), 0, -1):
        if code_before.endswith(response[:length]):
            return response[length:]
    return response


def extract_new_code(response: str, code_before: str) -> str:
    """Strip fences and echoed source from a raw completion."""
    return remove_overlap(strip_code_fences(response), code_before).strip()
