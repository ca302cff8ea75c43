"""ChatSession: single-flight streaming chat over a conversation history.

    config → (re)bind backend → user turn → stream → post-process → assistant turn

A session owns its history, its backend client and at most one in-flight
request.  Every event is yielded to the caller of :meth:`ChatSession.send`
and, when an :class:`EventBus` is attached, published to its subscribers.
"""

from __future__ import annotations

import asyncio
import html
import logging
from typing import Any, AsyncIterator

from ollama_assistant.config import ConfigSupplier, validate_endpoint
from ollama_assistant.core.postprocess import ResponsePostProcessor
from ollama_assistant.core.usage import UsageSummary, UsageTracker
from ollama_assistant.errors import BackendError, ConfigError
from ollama_assistant.events.bus import EventBus
from ollama_assistant.llm.backend import (
    BackendBinding,
    BackendFactory,
    StreamingChatBackend,
    default_backend_factory,
)
from ollama_assistant.types import (
    BackendOptions,
    ConversationTurn,
    EventType,
    RequestState,
    Role,
    SessionEvent,
    TextFragment,
    UnknownContent,
    UsageReport,
)

_logger = logging.getLogger(__name__)

# Sentinels returned by _next_item
_END = object()
_CANCELED = object()

# Loop iterations a busy send waits for an abandoned request to close
_FINALIZE_TICKS = 3


async def _pull(stream: AsyncIterator[Any]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


async def _next_item(stream: AsyncIterator[Any], cancel_event: asyncio.Event) -> Any:
    """Read the next stream item, or ``_CANCELED`` once *cancel_event* is set.

    A backend that blocks forever is abandoned as soon as the request is
    canceled.
    """
    if cancel_event.is_set():
        return _CANCELED
    item_task = asyncio.ensure_future(_pull(stream))
    cancel_task = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait(
            {item_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        item_task.cancel()
        raise
    finally:
        cancel_task.cancel()

    if cancel_event.is_set():
        if not item_task.done():
            item_task.cancel()
        await asyncio.gather(item_task, return_exceptions=True)
        return _CANCELED
    return item_task.result()


async def _close_stream(stream: AsyncIterator[Any] | None) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        _logger.debug("Ignoring error while closing stream", exc_info=True)


class ChatSession:
    """Conversation with a streaming chat backend.

    Parameters
    ----------
    config:
        Supplies ``endpoint_url`` and ``model_name``; read on every send so
        changes made by the user take effect on the next request.
    backend_factory:
        Builds a backend for ``(url, model)``.  Defaults to the Ollama client.
    event_bus:
        Optional bus that receives every emitted event.
    usage:
        Usage tracker driving the requested context window.
    post_processor:
        Finalizes each response before it is stored.
    escape_markup:
        HTML-escape the echoed user text.  Defaults to the config's
        ``escape_markup`` (``True`` when absent).
    """

    def __init__(
        self,
        config: ConfigSupplier,
        backend_factory: BackendFactory | None = None,
        event_bus: EventBus | None = None,
        usage: UsageTracker | None = None,
        post_processor: ResponsePostProcessor | None = None,
        escape_markup: bool | None = None,
    ) -> None:
        self._config = config
        self._binding = BackendBinding(
            backend_factory
            or default_backend_factory(getattr(config, "timeout", 120))
        )
        self._event_bus = event_bus
        self._usage = usage or UsageTracker(
            minimum=getattr(config, "min_context_window", 2049),
            maximum=getattr(config, "max_context_window", 32768),
        )
        self._post_processor = post_processor or ResponsePostProcessor()
        if escape_markup is None:
            escape_markup = getattr(config, "escape_markup", True)
        self._escape_markup = escape_markup

        self._history: list[ConversationTurn] = []
        self._state = RequestState.IDLE
        self._cancel_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._history)

    @property
    def usage(self) -> UsageTracker:
        return self._usage

    @property
    def cumulative_tokens(self) -> int:
        return self._usage.cumulative_tokens

    @property
    def event_bus(self) -> EventBus | None:
        return self._event_bus

    @property
    def backend(self) -> StreamingChatBackend | None:
        """The currently bound backend client, if any."""
        return self._binding.client

    def is_active(self) -> bool:
        return self._state is RequestState.ACTIVE

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(
        self, user_text: str, contextual_prompt: str,
    ) -> AsyncIterator[SessionEvent]:
        """Send one user message and stream the assistant's response.

        Yields USER_MESSAGE, RESPONSE_FRAGMENT, LOG_ENTRY, CANCELED and ERROR
        events.  Yields nothing when a request is already active or
        *user_text* is blank.

        Closing the generator early (``aclose()``, ``break``, or dropping
        it) counts as a cancellation: the partial reply is stored with the
        cancellation notice and the session goes back to idle.
        """
        if not user_text.strip():
            return
        if self.is_active():
            await self._wait_for_abandoned()
            if self.is_active():
                return

        self._state = RequestState.ACTIVE
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        parts: list[str] = []
        awaiting_reply = False
        stream: AsyncIterator[Any] | None = None
        try:
            try:
                url, model = validate_endpoint(self._config)
                client = await self._binding.ensure(url, model)
            except Exception as e:
                _logger.warning("Cannot bind backend: %s", e)
                yield await self._emit(EventType.ERROR, {"text": _message(e)})
                return

            self._history.append(ConversationTurn(Role.USER, contextual_prompt))
            awaiting_reply = True
            _logger.debug("Prompt: %s", contextual_prompt)

            echo = html.escape(user_text) if self._escape_markup else user_text
            yield await self._emit(EventType.USER_MESSAGE, {"text": echo})

            context_window = self._usage.compute_context_window()
            options = BackendOptions(
                context_window=context_window,
                temperature=getattr(self._config, "temperature", None),
            )
            _logger.debug(
                "Streaming from %s (%s) with num_ctx=%d", url, model, context_window,
            )

            failure: Exception | None = None
            try:
                stream = client.open_stream(self.history, options, cancel_event)
                while True:
                    item = await _next_item(stream, cancel_event)
                    if item is _END or item is _CANCELED:
                        break
                    if item is None:
                        raise BackendError("Chat response was null")
                    if isinstance(item, TextFragment):
                        parts.append(item.text)
                        yield await self._emit(
                            EventType.RESPONSE_FRAGMENT, {"text": item.text},
                        )
                    elif isinstance(item, UsageReport):
                        self._usage.record_usage(item.total_tokens)
                        summary = UsageSummary.from_report(model, context_window, item)
                        yield await self._emit(EventType.LOG_ENTRY, {
                            "text": summary.format(),
                            "usage": summary.to_dict(),
                        })
                    else:
                        kind = (
                            item.kind if isinstance(item, UnknownContent)
                            else type(item).__name__
                        )
                        yield await self._emit(
                            EventType.LOG_ENTRY,
                            {"text": f"Unknown content type: {kind}"},
                        )
            except BackendError as e:
                _logger.warning("Backend error: %s", e)
                failure = e
            except Exception as e:
                _logger.exception("Chat request failed")
                failure = e

            await _close_stream(stream)
            stream = None
            if failure is not None:
                awaiting_reply = False
                yield await self._emit(EventType.ERROR, {"text": _message(failure)})
                return

            finalized = self._post_processor.finalize(
                "".join(parts), cancel_event.is_set(),
            )
            self._history.append(ConversationTurn(Role.ASSISTANT, finalized.text))
            awaiting_reply = False

            for fragment in finalized.fragments:
                yield await self._emit(
                    EventType.RESPONSE_FRAGMENT, {"text": fragment},
                )
            if finalized.canceled:
                yield await self._emit(
                    EventType.CANCELED,
                    {"text": self._post_processor.canceled_label},
                )
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away mid-request; no more yielding allowed here
            cancel_event.set()
            if awaiting_reply:
                finalized = self._post_processor.finalize("".join(parts), True)
                self._history.append(ConversationTurn(Role.ASSISTANT, finalized.text))
                _logger.debug("Request abandoned after %d fragments", len(parts))
            raise
        finally:
            self._cancel_event = None
            self._state = RequestState.IDLE
            await _close_stream(stream)

    async def _wait_for_abandoned(self) -> None:
        """Let the event loop finalize a send whose consumer dropped it.

        asyncio closes an unreferenced async generator from a task it
        schedules itself, which takes a couple of loop iterations.
        """
        for _ in range(_FINALIZE_TICKS):
            if not self.is_active():
                return
            await asyncio.sleep(0)

    async def send_and_collect(self, user_text: str, contextual_prompt: str) -> str:
        """Run :meth:`send` to completion and return the stored reply.

        Returns an empty string when the send was rejected or failed.
        """
        before = len(self._history)
        async for _ in self.send(user_text, contextual_prompt):
            pass
        if len(self._history) > before and self._history[-1].role is Role.ASSISTANT:
            return self._history[-1].content
        return ""

    async def ask_once(self, prompt: str) -> str:
        """Non-streaming request against the conversation.

        The prompt and reply are appended to history only on success.
        Returns an empty string when busy, canceled or on error.
        """
        if self.is_active():
            return ""

        self._state = RequestState.ACTIVE
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        try:
            url, model = validate_endpoint(self._config)
            client = await self._binding.ensure(url, model)
            turns = [*self._history, ConversationTurn(Role.USER, prompt)]
            options = BackendOptions(
                context_window=self._usage.compute_context_window(),
                temperature=getattr(self._config, "temperature", None),
            )
            text = await client.complete_once(turns, options, cancel_event)
            if text is None:
                raise BackendError("Chat response was null")
            if cancel_event.is_set():
                return ""
            self._history.append(turns[-1])
            self._history.append(ConversationTurn(Role.ASSISTANT, text))
            return text
        except (BackendError, ConfigError) as e:
            _logger.warning("One-shot request failed: %s", e)
            await self._emit(EventType.ERROR, {"text": _message(e)})
            return ""
        except Exception as e:
            _logger.exception("One-shot request failed")
            await self._emit(EventType.ERROR, {"text": _message(e)})
            return ""
        finally:
            self._cancel_event = None
            self._state = RequestState.IDLE

    def cancel(self) -> None:
        """Request cancellation of the in-flight request (no-op when idle)."""
        if self._cancel_event is not None:
            _logger.debug("Cancellation requested")
            self._cancel_event.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> bool:
        """Clear history and usage.  Returns ``False`` while a request is active."""
        if self.is_active():
            return False
        self._history.clear()
        self._usage.reset()
        return True

    async def aclose(self) -> None:
        """Cancel any in-flight request and release the backend client."""
        self.cancel()
        await self._binding.release()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> SessionEvent:
        event = SessionEvent(type=event_type, data=data)
        if self._event_bus is not None:
            await self._event_bus.emit(event)
        return event


def _message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
