"""Async client for the Ollama native chat API (``/api/chat``).

Implements :class:`~ollama_assistant.llm.backend.StreamingChatBackend` on top
of ``httpx.AsyncClient``.  Streaming responses are newline-delimited JSON;
each line is mapped onto the stream content union of
:mod:`ollama_assistant.types`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from ollama_assistant.errors import BackendError
from ollama_assistant.types import (
    BackendOptions,
    ConversationTurn,
    StreamContent,
    TextFragment,
    UnknownContent,
    UsageReport,
)

_logger = logging.getLogger(__name__)

# Retry configuration
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4
_RETRYABLE_STATUS = (429, 500, 502, 503, 504)

# Smallest num_ctx we shrink to when Ollama runs out of memory
_OOM_MIN_CONTEXT = 8192

# OOM detection keywords in Ollama error responses
_OOM_KEYWORDS = (
    "out of memory",
    "oom",
    "exit status 2",
    "not enough memory",
    "alloc",
    "unexpectedly stopped",
    "resource limitations",
)

# Timing fields of the final ``done`` chunk, in nanoseconds
_DURATION_FIELDS = (
    "load_duration",
    "total_duration",
    "prompt_eval_duration",
    "eval_duration",
)


def _is_oom_error(body: str) -> bool:
    """Check if an Ollama error body indicates an out-of-memory condition."""
    lower = body.lower()
    return any(kw in lower for kw in _OOM_KEYWORDS)


def _base_url(endpoint_url: str) -> str:
    # The native API lives at the server root, not under the OpenAI /v1 prefix
    return endpoint_url.rstrip("/").removesuffix("/v1")


def _usage_from(data: dict[str, Any]) -> UsageReport:
    """Build a UsageReport from the final ``done`` chunk."""
    input_tokens = data.get("prompt_eval_count")
    output_tokens = data.get("eval_count")
    total: int | None = None
    if input_tokens is not None or output_tokens is not None:
        total = (input_tokens or 0) + (output_tokens or 0)
    durations = {
        name: data[name] for name in _DURATION_FIELDS if name in data
    }
    return UsageReport(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        durations=durations,
    )


def _parse_line(line: str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise BackendError(f"Malformed stream item: {line[:200]!r}") from e
    if not isinstance(data, dict):
        raise BackendError(f"Unexpected stream item: {line[:200]!r}")
    if data.get("error"):
        raise BackendError(f"Ollama error: {data['error']}")
    return data


class OllamaChatClient:
    """Async client for one model on one Ollama server.

    Parameters
    ----------
    endpoint_url:
        Server URL, e.g. ``http://localhost:11434``.  A trailing ``/v1`` is
        stripped.
    model:
        Model name sent with every request.
    timeout:
        Overall request timeout in seconds.
    transport:
        Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        endpoint_url: str,
        model: str,
        timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.model = model
        base_url = _base_url(endpoint_url)
        headers = {"Content-Type": "application/json"}

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30, read=300),
            transport=transport,
        )
        self._stream_client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30, read=60),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def _payload(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
        stream: bool,
    ) -> dict[str, Any]:
        opts: dict[str, Any] = {}
        if options.context_window:
            opts["num_ctx"] = options.context_window
        if options.temperature is not None:
            opts["temperature"] = options.temperature
        if options.max_tokens:
            opts["num_predict"] = options.max_tokens
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [t.to_message() for t in turns],
            "stream": stream,
        }
        if opts:
            payload["options"] = opts
        if options.extra:
            payload.update(options.extra)
        return payload

    @staticmethod
    def _shrink_context_on_oom(payload: dict[str, Any], body: str) -> None:
        if not _is_oom_error(body):
            return
        current_ctx = payload.get("options", {}).get("num_ctx", 0)
        if current_ctx > _OOM_MIN_CONTEXT:
            new_ctx = max(_OOM_MIN_CONTEXT, current_ctx // 2)
            payload.setdefault("options", {})["num_ctx"] = new_ctx
            _logger.warning(
                "Ollama OOM with num_ctx=%d, reducing to %d",
                current_ctx, new_ctx,
            )
        else:
            _logger.warning("Ollama OOM at minimum num_ctx, retrying...")

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete_once(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Send a non-streaming chat request and return the reply text.

        Returns an empty string when *cancel_event* fires first.
        """
        request = asyncio.ensure_future(self._post_chat(turns, options))
        if cancel_event is None:
            return await request

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {request, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        if request in done:
            return request.result()
        request.cancel()
        _logger.debug("One-shot request canceled")
        return ""

    async def _post_chat(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
    ) -> str:
        payload = self._payload(turns, options, stream=False)
        resp: httpx.Response | None = None
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.post("/api/chat", json=payload)
                if resp.status_code in _RETRYABLE_STATUS:
                    if resp.status_code == 500:
                        self._shrink_context_on_oom(payload, resp.text)
                    _logger.warning(
                        "Ollama API returned %d (attempt %d/%d), retrying...",
                        resp.status_code, attempt + 1, _MAX_RETRIES,
                    )
                    last_error = BackendError(
                        f"Ollama API returned {resp.status_code}",
                        status_code=resp.status_code,
                    )
                    resp = None
                    await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))
                    continue
                resp.raise_for_status()
                break
            except httpx.TimeoutException as e:
                last_error = e
                _logger.warning(
                    "Ollama API timeout (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))
            except httpx.HTTPStatusError as e:
                raise BackendError(
                    f"Ollama API error: {e}", status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                last_error = e
                _logger.warning(
                    "Ollama API error (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))

        if resp is None:
            raise BackendError(f"Ollama API error: {last_error or 'no response'}")

        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError("Ollama API error: invalid JSON") from e
        if not isinstance(data, dict) or "message" not in data:
            raise BackendError("Ollama API error: response has no message")
        if data.get("error"):
            raise BackendError(f"Ollama error: {data['error']}")
        return (data.get("message") or {}).get("content") or ""

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        turns: Sequence[ConversationTurn],
        options: BackendOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamContent]:
        """Stream a chat response.

        Yields ``TextFragment`` for each content delta and one
        ``UsageReport`` from the final ``done`` chunk.  Transport errors are
        retried only while nothing has been yielded yet.
        """
        payload = self._payload(turns, options, stream=True)
        yielded = False

        for attempt in range(_MAX_RETRIES):
            last_attempt = attempt == _MAX_RETRIES - 1
            try:
                async with self._stream_client.stream(
                    "POST", "/api/chat", json=payload,
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode(errors="replace")
                        if resp.status_code in _RETRYABLE_STATUS and not last_attempt:
                            if resp.status_code == 500:
                                self._shrink_context_on_oom(payload, body)
                            _logger.warning(
                                "Ollama stream returned %d (attempt %d/%d), retrying...",
                                resp.status_code, attempt + 1, _MAX_RETRIES,
                            )
                            await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))
                            continue
                        raise BackendError(
                            f"Ollama stream returned {resp.status_code}: {body[:200]}",
                            status_code=resp.status_code,
                        )

                    async for line in resp.aiter_lines():
                        if cancel_event is not None and cancel_event.is_set():
                            return
                        if not line.strip():
                            continue
                        data = _parse_line(line)
                        message = data.get("message")
                        if message is not None and not isinstance(message, dict):
                            yielded = True
                            yield UnknownContent(kind=type(message).__name__)
                            continue
                        chunk = (message or {}).get("content", "")
                        if chunk:
                            yielded = True
                            yield TextFragment(chunk)
                        if data.get("done"):
                            yield _usage_from(data)
                            return
                    return
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if yielded:
                    raise BackendError(f"Ollama stream interrupted: {e}") from e
                _logger.warning(
                    "Ollama stream error (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
                if last_attempt:
                    raise BackendError(f"Ollama stream error: {e}") from e
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close underlying HTTP clients."""
        await self._client.aclose()
        await self._stream_client.aclose()


async def list_models(
    endpoint_url: str,
    timeout: float = 10,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """Return the names of the models installed on an Ollama server."""
    async with httpx.AsyncClient(
        base_url=_base_url(endpoint_url), timeout=timeout, transport=transport,
    ) as client:
        try:
            resp = await client.get("/api/tags")
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise BackendError(f"Could not list models: {e}") from e
        except ValueError as e:
            raise BackendError("Could not list models: invalid JSON") from e
    return [m["name"] for m in data.get("models", []) if "name" in m]
