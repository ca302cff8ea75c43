"""Fan-out of session events to UI and log observers.

Delivery order is what sessions rely on: :meth:`EventBus.emit` returns only
after every subscriber has handled the event, and sessions await it before
yielding the same event to their own caller.  Subscribers therefore see a
request's events in exactly the order the caller does, one at a time.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from ollama_assistant.types import EventType, SessionEvent

_logger = logging.getLogger(__name__)

# Subscribe with this key to receive every event type
ALL_EVENTS = "*"

# Sync or async callable taking a SessionEvent
Handler = Callable[[SessionEvent], Any]


class EventBus:
    """Ordered async pub/sub for :class:`SessionEvent`.

    Handlers of one event run sequentially: first those subscribed to its
    type, then the :data:`ALL_EVENTS` ones, each group in subscription
    order.  A failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | str, list[Handler]] = {}
        self._latest: dict[EventType, SessionEvent] = {}

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def latest(self, event_type: EventType) -> SessionEvent | None:
        """The most recent event of *event_type*, e.g. the last usage log."""
        return self._latest.get(event_type)

    async def emit(self, event: SessionEvent) -> None:
        self._latest[event.type] = event
        handlers = [
            *self._handlers.get(event.type, ()),
            *self._handlers.get(ALL_EVENTS, ()),
        ]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception(
                    "Event handler %s failed on %s",
                    getattr(handler, "__name__", handler), event.type.value,
                )
