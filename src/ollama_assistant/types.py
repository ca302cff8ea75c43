"""Shared data types for Ollama Assistant."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(enum.Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    """One message in a conversation.  Never mutated once appended."""

    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class RequestState(enum.Enum):
    """Single-flight state of a session or completion service."""

    IDLE = "idle"
    ACTIVE = "active"


# ---------------------------------------------------------------------------
# Backend stream content
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextFragment:
    """An incremental piece of streamed response text."""

    text: str


@dataclass(frozen=True)
class UsageReport:
    """Token usage reported by the backend, usually at the end of a stream."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    durations: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownContent:
    """Stream item of a kind this package does not interpret."""

    kind: str


StreamContent = Union[TextFragment, UsageReport, UnknownContent]


@dataclass
class BackendOptions:
    """Per-call options passed to a backend."""

    context_window: int | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted to UI and log observers."""

    USER_MESSAGE = "session.user_message"
    RESPONSE_FRAGMENT = "session.response_fragment"
    LOG_ENTRY = "session.log_entry"
    ERROR = "session.error"
    CANCELED = "session.canceled"


@dataclass
class SessionEvent:
    """Event emitted by a session or completion service."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        """Primary text payload (fragment, message, log line)."""
        return self.data.get("text", "")
