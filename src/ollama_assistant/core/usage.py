"""Cumulative token usage and the adaptive context window derived from it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ollama_assistant.types import UsageReport

_logger = logging.getLogger(__name__)

MIN_CONTEXT_WINDOW = 2049
MAX_CONTEXT_WINDOW = 32768
_BASE_CONTEXT_WINDOW = 8192
_GROWTH_FACTOR = 1.25


class UsageTracker:
    """Accumulates token usage across turns.

    The requested context window grows with the conversation the same way
    Aider sizes ``num_ctx``::

        clamp(int(cumulative * 1.25) + 8192, minimum, maximum)
    """

    def __init__(
        self,
        minimum: int = MIN_CONTEXT_WINDOW,
        maximum: int = MAX_CONTEXT_WINDOW,
    ) -> None:
        if minimum > maximum:
            raise ValueError(f"minimum ({minimum}) exceeds maximum ({maximum})")
        self.minimum = minimum
        self.maximum = maximum
        self._cumulative = 0

    @property
    def cumulative_tokens(self) -> int:
        return self._cumulative

    def record_usage(self, total_tokens: int | None) -> None:
        """Add *total_tokens* to the running count; ``None`` is ignored."""
        if total_tokens is None:
            return
        if total_tokens < 0:
            _logger.warning("Ignoring negative token count %d", total_tokens)
            return
        self._cumulative += total_tokens

    def compute_context_window(self) -> int:
        window = int(self._cumulative * _GROWTH_FACTOR) + _BASE_CONTEXT_WINDOW
        return max(self.minimum, min(self.maximum, window))

    def reset(self) -> None:
        self._cumulative = 0


@dataclass
class UsageSummary:
    """Structured usage log entry for one streamed response."""

    model: str
    context_window: int
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    durations: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_report(
        cls, model: str, context_window: int, report: UsageReport,
    ) -> UsageSummary:
        return cls(
            model=model,
            context_window=context_window,
            input_tokens=report.input_tokens,
            output_tokens=report.output_tokens,
            total_tokens=report.total_tokens,
            durations=dict(report.durations),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "model": self.model,
            "context_window": self.context_window,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "durations": dict(self.durations),
        }

    def format(self) -> str:
        lines = [
            f"Model: {self.model}",
            f"Context Window Size: {self.context_window:,}",
            f"Input tokens: {_or_blank(self.input_tokens)}",
            f"Output tokens: {_or_blank(self.output_tokens)}",
            f"Total tokens: {_or_blank(self.total_tokens)}",
        ]
        for key, label in (
            ("load_duration", "Load duration"),
            ("total_duration", "Total duration"),
            ("prompt_eval_duration", "Prompt eval duration"),
            ("eval_duration", "Eval duration"),
        ):
            if key in self.durations:
                lines.append(f"{label}: {self.durations[key]}")
        return "\n".join(lines) + "\n"


def _or_blank(value: int | None) -> str:
    return "" if value is None else str(value)
