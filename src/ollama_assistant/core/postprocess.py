"""Repair and annotation of a finished (or canceled) response."""

from __future__ import annotations

from dataclasses import dataclass, field

FENCE = "```"
CLOSING_FENCE = "\n```"
CANCELLATION_NOTICE = (
    "\n\n...This response was cut short because the user canceled the request.\n\n"
)
CANCELED_LABEL = "\n\nQuery Canceled"


@dataclass(frozen=True)
class FinalizedResponse:
    """Result of :meth:`ResponsePostProcessor.finalize`.

    ``fragments`` holds the text appended for display (the fence fix), in
    order.  ``canceled`` is the truncation signal; the cancellation notice is
    part of ``text`` but never of ``fragments``.
    """

    text: str
    fragments: tuple[str, ...] = field(default_factory=tuple)
    canceled: bool = False


class ResponsePostProcessor:
    """Balances code fences and marks user-canceled responses."""

    def __init__(
        self,
        cancellation_notice: str = CANCELLATION_NOTICE,
        canceled_label: str = CANCELED_LABEL,
    ) -> None:
        self.cancellation_notice = cancellation_notice
        self.canceled_label = canceled_label

    def finalize(self, full_text: str, was_canceled: bool) -> FinalizedResponse:
        text = full_text
        fragments: list[str] = []

        if full_text.count(FENCE) % 2 != 0:
            text += CLOSING_FENCE
            fragments.append(CLOSING_FENCE)

        if was_canceled:
            text += self.cancellation_notice

        return FinalizedResponse(
            text=text, fragments=tuple(fragments), canceled=was_canceled,
        )
