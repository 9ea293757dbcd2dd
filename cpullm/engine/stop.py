"""Stop-marker detection over accumulated output text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .prompt import MODEL_TURN_OPEN

# Turn-end marker first, then role switches.
DEFAULT_STOP_MARKERS: tuple[str, ...] = (
    "<end_of_turn>",
    "<start_of_turn>user",
    MODEL_TURN_OPEN,
    "\nUser:",
)


@dataclass(frozen=True)
class StopMatch:
    marker: str

    @property
    def length(self) -> int:
        return len(self.marker)

    def trim(self, text: str) -> str:
        """Remove exactly the matched suffix."""
        return text[: len(text) - self.length]


class StopDetector:
    """Suffix matcher for an ordered, fixed set of stop markers.

    `check()` must be called after every fragment append. Each call compares
    the full trailing text against every marker, so a marker split across
    fragments is still caught once its last character arrives.
    """

    def __init__(self, markers: Sequence[str] = DEFAULT_STOP_MARKERS) -> None:
        self._markers: tuple[str, ...] = tuple(m for m in markers if m)
        self._min_len = min((len(m) for m in self._markers), default=0)

    @property
    def markers(self) -> tuple[str, ...]:
        return self._markers

    @property
    def min_length(self) -> int:
        """Output shorter than this cannot end with any marker."""
        return self._min_len

    def check(self, text: str) -> StopMatch | None:
        if not self._markers or len(text) < self._min_len:
            return None
        for marker in self._markers:
            if text.endswith(marker):
                return StopMatch(marker)
        return None
