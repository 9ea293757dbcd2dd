"""Engine request and response types.

These types are used internally by the engine and runtimes.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Sequence

from .errors import GenerationError


DEFAULT_MAX_TOKENS = 128
DEFAULT_TEMPERATURE = 0.8
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.9
DEFAULT_REPEAT_PENALTY = 1.1


class StopReason(str, enum.Enum):
    EOS = "EOS"
    STOP_SEQUENCE = "STOP_SEQUENCE"
    MAX_TOKENS = "MAX_TOKENS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class GenerationRequest:
    """Request for a single completion."""

    user_prompt: str
    system_prompt: str = ""
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    top_k: int = DEFAULT_TOP_K
    top_p: float = DEFAULT_TOP_P
    repeat_penalty: float = DEFAULT_REPEAT_PENALTY


@dataclass(frozen=True)
class Timing:
    prompt_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one session.

    `error` is set iff `stop_reason` is ERROR. `text` holds whatever output was
    accumulated before the session ended, including on error.
    """

    text: str
    stop_reason: StopReason
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: GenerationError | None = None
    timed_out: bool = False
    timing: Timing = field(default_factory=Timing)

    @property
    def ok(self) -> bool:
        return self.stop_reason is not StopReason.ERROR


@dataclass(frozen=True)
class DecodeBatch:
    """One decode step: token ids, absolute positions, and which positions need scores."""

    tokens: tuple[int, ...]
    positions: tuple[int, ...]
    seq_id: int = 0
    logits: tuple[bool, ...] = ()

    def __post_init__(self) -> None:
        if not self.tokens:
            raise ValueError("DecodeBatch must contain at least one token.")
        if len(self.positions) != len(self.tokens):
            raise ValueError("DecodeBatch positions must match tokens in length.")
        if len(self.logits) != len(self.tokens):
            raise ValueError("DecodeBatch logits flags must match tokens in length.")

    def __len__(self) -> int:
        return len(self.tokens)

    @classmethod
    def for_prompt(cls, tokens: Sequence[int], *, seq_id: int = 0) -> "DecodeBatch":
        """Positions [0, n); scores are requested only for the final position."""
        n = len(tokens)
        return cls(
            tokens=tuple(int(t) for t in tokens),
            positions=tuple(range(n)),
            seq_id=seq_id,
            logits=tuple(i == n - 1 for i in range(n)),
        )

    @classmethod
    def single(cls, token: int, position: int, *, seq_id: int = 0) -> "DecodeBatch":
        return cls(tokens=(int(token),), positions=(int(position),), seq_id=seq_id, logits=(True,))


@dataclass(frozen=True)
class ModelInfo:
    """Information about a loaded model."""

    model_path: str
    runtime: str
    n_ctx: int
    n_vocab: int
    thread_count: int
