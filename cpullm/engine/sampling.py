"""Next-token selection.

`SamplerChain` applies a fixed five-stage pipeline to a score vector (one
score per vocabulary id):

    repetition penalty -> top-k -> top-p -> temperature -> selection

Each stage can be disabled through `SamplerConfig`. Selection is either a
deterministic arg-max or one draw from the normalized distribution.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Iterator

import torch

logger = logging.getLogger(__name__)

DEFAULT_PENALTY_LAST_N = 256


@dataclass(frozen=True)
class SamplerConfig:
    """Per-request sampling settings.

    Notes:
    - `repeat_penalty == 1.0` disables the penalty stage.
    - `top_k <= 0` and `top_p <= 0` disable their filters.
    - `temperature <= 0` skips scaling; it does not imply greedy selection.
    """

    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    penalty_last_n: int = DEFAULT_PENALTY_LAST_N
    greedy: bool = False
    seed: int | None = None
    min_keep: int = 1

    def validate(self) -> None:
        if self.repeat_penalty <= 0:
            raise ValueError("'repeat_penalty' must be > 0.")
        if self.penalty_last_n < 0:
            raise ValueError("'penalty_last_n' must be >= 0.")
        if self.min_keep < 1:
            raise ValueError("'min_keep' must be >= 1.")


class SamplingState:
    """Bounded history of accepted tokens, consumed by the penalty stage."""

    def __init__(self, window: int = DEFAULT_PENALTY_LAST_N) -> None:
        if window < 0:
            raise ValueError("'window' must be >= 0.")
        self._history: deque[int] = deque(maxlen=window)
        self._accepted = 0

    @property
    def window(self) -> int:
        return self._history.maxlen or 0

    @property
    def accepted_count(self) -> int:
        """Total tokens accepted over the lifetime of this state."""
        return self._accepted

    def accept(self, token_id: int) -> None:
        self._history.append(int(token_id))
        self._accepted += 1

    def accept_all(self, token_ids: Iterable[int]) -> None:
        for token_id in token_ids:
            self.accept(token_id)

    def recent(self) -> list[int]:
        return list(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def __iter__(self) -> Iterator[int]:
        return iter(self._history)


class SamplerChain:
    """Turns a score vector into one token id."""

    def __init__(self, config: SamplerConfig, *, n_vocab: int) -> None:
        config.validate()
        if n_vocab <= 0:
            raise ValueError(f"n_vocab must be > 0, got {n_vocab}")
        self._config = config
        self._n_vocab = int(n_vocab)
        self._generator = torch.Generator(device="cpu")
        if config.seed is not None:
            self._generator.manual_seed(int(config.seed))
        else:
            self._generator.seed()

    @property
    def config(self) -> SamplerConfig:
        return self._config

    def sample(self, scores: torch.Tensor, state: SamplingState) -> int:
        """Run every enabled stage and return the selected id."""
        cfg = self._config
        logits = self._prepare(scores)

        logits = apply_repetition_penalty(logits, state.recent(), cfg.repeat_penalty)
        logits = apply_top_k(logits, cfg.top_k, min_keep=cfg.min_keep)
        logits = apply_top_p(logits, cfg.top_p, min_keep=cfg.min_keep)
        logits = apply_temperature(logits, cfg.temperature)

        if cfg.greedy:
            return int(torch.argmax(logits).item())
        return self._draw(logits)

    def _prepare(self, scores: torch.Tensor) -> torch.Tensor:
        logits = scores.detach().reshape(-1).to(device="cpu", dtype=torch.float32).clone()
        if logits.numel() != self._n_vocab:
            raise ValueError(
                f"Score vector has {logits.numel()} entries, expected n_vocab={self._n_vocab}."
            )
        return logits

    def _draw(self, logits: torch.Tensor) -> int:
        # Softmax in fp32; masked candidates are -inf and get zero mass.
        probs = torch.softmax(logits, dim=-1)

        if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            probs = torch.clamp(probs, min=0.0)
            z = probs.sum()
            if z <= 0:
                logger.debug("Sampling distribution has no mass; using arg-max.")
                return int(torch.argmax(logits).item())
            probs = probs / z

        return int(torch.multinomial(probs, 1, generator=self._generator).item())


def apply_repetition_penalty(logits: torch.Tensor, history: list[int], penalty: float) -> torch.Tensor:
    """Scale down scores of ids present in `history`.

    Positive scores are divided by the penalty and negative scores multiplied,
    so a penalty > 1 always makes a repeated token less likely.
    """
    if penalty == 1.0 or not history:
        return logits
    n_vocab = logits.numel()
    ids = torch.tensor(sorted({t for t in history if 0 <= t < n_vocab}), dtype=torch.long)
    if ids.numel() == 0:
        return logits
    out = logits.clone()
    selected = out[ids]
    out[ids] = torch.where(selected > 0, selected / penalty, selected * penalty)
    return out


def apply_top_k(logits: torch.Tensor, k: int, *, min_keep: int = 1) -> torch.Tensor:
    """Keep the k highest-scoring candidates."""
    if k <= 0:
        return logits
    k = max(int(k), min_keep)
    if k >= logits.numel():
        return logits
    kth = torch.topk(logits, k).values[-1]
    return logits.masked_fill(logits < kth, float("-inf"))


def apply_top_p(logits: torch.Tensor, p: float, *, min_keep: int = 1) -> torch.Tensor:
    """Keep the smallest score-sorted prefix whose cumulative mass reaches p."""
    if p <= 0 or p >= 1.0:
        return logits
    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    cumulative = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # First index where the running mass reaches p; everything after it is dropped.
    reached = torch.nonzero(cumulative >= p)
    cutoff = int(reached[0].item()) + 1 if reached.numel() else logits.numel()
    cutoff = max(cutoff, min_keep)
    if cutoff >= logits.numel():
        return logits

    out = torch.full_like(logits, float("-inf"))
    keep = sorted_idx[:cutoff]
    out[keep] = logits[keep]
    return out


def apply_temperature(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    if temperature <= 0:
        return logits
    return logits / float(temperature)
