"""Base runtime interface for model backends."""

from abc import ABC, abstractmethod
from typing import Any

import torch

from ..types import DecodeBatch


class ModelRuntime(ABC):
    """
    Abstract base class for model runtimes.

    A runtime owns the model weights, the vocabulary and a per-sequence KV
    cache. The engine drives it one decode batch at a time, so the session
    logic stays independent of any particular backend.

    Runtimes are NOT thread-safe; callers serialize access.
    """

    name: str = "base"

    @abstractmethod
    def load(self, model_path: str, *, context_size: int, thread_count: int, **kwargs: Any) -> None:
        """
        Load model and vocabulary from the given path or HF repo.

        Args:
            model_path: Local path or HF Hub model identifier.
            context_size: Context window capacity in tokens.
            thread_count: CPU threads for tensor computation (> 0).
            **kwargs: Backend-specific loading options.

        Raises:
            ModelLoadError: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def unload(self) -> None:
        """Release the model and all KV state."""
        pass

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        pass

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Context window capacity in tokens."""
        pass

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        """Length of the score vector returned by `logits()`."""
        pass

    @property
    @abstractmethod
    def eos_token_id(self) -> int | None:
        pass

    @abstractmethod
    def tokenize(self, text: str, *, add_special_tokens: bool, max_tokens: int) -> list[int]:
        """
        Tokenize `text` into at most `max_tokens` ids.

        Raises:
            TokenBufferTooSmall: If more than `max_tokens` ids are required;
                `n_required` carries the needed capacity.
        """
        pass

    @abstractmethod
    def decode(self, batch: DecodeBatch) -> None:
        """
        Run one decode step, extending the KV cache of `batch.seq_id`.

        Scores are retained for the positions flagged in `batch.logits`.

        Raises:
            Exception: On any failure. The sequence's KV cache must not be
                reused afterwards.
        """
        pass

    @abstractmethod
    def logits(self, index: int = -1) -> torch.Tensor:
        """
        Scores for one flagged position of the most recent batch.

        Args:
            index: Index among the flagged positions (-1 = last).

        Returns:
            1-D tensor of length `n_vocab`.
        """
        pass

    @abstractmethod
    def clear_kv(self, seq_id: int) -> None:
        """Drop all cached state for `seq_id`."""
        pass

    @abstractmethod
    def token_to_piece(self, token_id: int, buf: bytearray) -> int:
        """
        Write the UTF-8 bytes of one token into `buf`.

        Returns:
            The number of bytes written, or `-n` when `buf` is too small and
            `n` bytes are needed. Other negative values signal an invalid token.
        """
        pass

    @property
    def model_info(self) -> dict[str, Any]:
        """Return metadata about the loaded model."""
        return {"runtime": self.name, "loaded": self.is_loaded}
