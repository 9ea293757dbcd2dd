"""Runtime backed by PyTorch + Hugging Face Transformers on the CPU."""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import ModelLoadError, ModelNotLoaded, TokenBufferTooSmall
from ..types import DecodeBatch
from .base import ModelRuntime

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

_BYTE_TOKEN_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")
_SENTENCEPIECE_SPACE = "▁"


@dataclass
class _SequenceState:
    """KV cache and write cursor for one sequence id."""

    past_key_values: Any
    n_past: int


def _bytes_to_unicode() -> dict[int, str]:
    """Byte-level BPE alphabet: every byte maps to a printable code point."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


class TransformersRuntime(ModelRuntime):
    """
    Causal LM runtime using `AutoModelForCausalLM` in fp32 on the CPU.

    Each sequence id owns a `past_key_values` cache plus the position of the
    next write. `decode()` only accepts positions that continue the cached
    sequence, which is how the engine drives it (prompt batch, then one
    token at a time).

    Thread Safety:
        This runtime is NOT thread-safe. `LlmEngine` serializes access.
    """

    name = "transformers"

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._n_ctx: int = 0
        self._n_vocab: int = 0
        self._thread_count: int = 0
        self._sequences: dict[int, _SequenceState] = {}
        self._last_logits: torch.Tensor | None = None
        self._byte_decoder: dict[str, int] | None = None
        self._special_ids: frozenset[int] = frozenset()
        self._logits_to_keep_kwarg: str | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._model is not None and self._tokenizer is not None

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_vocab(self) -> int:
        return self._n_vocab

    @property
    def eos_token_id(self) -> int | None:
        if self._tokenizer is None:
            return None
        return self._tokenizer.eos_token_id

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "runtime": self.name,
            "model_path": self._model_path,
            "loaded": self.is_loaded,
            "n_ctx": self._n_ctx,
            "n_vocab": self._n_vocab,
            "thread_count": self._thread_count,
            "active_sequences": len(self._sequences),
        }

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, *, context_size: int, thread_count: int, **kwargs: Any) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            context_size: Requested context window; clamped to the model's
                `max_position_embeddings` when that is smaller.
            thread_count: torch intra-op threads.
            dtype: Torch dtype (default: torch.float32).
            trust_remote_code: Passed to `from_pretrained()` (default: False).
            **kwargs: Additional kwargs passed to the model's `from_pretrained()`.
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        from cpullm.runtime import configure_torch_threads

        if context_size <= 0:
            raise ValueError(f"context_size must be > 0, got {context_size}")

        dtype = kwargs.pop("dtype", torch.float32)
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        self._thread_count = configure_torch_threads(thread_count)

        try:
            tokenizer = AutoTokenizer.from_pretrained(
                model_path,
                trust_remote_code=trust_remote_code,
            )
            model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=dtype,
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model from {model_path!r}: {exc}") from exc

        model.to("cpu")
        model.eval()

        self._model = model
        self._tokenizer = tokenizer
        self._model_path = model_path
        self._n_vocab = self._resolve_vocab_size(model)
        self._n_ctx = self._resolve_context_size(model, context_size)
        self._special_ids = frozenset(int(i) for i in getattr(tokenizer, "all_special_ids", []) or [])
        self._byte_decoder = self._resolve_byte_decoder(tokenizer)
        self._logits_to_keep_kwarg = self._resolve_logits_to_keep_kwarg(model)
        self._sequences.clear()
        self._last_logits = None

    def unload(self) -> None:
        """Unload the model and drop every KV cache."""
        import gc

        for seq_id in list(self._sequences.keys()):
            self.clear_kv(seq_id)

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None
        self._model_path = None
        self._n_ctx = 0
        self._n_vocab = 0
        self._last_logits = None
        self._byte_decoder = None
        self._special_ids = frozenset()
        self._logits_to_keep_kwarg = None

        gc.collect()

    @staticmethod
    def _resolve_vocab_size(model: Any) -> int:
        # The score vector follows the LM head, which may be padded past config.vocab_size.
        head = model.get_output_embeddings() if hasattr(model, "get_output_embeddings") else None
        weight = getattr(head, "weight", None)
        if weight is not None:
            return int(weight.shape[0])
        return int(model.config.vocab_size)

    @staticmethod
    def _resolve_context_size(model: Any, requested: int) -> int:
        limit = getattr(model.config, "max_position_embeddings", None)
        if isinstance(limit, int) and 0 < limit < requested:
            logger.warning(
                "Requested context size %d exceeds model limit %d; using %d.",
                requested,
                limit,
                limit,
            )
            return limit
        return int(requested)

    @staticmethod
    def _resolve_logits_to_keep_kwarg(model: Any) -> str | None:
        # Older transformers releases name the argument `num_logits_to_keep`.
        forward = getattr(model, "forward", None)
        if forward is None:
            return None
        params = inspect.signature(forward).parameters
        for name in ("logits_to_keep", "num_logits_to_keep"):
            if name in params:
                return name
        return None

    @staticmethod
    def _resolve_byte_decoder(tokenizer: Any) -> dict[str, int] | None:
        backend = getattr(tokenizer, "backend_tokenizer", None)
        decoder = getattr(backend, "decoder", None) if backend is not None else None
        if decoder is not None and type(decoder).__name__ == "ByteLevel":
            return {v: k for k, v in _bytes_to_unicode().items()}
        if getattr(tokenizer, "byte_decoder", None):
            return dict(tokenizer.byte_decoder)
        return None

    def _ensure_loaded(self) -> None:
        if not self.is_loaded:
            raise ModelNotLoaded()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, *, add_special_tokens: bool, max_tokens: int) -> list[int]:
        self._ensure_loaded()
        ids = self._tokenizer.encode(text, add_special_tokens=add_special_tokens)
        if len(ids) > max_tokens:
            raise TokenBufferTooSmall(len(ids))
        return [int(t) for t in ids]

    def token_to_piece(self, token_id: int, buf: bytearray) -> int:
        self._ensure_loaded()
        if not 0 <= token_id < self._n_vocab:
            return -1
        data = self._piece_bytes(int(token_id))
        if len(data) > len(buf):
            return -len(data)
        buf[: len(data)] = data
        return len(data)

    def _piece_bytes(self, token_id: int) -> bytes:
        piece = self._tokenizer.convert_ids_to_tokens(token_id)
        if piece is None:
            return b""
        if token_id in self._special_ids:
            return piece.encode("utf-8")

        match = _BYTE_TOKEN_RE.match(piece)
        if match is not None:
            return bytes([int(match.group(1), 16)])

        if self._byte_decoder is not None:
            try:
                return bytes(self._byte_decoder[ch] for ch in piece)
            except KeyError:
                # Added tokens are stored verbatim rather than byte-mapped.
                return piece.encode("utf-8")

        return piece.replace(_SENTENCEPIECE_SPACE, " ").encode("utf-8")

    # -------------------------------------------------------------------------
    # Decoding
    # -------------------------------------------------------------------------

    def clear_kv(self, seq_id: int) -> None:
        state = self._sequences.pop(seq_id, None)
        if state is not None:
            del state.past_key_values
        self._last_logits = None

    def decode(self, batch: DecodeBatch) -> None:
        self._ensure_loaded()

        import torch

        state = self._sequences.get(batch.seq_id)
        n_past = state.n_past if state is not None else 0
        expected = tuple(range(n_past, n_past + len(batch)))
        if batch.positions != expected:
            raise ValueError(
                f"Sequence {batch.seq_id} expects positions starting at {n_past}, "
                f"got {batch.positions[0]}..{batch.positions[-1]}."
            )
        if batch.positions[-1] >= self._n_ctx:
            raise ValueError(
                f"Sequence {batch.seq_id} would exceed n_ctx={self._n_ctx} at position {batch.positions[-1]}."
            )

        input_ids = torch.tensor([batch.tokens], dtype=torch.long)
        position_ids = torch.tensor([batch.positions], dtype=torch.long)

        flagged = [i for i, want in enumerate(batch.logits) if want]
        extra: dict[str, Any] = {}
        row_offset = 0
        if flagged and self._logits_to_keep_kwarg is not None:
            # The LM head then only runs over the trailing positions from the first flagged one.
            keep = len(batch) - flagged[0]
            extra[self._logits_to_keep_kwarg] = keep
            row_offset = len(batch) - keep

        try:
            with torch.no_grad():
                outputs = self._model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    past_key_values=state.past_key_values if state is not None else None,
                    use_cache=True,
                    **extra,
                )
        except Exception:
            # Cache objects may have been extended in place before the failure.
            self.clear_kv(batch.seq_id)
            raise

        self._sequences[batch.seq_id] = _SequenceState(
            past_key_values=outputs.past_key_values,
            n_past=n_past + len(batch),
        )

        if flagged:
            rows = [i - row_offset for i in flagged]
            self._last_logits = outputs.logits[0, rows, :].detach().float()
        else:
            self._last_logits = None

    def logits(self, index: int = -1) -> torch.Tensor:
        if self._last_logits is None:
            raise RuntimeError("No scores available; the last batch requested none.")
        return self._last_logits[index]
