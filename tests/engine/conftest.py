from __future__ import annotations

import threading
import time

import pytest
import torch

from cpullm.engine.errors import ModelNotLoaded, TokenBufferTooSmall
from cpullm.engine.runtimes.base import ModelRuntime

EOS = 2

# Token id -> UTF-8 bytes of its text.
PIECES: dict[int, bytes] = {
    3: b"Hel",
    4: b"lo",
    5: b" world",
    6: b"<end_of_turn>",
    7: b"\xc3",  # first byte of "é"
    8: b"\xa9",  # second byte of "é"
    9: b"a" * 100,
    10: b"<end_of",
    11: b"_turn>",
}
INVALID_PIECE = 12
N_VOCAB = 16


class FakeRuntime(ModelRuntime):
    """Scripted runtime: the n-th sampled token is `script[n]` under greedy selection."""

    name = "fake"

    def __init__(
        self,
        script: list[int] | None = None,
        *,
        n_ctx: int = 512,
        prompt_len: int = 8,
        fail_decode_at: int | None = None,
        tokenize_always_small: bool = False,
        decode_delay_s: float = 0.0,
    ) -> None:
        self.script = list(script or [])
        self._n_ctx = n_ctx
        self.prompt_len = prompt_len
        self.fail_decode_at = fail_decode_at
        self.tokenize_always_small = tokenize_always_small
        self.decode_delay_s = decode_delay_s
        self._loaded = False

        self.tokenize_calls: list[int] = []
        self.decode_calls: list = []
        self.clear_calls: list[int] = []
        self.piece_calls: list[tuple[int, int]] = []
        self.events: list[str] = []

        self._since_clear = 0
        self._active = 0
        self.max_active = 0
        self._active_lock = threading.Lock()

    def load(self, model_path, *, context_size, thread_count, **kwargs):
        self._loaded = True
        self.loaded_with = {"model_path": model_path, "context_size": context_size, "thread_count": thread_count}

    def unload(self):
        self._loaded = False

    @property
    def is_loaded(self):
        return self._loaded

    @property
    def n_ctx(self):
        return self._n_ctx

    @property
    def n_vocab(self):
        return N_VOCAB

    @property
    def eos_token_id(self):
        return EOS

    def tokenize(self, text, *, add_special_tokens, max_tokens):
        if not self._loaded:
            raise ModelNotLoaded()
        self.tokenize_calls.append(max_tokens)
        if self.tokenize_always_small or self.prompt_len > max_tokens:
            raise TokenBufferTooSmall(self.prompt_len + (1 if self.tokenize_always_small else 0))
        return [1] * self.prompt_len

    def decode(self, batch):
        with self._active_lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.decode_delay_s:
                time.sleep(self.decode_delay_s)
            index = len(self.decode_calls)
            self.decode_calls.append(batch)
            self._since_clear += 1
            self.events.append("decode")
            if self.fail_decode_at is not None and index == self.fail_decode_at:
                raise RuntimeError("decode exploded")
        finally:
            with self._active_lock:
                self._active -= 1

    def logits(self, index=-1):
        step = self._since_clear - 1
        scores = torch.zeros(N_VOCAB)
        if step < len(self.script):
            scores[self.script[step]] = 100.0
        else:
            scores[5] = 100.0
        return scores

    def clear_kv(self, seq_id):
        self.clear_calls.append(seq_id)
        self._since_clear = 0
        self.events.append("clear")

    def token_to_piece(self, token_id, buf):
        self.piece_calls.append((token_id, len(buf)))
        if token_id == INVALID_PIECE:
            return -1
        data = PIECES.get(token_id, b"")
        if len(data) > len(buf):
            return -len(data)
        buf[: len(data)] = data
        return len(data)


@pytest.fixture
def make_runtime():
    def _make(script=None, *, loaded=True, **kwargs) -> FakeRuntime:
        runtime = FakeRuntime(script, **kwargs)
        if loaded:
            runtime.load("fake-model", context_size=runtime.n_ctx, thread_count=1)
        return runtime

    return _make
