from types import SimpleNamespace

import pytest
import torch

from cpullm.engine.errors import ModelNotLoaded, TokenBufferTooSmall
from cpullm.engine.runtimes.transformers import TransformersRuntime, _bytes_to_unicode
from cpullm.engine.types import DecodeBatch

N_VOCAB = 8


class FakeTokenizer:
    eos_token_id = 1
    all_special_ids = [0, 1, 2]

    def __init__(self, vocab: list[str]):
        self.vocab = vocab

    def encode(self, text, add_special_tokens=True):
        ids = [3 + (ord(ch) % 4) for ch in text]
        return ([0] if add_special_tokens else []) + ids

    def convert_ids_to_tokens(self, token_id):
        return self.vocab[token_id]


class FakeModel:
    """Counts cached positions in `past_key_values` as a plain int."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def __call__(self, *, input_ids, position_ids, past_key_values, use_cache):
        self.calls.append(
            {"input_ids": input_ids.tolist(), "position_ids": position_ids.tolist(), "past": past_key_values}
        )
        if self.fail:
            raise RuntimeError("boom")
        n = input_ids.shape[1]
        logits = torch.arange(n * N_VOCAB, dtype=torch.float32).reshape(1, n, N_VOCAB)
        return SimpleNamespace(logits=logits, past_key_values=(past_key_values or 0) + n)


class TrimmingModel(FakeModel):
    """Computes head scores only for the trailing `logits_to_keep` positions."""

    def forward(self, *, input_ids, position_ids, past_key_values, use_cache, logits_to_keep=0):
        self.calls.append({"input_ids": input_ids.tolist(), "logits_to_keep": logits_to_keep})
        n = input_ids.shape[1]
        keep = logits_to_keep or n
        logits = torch.arange(n * N_VOCAB, dtype=torch.float32).reshape(1, n, N_VOCAB)[:, n - keep :, :]
        return SimpleNamespace(logits=logits, past_key_values=(past_key_values or 0) + n)

    __call__ = forward


def _runtime(vocab=None, *, byte_level=False, model=None, n_ctx=32) -> TransformersRuntime:
    vocab = vocab or ["<bos>", "<eos>", "<end_of_turn>", "▁Hello", "<0x0A>", "world", "Ġhi", "x"]
    rt = TransformersRuntime()
    rt._tokenizer = FakeTokenizer(vocab)
    rt._model = model or FakeModel()
    rt._n_ctx = n_ctx
    rt._n_vocab = N_VOCAB
    rt._special_ids = frozenset(FakeTokenizer.all_special_ids)
    rt._logits_to_keep_kwarg = TransformersRuntime._resolve_logits_to_keep_kwarg(rt._model)
    if byte_level:
        rt._byte_decoder = {v: k for k, v in _bytes_to_unicode().items()}
    return rt


def _piece(rt: TransformersRuntime, token_id: int, size: int = 64):
    buf = bytearray(size)
    n = rt.token_to_piece(token_id, buf)
    return n, bytes(buf[: max(n, 0)])


def test_not_loaded_raises():
    rt = TransformersRuntime()
    assert not rt.is_loaded
    assert rt.eos_token_id is None
    with pytest.raises(ModelNotLoaded):
        rt.tokenize("hi", add_special_tokens=True, max_tokens=8)


def test_tokenize_reports_required_capacity():
    rt = _runtime()
    assert rt.tokenize("hi", add_special_tokens=True, max_tokens=3) == [0, 3 + ord("h") % 4, 3 + ord("i") % 4]
    with pytest.raises(TokenBufferTooSmall) as excinfo:
        rt.tokenize("hello", add_special_tokens=True, max_tokens=3)
    assert excinfo.value.n_required == 6


def test_sentencepiece_pieces():
    rt = _runtime()
    assert _piece(rt, 3) == (6, b" Hello")
    assert _piece(rt, 4) == (1, b"\n")
    assert _piece(rt, 2) == (len("<end_of_turn>"), b"<end_of_turn>")


def test_byte_level_pieces():
    rt = _runtime(byte_level=True)
    assert _bytes_to_unicode()[32] == "Ġ"
    assert _piece(rt, 6) == (3, b" hi")
    assert _piece(rt, 5) == (5, b"world")


def test_small_buffer_reports_required_size():
    rt = _runtime()
    n, _ = _piece(rt, 3, size=2)
    assert n == -6


def test_invalid_token_id():
    rt = _runtime()
    assert _piece(rt, 99)[0] == -1
    assert _piece(rt, -3)[0] == -1


def test_decode_tracks_positions_and_flagged_logits():
    model = FakeModel()
    rt = _runtime(model=model)

    rt.decode(DecodeBatch.for_prompt([0, 3, 4]))
    scores = rt.logits()
    assert scores.shape == (N_VOCAB,)
    # Only the last prompt position was kept.
    assert scores[0].item() == 2 * N_VOCAB

    rt.decode(DecodeBatch.single(5, 3))
    assert model.calls[1]["position_ids"] == [[3]]
    assert model.calls[1]["past"] == 3
    assert rt.model_info["active_sequences"] == 1


def test_decode_rejects_non_contiguous_positions():
    rt = _runtime()
    rt.decode(DecodeBatch.for_prompt([0, 3]))
    with pytest.raises(ValueError):
        rt.decode(DecodeBatch.single(5, 7))


def test_decode_rejects_positions_past_context():
    rt = _runtime(n_ctx=2)
    with pytest.raises(ValueError):
        rt.decode(DecodeBatch.for_prompt([0, 3, 4]))


def test_decode_failure_drops_sequence_cache():
    rt = _runtime(model=FakeModel(fail=True))
    with pytest.raises(RuntimeError):
        rt.decode(DecodeBatch.for_prompt([0, 3]))
    assert rt.model_info["active_sequences"] == 0


def test_clear_kv_restarts_sequence_at_zero():
    model = FakeModel()
    rt = _runtime(model=model)
    rt.decode(DecodeBatch.for_prompt([0, 3]))
    rt.clear_kv(0)

    rt.decode(DecodeBatch.for_prompt([0, 4]))
    assert model.calls[1]["past"] is None
    with pytest.raises(RuntimeError):
        TransformersRuntime().logits()


def test_unload_releases_everything():
    rt = _runtime()
    rt.decode(DecodeBatch.for_prompt([0]))
    rt.unload()

    assert not rt.is_loaded
    assert rt.n_ctx == 0
    assert rt.model_info["active_sequences"] == 0


def test_prompt_decode_only_scores_last_position():
    model = TrimmingModel()
    rt = _runtime(model=model)

    rt.decode(DecodeBatch.for_prompt([0, 3, 4, 5]))
    assert model.calls[0]["logits_to_keep"] == 1
    assert rt.logits()[0].item() == 3 * N_VOCAB

    rt.decode(DecodeBatch.single(6, 4))
    assert model.calls[1]["logits_to_keep"] == 1
    assert rt.logits().shape == (N_VOCAB,)


def test_logits_to_keep_kwarg_detection():
    assert TransformersRuntime._resolve_logits_to_keep_kwarg(TrimmingModel()) == "logits_to_keep"
    assert TransformersRuntime._resolve_logits_to_keep_kwarg(FakeModel()) is None
