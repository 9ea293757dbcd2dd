import json
import re

import pytest

from cpullm.engine.engine import EngineConfig, LlmEngine
from cpullm.engine.errors import DecodeError, GenerationFailed, ModelNotLoaded, ValidationError
from cpullm.engine.service import RequestService, parse_generate_payload
from cpullm.engine.types import GenerationRequest, GenerationResult, StopReason


def test_parse_applies_defaults():
    req = parse_generate_payload({"prompt": "hi"})
    assert req == GenerationRequest(user_prompt="hi")
    assert (req.max_tokens, req.temperature, req.top_k, req.top_p, req.repeat_penalty) == (128, 0.8, 40, 0.9, 1.1)


def test_parse_null_fields_take_defaults():
    req = parse_generate_payload({"prompt": "hi", "max_tokens": None, "temperature": None, "system": None})
    assert req.max_tokens == 128
    assert req.temperature == 0.8
    assert req.system_prompt == ""


def test_parse_all_fields():
    req = parse_generate_payload(
        {
            "prompt": "hi",
            "system": "Be brief.",
            "max_tokens": 7,
            "temperature": 0,
            "top_k": 3,
            "top_p": 0.5,
            "repeat_penalty": 1.0,
        }
    )
    assert req.system_prompt == "Be brief."
    assert req.max_tokens == 7
    assert req.temperature == 0.0
    assert req.top_k == 3
    assert req.top_p == 0.5
    assert req.repeat_penalty == 1.0


@pytest.mark.parametrize(
    "payload",
    [
        [],
        "prompt",
        {},
        {"prompt": ""},
        {"prompt": 5},
        {"prompt": "hi", "system": 1},
        {"prompt": "hi", "max_tokens": -1},
        {"prompt": "hi", "max_tokens": "10"},
        {"prompt": "hi", "max_tokens": 1.5},
        {"prompt": "hi", "max_tokens": True},
        {"prompt": "hi", "temperature": "hot"},
        {"prompt": "hi", "top_p": False},
        {"prompt": "hi", "top_k": 2.5},
        {"prompt": "hi", "repeat_penalty": 0},
        {"prompt": "hi", "temperature": float("inf")},
        {"prompt": "hi", "temperature": float("nan")},
        {"prompt": "hi", "top_p": float("-inf")},
        {"prompt": "hi", "repeat_penalty": float("nan")},
    ],
)
def test_parse_rejects_invalid_payloads(payload):
    with pytest.raises(ValidationError):
        parse_generate_payload(payload)


def test_parse_enforces_completion_cap():
    assert parse_generate_payload({"prompt": "hi", "max_tokens": 10}, max_completion_tokens=10).max_tokens == 10
    with pytest.raises(ValidationError):
        parse_generate_payload({"prompt": "hi", "max_tokens": 11}, max_completion_tokens=10)


def test_generate_envelope(make_runtime):
    engine = LlmEngine(make_runtime([3, 4, 2]), config=EngineConfig(greedy=True))
    service = RequestService(engine, model_id="tiny")

    out = service.generate({"prompt": "hi"})
    assert out["model"] == "tiny"
    assert out["response"] == "Hello"
    assert out["done"] is True
    assert out["done_reason"] == "stop"
    assert out["prompt_eval_count"] == 8
    assert out["eval_count"] == 3
    assert out["total_duration"] >= 0
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", out["created_at"])


def test_generate_length_done_reason(make_runtime):
    engine = LlmEngine(make_runtime([3, 4, 5]), config=EngineConfig(greedy=True))
    out = RequestService(engine).generate({"prompt": "hi", "max_tokens": 1})
    assert out["done_reason"] == "length"
    assert out["response"] == "Hel"


def test_model_id_falls_back_to_model_path(make_runtime):
    engine = LlmEngine(make_runtime([2], loaded=False), config=EngineConfig(greedy=True))
    engine.load("models/tiny")
    assert RequestService(engine).model_id == "models/tiny"


def test_validation_runs_before_loaded_check(make_runtime):
    service = RequestService(LlmEngine(make_runtime(loaded=False)))
    with pytest.raises(ValidationError):
        service.generate({"nope": 1})
    with pytest.raises(ModelNotLoaded):
        service.generate({"prompt": "hi"})


def test_error_result_raises_generation_failed_with_partial_text(make_runtime):
    engine = LlmEngine(make_runtime([3, 4, 5], fail_decode_at=2), config=EngineConfig(greedy=True))
    with pytest.raises(GenerationFailed) as excinfo:
        RequestService(engine).generate({"prompt": "hi"})

    assert isinstance(excinfo.value.error, DecodeError)
    assert excinfo.value.result.text == "Hello"


def test_parse_rejects_non_finite_json_numbers():
    payload = json.loads('{"prompt": "hi", "temperature": Infinity}')
    with pytest.raises(ValidationError, match="finite"):
        parse_generate_payload(payload)


def test_generation_failed_requires_error_result():
    with pytest.raises(ValueError):
        GenerationFailed(GenerationResult(text="ok", stop_reason=StopReason.EOS))

    failed = GenerationFailed(
        GenerationResult(text="pa", stop_reason=StopReason.ERROR, error=DecodeError("decode failed"))
    )
    assert failed.error is failed.result.error
    assert str(failed) == "decode failed"
