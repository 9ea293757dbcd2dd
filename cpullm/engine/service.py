"""Adaptation between the `/api/generate` wire format and the engine.

`RequestService` performs no tokenization, decoding or sampling. It validates
a decoded JSON payload into a `GenerationRequest`, enforces the model-loaded
invariant, runs the engine and packages the response envelope.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any

from .engine import LlmEngine
from .errors import GenerationFailed, ModelNotLoaded, ValidationError
from .types import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_REPEAT_PENALTY,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
    DEFAULT_TOP_P,
    GenerationRequest,
    GenerationResult,
    StopReason,
)

logger = logging.getLogger(__name__)

_DONE_REASONS = {
    StopReason.EOS: "stop",
    StopReason.STOP_SEQUENCE: "stop",
    StopReason.MAX_TOKENS: "length",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _int_field(payload: dict[str, Any], name: str, default: int) -> int:
    value = payload.get(name)
    if value is None:
        return default
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"'{name}' must be an integer.")
    return value


def _float_field(payload: dict[str, Any], name: str, default: float) -> float:
    value = payload.get(name)
    if value is None:
        return default
    if not _is_number(value):
        raise ValidationError(f"'{name}' must be a number.")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"'{name}' must be a finite number.")
    return value


def parse_generate_payload(payload: Any, *, max_completion_tokens: int | None = None) -> GenerationRequest:
    """Validate a decoded JSON body into a `GenerationRequest`.

    Omitted or null fields take their defaults.

    Raises:
        ValidationError: The payload is not an object or a field is invalid.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt:
        raise ValidationError("'prompt' is required and must be a non-empty string.")

    system = payload.get("system")
    if system is None:
        system = ""
    if not isinstance(system, str):
        raise ValidationError("'system' must be a string.")

    max_tokens = _int_field(payload, "max_tokens", DEFAULT_MAX_TOKENS)
    if max_tokens < 0:
        raise ValidationError("'max_tokens' must be >= 0.")
    if max_completion_tokens is not None and max_tokens > max_completion_tokens:
        raise ValidationError(f"'max_tokens' too large: {max_tokens} (cap={max_completion_tokens}).")

    repeat_penalty = _float_field(payload, "repeat_penalty", DEFAULT_REPEAT_PENALTY)
    if repeat_penalty <= 0:
        raise ValidationError("'repeat_penalty' must be > 0.")

    return GenerationRequest(
        user_prompt=prompt,
        system_prompt=system,
        max_tokens=max_tokens,
        temperature=_float_field(payload, "temperature", DEFAULT_TEMPERATURE),
        top_k=_int_field(payload, "top_k", DEFAULT_TOP_K),
        top_p=_float_field(payload, "top_p", DEFAULT_TOP_P),
        repeat_penalty=repeat_penalty,
    )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class RequestService:
    """Boundary between decoded HTTP payloads and `LlmEngine`."""

    def __init__(
        self,
        engine: LlmEngine,
        *,
        model_id: str | None = None,
        max_completion_tokens: int | None = None,
    ) -> None:
        self._engine = engine
        self._model_id = model_id
        self._max_completion_tokens = max_completion_tokens

    @property
    def engine(self) -> LlmEngine:
        return self._engine

    @property
    def model_id(self) -> str:
        return self._model_id or self._engine.model_path or ""

    def generate(self, payload: Any, *, cancel: threading.Event | None = None) -> dict[str, Any]:
        """Validate, run and package one completion.

        Raises:
            ValidationError: Invalid payload.
            ModelNotLoaded: No model is loaded.
            GenerationFailed: The session ended with an error; the partial
                result is attached.
        """
        request = parse_generate_payload(payload, max_completion_tokens=self._max_completion_tokens)
        if not self._engine.is_loaded:
            raise ModelNotLoaded()

        result = self._engine.generate(request, cancel=cancel)
        if not result.ok:
            raise GenerationFailed(result)
        return self.envelope(result)

    def envelope(self, result: GenerationResult) -> dict[str, Any]:
        total_s = result.timing.total_s
        done_reason = "timeout" if result.timed_out else _DONE_REASONS.get(result.stop_reason, "stop")
        return {
            "model": self.model_id,
            "created_at": _utc_timestamp(),
            "response": result.text,
            "done": True,
            "done_reason": done_reason,
            "prompt_eval_count": result.prompt_tokens,
            "eval_count": result.completion_tokens,
            "total_duration": int(total_s * 1e9) if total_s is not None else 0,
        }
