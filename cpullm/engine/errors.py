"""Engine error taxonomy.

Request-level errors (`ValidationError`, `ModelNotLoaded`) are raised to the
caller. Session-level errors (`GenerationError` subclasses) are carried inside
a `GenerationResult` with `stop_reason=ERROR` so partial output survives.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import GenerationResult


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError, ValueError):
    """Malformed request payload or invalid field value."""


class ModelNotLoaded(EngineError):
    """A generation was requested while no model is loaded."""

    def __init__(self, message: str = "No model is currently loaded. Load a model first.") -> None:
        super().__init__(message)


class ModelAlreadyLoaded(EngineError):
    """`load()` was called while a model is already loaded."""


class ModelLoadError(EngineError):
    """The runtime could not load the requested model."""


class TokenBufferTooSmall(EngineError):
    """Raised by a runtime when the caller-supplied token capacity is too small."""

    def __init__(self, n_required: int) -> None:
        super().__init__(f"Token buffer too small: {n_required} tokens required.")
        self.n_required = int(n_required)


class GenerationError(EngineError):
    """A session aborted. `reason` is a stable tag for API consumers."""

    reason = "generation_error"


class TokenizeError(GenerationError):
    reason = "tokenize_error"


class ContextOverflowError(GenerationError):
    reason = "context_overflow"

    def __init__(self, n_prompt_tokens: int, n_ctx: int) -> None:
        super().__init__(
            f"Prompt too long: {n_prompt_tokens} tokens does not fit the context window (n_ctx={n_ctx})."
        )
        self.n_prompt_tokens = int(n_prompt_tokens)
        self.n_ctx = int(n_ctx)


class DecodeError(GenerationError):
    reason = "decode_error"

    def __init__(self, message: str, *, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class GenerationFailed(EngineError):
    """Raised by the request service when a session returned an error result."""

    def __init__(self, result: GenerationResult) -> None:
        if result.error is None:
            raise ValueError("GenerationFailed requires a result that carries an error.")
        super().__init__(str(result.error))
        self.result = result
        self.error: GenerationError = result.error
