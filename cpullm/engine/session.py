"""One prompt-to-completion run against a loaded runtime.

A `GenerationSession` walks the pipeline

    template -> tokenize -> prompt decode -> loop(sample -> accept -> EOS ->
    detokenize -> stop check -> single-token decode) -> result

and always leaves the runtime's KV cache for its sequence released. Runtime
failures never escape `run()`; they come back as a result tagged ERROR that
still carries the text produced so far.
"""

from __future__ import annotations

import codecs
import enum
import logging
import threading
import time

from .errors import (
    ContextOverflowError,
    DecodeError,
    GenerationError,
    TokenBufferTooSmall,
    TokenizeError,
)
from .prompt import build_prompt
from .runtimes.base import ModelRuntime
from .sampling import SamplerChain, SamplingState
from .stop import StopDetector
from .types import DecodeBatch, GenerationRequest, GenerationResult, StopReason, Timing

logger = logging.getLogger(__name__)

# Extra token slots on top of the prompt's UTF-8 length for the first tokenize attempt.
TOKENIZE_HEADROOM = 16
DEFAULT_PIECE_BUFFER_SIZE = 64


class SessionState(enum.Enum):
    INIT = "init"
    PROMPT_TOKENIZED = "prompt_tokenized"
    PROMPT_DECODED = "prompt_decoded"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


class GenerationSession:
    """Single-use generation run.

    The caller must hold exclusive access to `runtime` for the duration of
    `run()`.
    """

    def __init__(
        self,
        runtime: ModelRuntime,
        request: GenerationRequest,
        *,
        sampler: SamplerChain,
        stop_detector: StopDetector | None = None,
        seq_id: int = 0,
        piece_buffer_size: int = DEFAULT_PIECE_BUFFER_SIZE,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> None:
        if request.max_tokens < 0:
            raise ValueError("max_tokens must be >= 0.")
        if piece_buffer_size <= 0:
            raise ValueError("piece_buffer_size must be > 0.")

        self._runtime = runtime
        self._request = request
        self._sampler = sampler
        self._stop = stop_detector if stop_detector is not None else StopDetector()
        self._seq_id = seq_id
        self._piece_buf = bytearray(piece_buffer_size)
        self._cancel = cancel
        self._deadline = deadline

        self._state = SessionState.INIT
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._text = ""
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._timed_out = False

    @property
    def state(self) -> SessionState:
        return self._state

    def run(self) -> GenerationResult:
        if self._state is not SessionState.INIT:
            raise RuntimeError("GenerationSession.run() may only be called once.")

        started = time.monotonic()
        prompt_done: float | None = None
        error: GenerationError | None = None
        stop_reason = StopReason.ERROR

        try:
            prompt_ids = self._tokenize(build_prompt(self._request.system_prompt, self._request.user_prompt))
            self._prompt_tokens = len(prompt_ids)
            self._state = SessionState.PROMPT_TOKENIZED

            n_ctx = self._runtime.n_ctx
            if self._prompt_tokens >= n_ctx:
                raise ContextOverflowError(self._prompt_tokens, n_ctx)

            sampling_state = SamplingState(window=min(n_ctx, self._sampler.config.penalty_last_n))
            sampling_state.accept_all(prompt_ids)

            self._runtime.clear_kv(self._seq_id)
            try:
                self._runtime.decode(DecodeBatch.for_prompt(prompt_ids, seq_id=self._seq_id))
            except Exception as exc:
                raise DecodeError(f"Prompt decode failed: {exc}", position=0) from exc
            self._state = SessionState.PROMPT_DECODED
            prompt_done = time.monotonic()

            stop_reason = self._generate(sampling_state, n_ctx)
            self._state = SessionState.DONE
        except GenerationError as exc:
            error = exc
            stop_reason = StopReason.ERROR
            self._state = SessionState.ERROR
            logger.warning("Generation aborted (%s): %s", exc.reason, exc)
        except Exception as exc:
            error = GenerationError(f"Unexpected failure: {exc}")
            error.__cause__ = exc
            stop_reason = StopReason.ERROR
            self._state = SessionState.ERROR
            logger.exception("Generation aborted by an unexpected error")
        finally:
            self._runtime.clear_kv(self._seq_id)

        ended = time.monotonic()
        timing = self._timing(started, prompt_done, ended)
        logger.debug(
            "Session finished: stop_reason=%s prompt_tokens=%d completion_tokens=%d total_s=%.3f",
            stop_reason.value,
            self._prompt_tokens,
            self._completion_tokens,
            timing.total_s or 0.0,
        )
        return GenerationResult(
            text=self._text,
            stop_reason=stop_reason,
            prompt_tokens=self._prompt_tokens,
            completion_tokens=self._completion_tokens,
            error=error,
            timed_out=self._timed_out,
            timing=timing,
        )

    # -------------------------------------------------------------------------
    # Pipeline stages
    # -------------------------------------------------------------------------

    def _tokenize(self, prompt: str) -> list[int]:
        capacity = len(prompt.encode("utf-8")) + TOKENIZE_HEADROOM
        try:
            ids = self._runtime.tokenize(prompt, add_special_tokens=True, max_tokens=capacity)
        except TokenBufferTooSmall as exc:
            logger.debug("Token buffer of %d too small; retrying with %d.", capacity, exc.n_required)
            try:
                ids = self._runtime.tokenize(prompt, add_special_tokens=True, max_tokens=exc.n_required)
            except Exception as retry_exc:
                raise TokenizeError(f"Tokenization failed after resize: {retry_exc}") from retry_exc
        except Exception as exc:
            raise TokenizeError(f"Tokenization failed: {exc}") from exc

        if not ids:
            raise TokenizeError("Prompt produced no tokens.")
        return list(ids)

    def _generate(self, sampling_state: SamplingState, n_ctx: int) -> StopReason:
        self._state = SessionState.GENERATING
        runtime = self._runtime
        max_tokens = self._request.max_tokens
        eos_token_id = runtime.eos_token_id
        n_past = self._prompt_tokens

        while self._completion_tokens < max_tokens:
            if n_past + 1 >= n_ctx:
                logger.debug("Context window full at %d tokens.", n_past)
                self._flush_text()
                return StopReason.MAX_TOKENS
            if self._should_abort():
                self._timed_out = True
                self._flush_text()
                return StopReason.MAX_TOKENS

            try:
                scores = runtime.logits()
            except Exception as exc:
                raise DecodeError(f"No scores available at position {n_past}: {exc}", position=n_past) from exc

            try:
                token = self._sampler.sample(scores, sampling_state)
            except Exception as exc:
                raise DecodeError(f"Sampling failed at position {n_past}: {exc}", position=n_past) from exc
            sampling_state.accept(token)
            self._completion_tokens += 1

            if eos_token_id is not None and token == eos_token_id:
                self._flush_text()
                return StopReason.EOS

            self._text += self._piece(token)

            match = self._stop.check(self._text)
            if match is not None:
                self._text = match.trim(self._text)
                return StopReason.STOP_SEQUENCE

            if self._completion_tokens >= max_tokens:
                break

            try:
                runtime.decode(DecodeBatch.single(token, n_past, seq_id=self._seq_id))
            except Exception as exc:
                raise DecodeError(f"Decode failed at position {n_past}: {exc}", position=n_past) from exc
            n_past += 1

        self._flush_text()
        return StopReason.MAX_TOKENS

    def _piece(self, token: int) -> str:
        try:
            n = self._runtime.token_to_piece(token, self._piece_buf)
            if n < 0 and -n > len(self._piece_buf):
                self._piece_buf = bytearray(-n)
                n = self._runtime.token_to_piece(token, self._piece_buf)
        except Exception as exc:
            logger.warning("Could not convert token %d to text (%s); skipping.", token, exc)
            return ""
        if n < 0:
            logger.warning("Could not convert token %d to text (code %d); skipping.", token, n)
            return ""
        return self._utf8.decode(bytes(self._piece_buf[:n]))

    def _flush_text(self) -> None:
        self._text += self._utf8.decode(b"", final=True)

    def _should_abort(self) -> bool:
        if self._cancel is not None and self._cancel.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _timing(self, started: float, prompt_done: float | None, ended: float) -> Timing:
        prompt_s = None if prompt_done is None else max(prompt_done - started, 0.0)
        decode_s = None if prompt_done is None else max(ended - prompt_done, 0.0)
        tok_per_s = None
        if decode_s and decode_s > 0 and self._completion_tokens > 0:
            tok_per_s = self._completion_tokens / decode_s
        return Timing(
            prompt_s=prompt_s,
            decode_s=decode_s,
            total_s=max(ended - started, 0.0),
            tok_per_s=tok_per_s,
        )
