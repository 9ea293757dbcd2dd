"""Single-flight generation engine.

`LlmEngine` owns the loaded runtime (the model handle) and runs at most one
`GenerationSession` at a time. Loading and unloading take the same lock, so a
model is never swapped out from under a running session.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Sequence

from .errors import ModelAlreadyLoaded, ModelNotLoaded
from .registry import get_runtime
from .runtimes.base import ModelRuntime
from .sampling import DEFAULT_PENALTY_LAST_N, SamplerChain, SamplerConfig
from .session import DEFAULT_PIECE_BUFFER_SIZE, GenerationSession
from .stop import DEFAULT_STOP_MARKERS, StopDetector
from .types import GenerationRequest, GenerationResult, ModelInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    context_size: int = 2048
    # 0 = every CPU available to the process.
    thread_count: int = 0
    seq_id: int = 0
    stop_markers: Sequence[str] = DEFAULT_STOP_MARKERS
    penalty_last_n: int = DEFAULT_PENALTY_LAST_N
    greedy: bool = False
    seed: int | None = None
    piece_buffer_size: int = DEFAULT_PIECE_BUFFER_SIZE
    request_timeout_s: float | None = None


class LlmEngine:
    """Core completion engine.

    Thread-safety:
        The underlying runtime is not thread-safe. This engine serializes
        access with a global lock (single-flight).
    """

    def __init__(
        self,
        runtime: ModelRuntime | None = None,
        *,
        config: EngineConfig | None = None,
        runtime_name: str = "transformers",
    ) -> None:
        self._config = config or EngineConfig()
        self._runtime = runtime if runtime is not None else get_runtime(runtime_name)
        self._stop_detector = StopDetector(self._config.stop_markers)
        self._model_path: str | None = None
        self._lock = threading.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def runtime(self) -> ModelRuntime:
        return self._runtime

    @property
    def is_loaded(self) -> bool:
        return self._runtime.is_loaded

    @property
    def model_path(self) -> str | None:
        return self._model_path

    @property
    def model_info(self) -> ModelInfo | None:
        if not self._runtime.is_loaded:
            return None
        info = self._runtime.model_info
        return ModelInfo(
            model_path=self._model_path or "",
            runtime=self._runtime.name,
            n_ctx=self._runtime.n_ctx,
            n_vocab=self._runtime.n_vocab,
            thread_count=int(info.get("thread_count", self._config.thread_count)),
        )

    def load(self, model_path: str, **kwargs: Any) -> None:
        """Load a model into the runtime.

        Raises:
            ModelAlreadyLoaded: A model is already loaded; unload it first.
            ModelLoadError: The runtime could not load the model.
        """
        with self._lock:
            if self._runtime.is_loaded:
                raise ModelAlreadyLoaded(f"Model already loaded: {self._model_path!r}. Unload it first.")
            started = time.monotonic()
            self._runtime.load(
                model_path,
                context_size=self._config.context_size,
                thread_count=self._config.thread_count,
                **kwargs,
            )
            self._model_path = model_path
            logger.info(
                "Loaded %s via %s in %.1fs (n_ctx=%d, n_vocab=%d)",
                model_path,
                self._runtime.name,
                time.monotonic() - started,
                self._runtime.n_ctx,
                self._runtime.n_vocab,
            )

    def unload(self) -> None:
        with self._lock:
            if not self._runtime.is_loaded:
                return
            self._runtime.unload()
            logger.info("Unloaded %s", self._model_path)
            self._model_path = None

    def shutdown(self) -> None:
        self.unload()

    def sampler_config(self, request: GenerationRequest) -> SamplerConfig:
        cfg = self._config
        return SamplerConfig(
            temperature=request.temperature,
            top_k=request.top_k,
            top_p=request.top_p,
            repeat_penalty=request.repeat_penalty,
            penalty_last_n=cfg.penalty_last_n,
            greedy=cfg.greedy,
            seed=cfg.seed,
        )

    def generate(self, request: GenerationRequest, *, cancel: threading.Event | None = None) -> GenerationResult:
        """Run one completion to a terminal state.

        Blocks while another generation (or a load/unload) holds the engine.
        Session failures are returned as results with `stop_reason=ERROR`.

        Raises:
            ModelNotLoaded: No model is loaded.
        """
        with self._lock:
            if not self._runtime.is_loaded:
                raise ModelNotLoaded()

            deadline = None
            if self._config.request_timeout_s is not None:
                deadline = time.monotonic() + float(self._config.request_timeout_s)

            session = GenerationSession(
                self._runtime,
                request,
                sampler=SamplerChain(self.sampler_config(request), n_vocab=self._runtime.n_vocab),
                stop_detector=self._stop_detector,
                seq_id=self._config.seq_id,
                piece_buffer_size=self._config.piece_buffer_size,
                cancel=cancel,
                deadline=deadline,
            )
            return session.run()
