"""
cpullm - Local CPU text-completion server.

This package provides the generation pipeline behind the HTTP server:
prompt templating, a single-flight engine that owns the loaded model,
an incremental decode loop, a five-stage sampler chain and stop detection.

Quick Start:
    from cpullm import EngineConfig, GenerationRequest, LlmEngine

    engine = LlmEngine(config=EngineConfig(context_size=2048))
    engine.load("google/gemma-2b-it")
    result = engine.generate(GenerationRequest(user_prompt="Hello"))
    print(result.text, result.stop_reason)

Submodules:
    - cpullm.engine: Engine, session, sampler chain, stop detection
    - cpullm.engine.runtimes: Model runtime interface and implementations
    - cpullm.runtime: Process environment helpers (thread counts)
"""

from cpullm._version import __version__

from cpullm.engine.engine import EngineConfig, LlmEngine
from cpullm.engine.errors import (
    ContextOverflowError,
    DecodeError,
    EngineError,
    GenerationError,
    ModelNotLoaded,
    TokenizeError,
    ValidationError,
)
from cpullm.engine.prompt import build_prompt
from cpullm.engine.sampling import SamplerChain, SamplerConfig, SamplingState
from cpullm.engine.service import RequestService
from cpullm.engine.stop import StopDetector
from cpullm.engine.types import GenerationRequest, GenerationResult, StopReason

__all__ = [
    # Version
    "__version__",
    # Engine
    "EngineConfig",
    "LlmEngine",
    "RequestService",
    # Pipeline stages
    "build_prompt",
    "SamplerChain",
    "SamplerConfig",
    "SamplingState",
    "StopDetector",
    # Types
    "GenerationRequest",
    "GenerationResult",
    "StopReason",
    # Errors
    "EngineError",
    "ValidationError",
    "ModelNotLoaded",
    "GenerationError",
    "TokenizeError",
    "ContextOverflowError",
    "DecodeError",
]
