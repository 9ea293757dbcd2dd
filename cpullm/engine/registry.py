"""Model runtime registry.

Maps runtime names to their corresponding runtime classes.
"""

from typing import Type

from .runtimes.base import ModelRuntime
from .runtimes.transformers import TransformersRuntime

# Registry mapping runtime names to runtime classes
_RUNTIME_REGISTRY: dict[str, Type[ModelRuntime]] = {
    TransformersRuntime.name: TransformersRuntime,
}


def get_runtime(name: str) -> ModelRuntime:
    """
    Get a runtime instance by name.

    Raises:
        ValueError: If the runtime is not registered.
    """
    if name not in _RUNTIME_REGISTRY:
        available = ", ".join(_RUNTIME_REGISTRY.keys())
        raise ValueError(f"Unknown runtime: {name!r}. Available: {available}")
    return _RUNTIME_REGISTRY[name]()


def register_runtime(name: str, runtime_cls: Type[ModelRuntime]) -> None:
    """Register a runtime class (must inherit from ModelRuntime) under `name`."""
    _RUNTIME_REGISTRY[name] = runtime_cls


def list_runtimes() -> list[str]:
    """Return list of registered runtime names."""
    return list(_RUNTIME_REGISTRY.keys())
