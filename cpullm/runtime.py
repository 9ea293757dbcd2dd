"""Runtime environment checks for CPU inference."""

from __future__ import annotations

import functools
import logging
import os

import torch

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1)
def available_cpu_count() -> int:
    """CPUs usable by this process (respects affinity masks where supported)."""
    try:
        return max(len(os.sched_getaffinity(0)), 1)
    except AttributeError:
        return max(os.cpu_count() or 1, 1)


def resolve_thread_count(requested: int | None) -> int:
    """Map a requested thread count to a concrete one. `0`/`None` = all CPUs."""
    if requested is None or requested <= 0:
        return available_cpu_count()
    return int(requested)


def configure_torch_threads(thread_count: int) -> int:
    """Set torch intra-op parallelism and return the applied value."""
    n = resolve_thread_count(thread_count)
    if torch.get_num_threads() != n:
        torch.set_num_threads(n)
        logger.debug("torch intra-op threads set to %d", n)
    return n


@functools.lru_cache(maxsize=1)
def cpu_capability() -> str:
    """SIMD level torch dispatches to on this CPU (e.g. "AVX2", "AVX512", "DEFAULT")."""
    return str(torch.backends.cpu.get_cpu_capability())
