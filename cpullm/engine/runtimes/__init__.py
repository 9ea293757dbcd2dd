# Model runtimes
#
# Each runtime implements a common interface for:
#   - Loading model weights + vocabulary
#   - Tokenizing text and rendering single tokens back to bytes
#   - Decoding batches against a per-sequence KV cache
#
# The engine drives runtimes one batch at a time to stay backend-agnostic.

from .base import ModelRuntime

__all__ = ["ModelRuntime"]
