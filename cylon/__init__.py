"""
Cylon - a small LLM inference server.

A fixed pool of device contexts (CPU, CUDA, cuDNN or Metal) runs
autoregressive generation for chat requests admitted through a bounded
priority queue. Results stream back over HTTP as server-sent events, or are
returned whole, or are kept for later lookup as detached jobs.

Quick Start:
    from cylon.config import parse_config
    from cylon.engine.backends.loader import load_model_handle
    from cylon.engine.registry import create_device_contexts

Submodules:
    - cylon.engine: Sessions, decode loop, scheduler and chat engine
    - cylon.engine.backends: Device contexts and model loading
    - cylon.config: Process configuration (defaults, YAML, env, CLI)
    - cylon.runtime: Device capability checks

Environment Variables:
    CYLON_<FIELD>: Overrides any configuration field, e.g. CYLON_LISTEN_PORT.
"""

from cylon._version import __version__

# Runtime utilities
from cylon.runtime import (
    is_cuda_available,
    is_metal_available,
)

__all__ = [
    "__version__",
    "is_cuda_available",
    "is_metal_available",
]
