"""Runtime environment checks for the supported compute backends."""

from __future__ import annotations

import functools
import importlib.util

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_cudnn_available() -> bool:
    """Check if cuDNN is usable (requires CUDA)."""
    if not is_cuda_available():
        return False
    return bool(torch.backends.cudnn.is_available())


@functools.lru_cache(maxsize=1)
def is_metal_available() -> bool:
    """Check if the Metal (MPS) backend is available."""
    mps = getattr(torch.backends, "mps", None)
    if mps is None:
        return False
    return bool(mps.is_available())


@functools.lru_cache(maxsize=1)
def is_flash_attn_available() -> bool:
    """Check if the flash-attention kernels package is importable."""
    return importlib.util.find_spec("flash_attn") is not None


def cuda_device_count() -> int:
    if not is_cuda_available():
        return 0
    return torch.cuda.device_count()


@functools.lru_cache(maxsize=16)
def get_cuda_capability(device_index: int = 0) -> tuple[int, int] | None:
    """Get CUDA compute capability for a device."""
    if not is_cuda_available() or device_index >= torch.cuda.device_count():
        return None
    props = torch.cuda.get_device_properties(device_index)
    return (props.major, props.minor)


def parse_compute_cap(value: int | str) -> tuple[int, int]:
    """Parse a compute capability target such as ``89``, ``"8.9"`` or ``"sm_89"``."""
    text = str(value).strip().lower()
    if text.startswith("sm_"):
        text = text[3:]
    if "." in text:
        major, minor = text.split(".", 1)
        return int(major), int(minor)
    if not text.isdigit() or len(text) < 2:
        raise ValueError(f"Invalid compute capability: {value!r}")
    return int(text[:-1]), int(text[-1])


def empty_device_cache() -> None:
    """Release cached allocator blocks on accelerators (best-effort)."""
    if is_cuda_available():
        torch.cuda.empty_cache()
    if is_metal_available():
        empty = getattr(getattr(torch, "mps", None), "empty_cache", None)
        if callable(empty):
            empty()
