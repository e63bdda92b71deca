"""Backend and model-family registries.

Maps configured backend names to device context classes, and model family
names to the Transformers `model_type` values they accept.
"""

from typing import Type

from .backends.base import DeviceContext
from .backends.torch_backend import (
    CpuDeviceContext,
    CudaDeviceContext,
    CudnnDeviceContext,
    MetalDeviceContext,
)

# Registry mapping backend names to device context classes
_BACKEND_REGISTRY: dict[str, Type[DeviceContext]] = {
    "cpu": CpuDeviceContext,
    "cuda": CudaDeviceContext,
    "cudnn": CudnnDeviceContext,
    "metal": MetalDeviceContext,
}

# Registry mapping model family names to accepted config.model_type values.
# None accepts any causal LM Transformers can load.
_MODEL_FAMILIES: dict[str, frozenset[str] | None] = {
    "auto": None,
    "llama": frozenset({"llama"}),
    "qwen": frozenset({"qwen2", "qwen2_moe", "qwen3", "qwen3_moe"}),
    "mistral": frozenset({"mistral", "mixtral"}),
    "gemma": frozenset({"gemma", "gemma2", "gemma3_text"}),
    "phi": frozenset({"phi", "phi3"}),
}


def get_context_class(backend: str) -> Type[DeviceContext]:
    """
    Get the device context class for a backend name.

    Args:
        backend: Backend name (e.g., "cuda").

    Returns:
        The DeviceContext subclass for the backend.

    Raises:
        ValueError: If the backend is not registered.
    """
    if backend not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}")
    return _BACKEND_REGISTRY[backend]


def register_backend(backend: str, context_cls: Type[DeviceContext]) -> None:
    """
    Register a new device context class for a backend name.

    Args:
        backend: Name of the backend.
        context_cls: Context class (must inherit from DeviceContext).
    """
    _BACKEND_REGISTRY[backend] = context_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_BACKEND_REGISTRY.keys())


def expected_model_types(model_family: str) -> frozenset[str] | None:
    """Return the model_type values accepted for a family (None = any)."""
    if model_family not in _MODEL_FAMILIES:
        available = ", ".join(_MODEL_FAMILIES.keys())
        raise ValueError(f"Unknown model family: {model_family!r}. Available: {available}")
    return _MODEL_FAMILIES[model_family]


def list_model_families() -> list[str]:
    """Return list of registered model family names."""
    return list(_MODEL_FAMILIES.keys())


def resolve_backend(backend: str) -> str:
    """Resolve "auto" to the best available backend (cuda, then metal, then cpu)."""
    from cylon import runtime

    if backend != "auto":
        return backend
    if runtime.is_cuda_available():
        return "cuda"
    if runtime.is_metal_available():
        return "metal"
    return "cpu"


def create_device_contexts(
    backend: str,
    *,
    device_ids: list[int] | tuple[int, ...] = (0,),
    dtype: str = "f16",
    compute_cap: str | int | None = None,
    use_flash_attn: bool = False,
) -> list[DeviceContext]:
    """Instantiate one (unloaded) device context per configured device."""
    context_cls = get_context_class(resolve_backend(backend))
    if not device_ids:
        raise ValueError("At least one device id is required.")
    if context_cls.backend in {"cpu", "metal"} and len(device_ids) > 1:
        raise ValueError(f"Backend {context_cls.backend!r} supports a single device.")

    flash = bool(use_flash_attn) or context_cls.backend == "cudnn"
    return [
        context_cls(
            device_index=int(idx),
            dtype=dtype,
            compute_cap=compute_cap,
            use_flash_attn=flash,
        )
        for idx in device_ids
    ]
