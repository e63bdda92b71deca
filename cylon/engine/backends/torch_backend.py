"""PyTorch / Transformers device contexts (CPU, CUDA, cuDNN, Metal)."""

from __future__ import annotations

import gc
import logging
from abc import abstractmethod
from typing import Any, Sequence

import torch

from cylon import runtime

from ..errors import BackendError, InitializationError
from .base import DeviceContext, ModelHandle, StepOutput

logger = logging.getLogger(__name__)


_DTYPES = {
    "f16": torch.float16,
    "fp16": torch.float16,
    "float16": torch.float16,
    "half": torch.float16,
    "bf16": torch.bfloat16,
    "bfloat16": torch.bfloat16,
    "f32": torch.float32,
    "fp32": torch.float32,
    "float32": torch.float32,
}

# Substrings of CUDA runtime errors after which the device context cannot be trusted.
_CORRUPTING_ERRORS = (
    "device-side assert",
    "illegal memory access",
    "unspecified launch failure",
    "cublas_status_execution_failed",
    "cudnn_status_execution_failed",
    "misaligned address",
)


def torch_dtype(dtype: str) -> torch.dtype:
    key = dtype.strip().lower()
    if key not in _DTYPES:
        raise ValueError(f"Unsupported dtype {dtype!r}. Expected one of: f16, bf16, f32.")
    return _DTYPES[key]


class TorchDeviceContext(DeviceContext):
    """
    Device context backed by a Transformers causal LM.

    The model is loaded with `AutoModelForCausalLM.from_pretrained` onto
    `torch_device`. The KV cache handed back from `step()` is the model's
    `past_key_values` object; sessions own it, the context never retains it.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._model = None

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    @abstractmethod
    def torch_device(self) -> torch.device:
        """Device the model and inputs live on."""

    def attn_implementation(self) -> str | None:
        """Attention kernel passed to from_pretrained (None = library default)."""
        return None

    def effective_dtype(self) -> torch.dtype:
        return torch_dtype(self.dtype)

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def _load(self, handle: ModelHandle) -> None:
        from transformers import AutoModelForCausalLM

        kwargs: dict[str, Any] = {"torch_dtype": self.effective_dtype()}
        attn = self.attn_implementation()
        if attn is not None:
            kwargs["attn_implementation"] = attn
        if handle.config is not None:
            kwargs["config"] = handle.config

        model = AutoModelForCausalLM.from_pretrained(handle.model_path, **kwargs)
        model.to(self.torch_device)
        model.eval()
        self._model = model

    def _unload(self) -> None:
        self._model = None
        gc.collect()
        runtime.empty_device_cache()

    def release_cache(self, cache: Any) -> None:
        if cache is None:
            return
        reset = getattr(cache, "reset", None)
        if callable(reset):
            try:
                reset()
            except Exception:  # pragma: no cover
                logger.debug("Cache reset failed on %s", self.name, exc_info=True)

    # -------------------------------------------------------------------------
    # Forward
    # -------------------------------------------------------------------------

    def _forward(self, input_ids: Sequence[int], cache: Any) -> StepOutput:
        model = self._model
        if model is None:
            raise BackendError(f"Context {self.name} has no model loaded.")

        ids = torch.tensor([list(input_ids)], dtype=torch.long, device=self.torch_device)
        try:
            with torch.inference_mode():
                outputs = model(
                    input_ids=ids,
                    past_key_values=cache,
                    use_cache=True,
                )
        except torch.cuda.OutOfMemoryError as exc:
            runtime.empty_device_cache()
            raise BackendError(f"Out of memory on {self.name}: {exc}") from exc
        except RuntimeError as exc:
            message = str(exc)
            corrupted = any(s in message.lower() for s in _CORRUPTING_ERRORS)
            raise BackendError(f"Forward step failed on {self.name}: {message}", corrupted=corrupted) from exc

        logits = outputs.logits[0, -1, :].float()
        return StepOutput(logits=logits, cache=getattr(outputs, "past_key_values", None))


class CpuDeviceContext(TorchDeviceContext):
    backend = "cpu"

    @property
    def torch_device(self) -> torch.device:
        return torch.device("cpu")

    def check_available(self) -> None:
        if self.use_flash_attn:
            raise InitializationError("Flash attention is not supported on the cpu backend.")

    def effective_dtype(self) -> torch.dtype:
        dt = torch_dtype(self.dtype)
        if dt == torch.float16:
            # Many CPU kernels have no half-precision implementation.
            logger.warning("f16 is not supported on cpu; using f32")
            return torch.float32
        return dt


class CudaDeviceContext(TorchDeviceContext):
    backend = "cuda"

    @property
    def torch_device(self) -> torch.device:
        return torch.device("cuda", self.device_index)

    def attn_implementation(self) -> str | None:
        if self.use_flash_attn:
            return "flash_attention_2"
        return None

    def check_available(self) -> None:
        if not runtime.is_cuda_available():
            raise InitializationError(
                f"Backend {self.backend!r} selected but no CUDA device is available."
            )
        count = runtime.cuda_device_count()
        if self.device_index >= count:
            raise InitializationError(
                f"CUDA device {self.device_index} requested but only {count} device(s) present."
            )

        if self.compute_cap is not None:
            try:
                target = runtime.parse_compute_cap(self.compute_cap)
            except ValueError as exc:
                raise InitializationError(str(exc)) from exc
            actual = runtime.get_cuda_capability(self.device_index)
            if actual is None or actual < target:
                raise InitializationError(
                    f"CUDA device {self.device_index} has compute capability {actual}, "
                    f"below the configured target {target}."
                )

        if self.use_flash_attn and not runtime.is_flash_attn_available():
            raise InitializationError("Flash attention requested but the flash_attn package is not installed.")


class CudnnDeviceContext(CudaDeviceContext):
    """CUDA with cuDNN kernels enabled and flash attention on by default."""

    backend = "cudnn"

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("use_flash_attn", True)
        super().__init__(**kwargs)

    def check_available(self) -> None:
        super().check_available()
        if not runtime.is_cudnn_available():
            raise InitializationError("Backend 'cudnn' selected but cuDNN is not available.")
        torch.backends.cudnn.enabled = True
        torch.backends.cudnn.benchmark = True


class MetalDeviceContext(TorchDeviceContext):
    backend = "metal"

    @property
    def torch_device(self) -> torch.device:
        return torch.device("mps")

    def check_available(self) -> None:
        if not runtime.is_metal_available():
            raise InitializationError("Backend 'metal' selected but the MPS device is not available.")
        if self.use_flash_attn:
            raise InitializationError("Flash attention is not supported on the metal backend.")
        if self.device_index != 0:
            raise InitializationError("The metal backend exposes a single device (index 0).")
