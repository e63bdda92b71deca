"""Device context interface shared by all compute backends."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..errors import BackendError, InitializationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelHandle:
    """Immutable reference to a loaded model's tokenizer and metadata.

    Created once at startup and shared read-only by every device context and
    session. Weights are materialized per context by `DeviceContext.load()`.
    """

    model_path: str
    model_family: str
    tokenizer: Any
    config: Any = None
    eos_token_ids: frozenset[int] = field(default_factory=frozenset)
    dtype: str = "f16"
    max_context_length: int | None = None


@dataclass
class StepOutput:
    """Result of one forward step: next-token logits and the updated cache."""

    logits: Any  # torch.Tensor, shape (vocab_size,)
    cache: Any


class DeviceContext(ABC):
    """
    Abstract owner of one compute backend and the weights loaded on it.

    Each backend implements this interface so the scheduler and decode loop can
    run generation without knowing device details.

    Thread Safety:
        `step()` is serialized by a per-context lock: at most one forward pass
        runs against a context at any instant. Callers may invoke `step()` from
        any thread.
    """

    #: Backend name used in configuration (cpu, cuda, cudnn, metal).
    backend: str = ""

    def __init__(
        self,
        *,
        device_index: int = 0,
        dtype: str = "f16",
        compute_cap: str | int | None = None,
        use_flash_attn: bool = False,
    ) -> None:
        self.device_index = int(device_index)
        self.dtype = dtype
        self.compute_cap = compute_cap
        self.use_flash_attn = bool(use_flash_attn)

        self._lock = threading.Lock()
        self._handle: ModelHandle | None = None
        self._needs_reinit = False
        self._steps_executed = 0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return f"{self.backend}:{self.device_index}"

    @property
    def handle(self) -> ModelHandle | None:
        return self._handle

    @property
    def loaded(self) -> bool:
        return self._handle is not None

    @property
    def steps_executed(self) -> int:
        """Number of successful forward steps run on this context."""
        return self._steps_executed

    @property
    def model_info(self) -> dict[str, Any]:
        """Return metadata about the context and its model."""
        handle = self._handle
        return {
            "context": self.name,
            "backend": self.backend,
            "dtype": self.dtype,
            "flash_attn": self.use_flash_attn,
            "loaded": handle is not None,
            "model_path": None if handle is None else handle.model_path,
            "model_family": None if handle is None else handle.model_family,
            "max_context_length": None if handle is None else handle.max_context_length,
        }

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self, handle: ModelHandle) -> None:
        """Materialize the model's weights on this context's device.

        One-time and fallible: raises `InitializationError` if the backend is
        unavailable or the weights cannot be loaded on it.
        """
        if self._handle is not None:
            raise InitializationError(f"Context {self.name} is already loaded.")

        self.check_available()
        try:
            self._load(handle)
        except InitializationError:
            raise
        except Exception as exc:
            raise InitializationError(
                f"Failed to load {handle.model_path!r} on {self.name}: {exc}"
            ) from exc

        self._handle = handle
        logger.info("Loaded model %s on %s", handle.model_path, self.name)

    def unload(self) -> None:
        """Free the weights. Default implementation only drops the handle."""
        with self._lock:
            self._unload()
            self._handle = None

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def step(self, input_ids: Sequence[int], cache: Any) -> StepOutput:
        """Run one forward pass and return next-token logits plus updated cache.

        Args:
            input_ids: Full token history for prefill (cache is None), or the
                newest token(s) not yet covered by `cache`.
            cache: Opaque per-session KV cache from a previous step, or None.

        Raises:
            BackendError: The device failed. If `corrupted` is set the context
                reinitializes before serving another step.
        """
        if not input_ids:
            raise ValueError("step() requires at least one input token.")

        with self._lock:
            if self._handle is None:
                raise BackendError(f"Context {self.name} has no model loaded.")

            if self._needs_reinit:
                self._reinitialize_locked()

            try:
                out = self._forward(input_ids, cache)
            except BackendError as exc:
                if exc.corrupted:
                    logger.error("Context %s reported corrupted state: %s", self.name, exc)
                    self._needs_reinit = True
                raise

            self._steps_executed += 1
            return out

    def release_cache(self, cache: Any) -> None:
        """Drop a session's KV cache. Override to return memory eagerly."""
        _ = cache

    def _reinitialize_locked(self) -> None:
        handle = self._handle
        assert handle is not None
        logger.warning("Reinitializing context %s", self.name)
        self._unload()
        try:
            self._load(handle)
        except Exception as exc:
            raise BackendError(f"Reinitialization of {self.name} failed: {exc}", corrupted=True) from exc
        self._needs_reinit = False

    # -------------------------------------------------------------------------
    # Backend hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def check_available(self) -> None:
        """Raise InitializationError if this backend cannot run here."""

    @abstractmethod
    def _load(self, handle: ModelHandle) -> None:
        """Load weights for `handle` onto the device."""

    @abstractmethod
    def _forward(self, input_ids: Sequence[int], cache: Any) -> StepOutput:
        """Backend forward pass. Called with the context lock held."""

    def _unload(self) -> None:
        pass
