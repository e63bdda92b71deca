"""Core chat request/streaming event types.

These types are internal to the library and are intentionally decoupled from:
- HTTP transport (FastAPI / SSE)
- The `CylonApi` JSON envelopes

The goal is to keep the core engine reusable for future API surfaces.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Literal


Role = Literal["system", "user", "assistant"]
VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})

FinishReason = Literal["stop", "length", "cancelled", "error"]


@dataclass(frozen=True)
class ChatMessage:
    """A normalized chat message."""

    role: Role
    content: str


@dataclass(frozen=True)
class SamplingConfig:
    """Resolved, per-session sampling configuration.

    `temperature <= 0` selects greedy decoding. `top_k`/`top_p` of None disable
    the corresponding filter. `repeat_penalty == 1.0` disables the penalty.
    """

    temperature: float = 0.0
    top_p: float | None = None
    top_k: int | None = None
    max_new_tokens: int = 256
    stop_sequences: tuple[str, ...] = ()
    seed: int = 299792458
    repeat_penalty: float = 1.0
    repeat_last_n: int = 128

    def validate(self) -> None:
        for name in ("temperature", "top_p", "repeat_penalty"):
            value = getattr(self, name)
            if value is not None and not math.isfinite(value):
                raise ValueError(f"'{name}' must be a finite number.")
        if self.temperature < 0:
            raise ValueError("'temperature' must be >= 0.")
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise ValueError("'top_p' must be in (0, 1].")
        if self.top_k is not None and self.top_k <= 0:
            raise ValueError("'top_k' must be > 0.")
        if self.max_new_tokens <= 0:
            raise ValueError("'max_new_tokens' must be > 0.")
        if self.repeat_penalty <= 0:
            raise ValueError("'repeat_penalty' must be > 0.")
        if self.repeat_last_n < 0:
            raise ValueError("'repeat_last_n' must be >= 0.")


@dataclass(frozen=True)
class ChatRequest:
    """Normalized internal chat request.

    Sampling fields left as None fall back to the engine defaults.
    """

    messages: list[ChatMessage]
    max_new_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    seed: int | None = None
    repeat_penalty: float | None = None
    repeat_last_n: int | None = None
    stop: list[str] = field(default_factory=list)
    stream: bool = False
    priority: int = 0
    request_id: str | None = None


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    queue_s: float | None = None
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class StartedEvent:
    """The session left the queue and is being decoded."""

    session_id: str


@dataclass(frozen=True)
class DeltaEvent:
    """Incremental text fragment."""

    text: str


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event for a generation."""

    finish_reason: FinishReason
    usage: Usage
    timing: Timing


@dataclass(frozen=True)
class ErrorEvent:
    """Error event; always followed by a FinalEvent with finish_reason='error'."""

    message: str
    error_type: str = "server_error"
    retryable: bool = False


StreamEvent = StartedEvent | DeltaEvent | FinalEvent | ErrorEvent
