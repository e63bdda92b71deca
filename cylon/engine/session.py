"""Generation session state.

A `GenerationSession` is created by the chat engine from a validated request,
queued by the scheduler and advanced by exactly one decode loop. Its status is
only ever changed by `cylon.engine.decode_loop`.
"""

from __future__ import annotations

import enum
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from .chat_types import ChatMessage, SamplingConfig, StreamEvent, Usage


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({SessionStatus.DONE, SessionStatus.FAILED, SessionStatus.CANCELLED})

# Legal status changes. Anything else is a programming error.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED}),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.STREAMING, SessionStatus.DONE, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.STREAMING: frozenset({SessionStatus.DONE, SessionStatus.FAILED, SessionStatus.CANCELLED}),
    SessionStatus.DONE: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

EventSink = Callable[[StreamEvent], None]


@dataclass(eq=False)
class GenerationSession:
    """One request's generation state.

    `token_history` starts as a copy of `prompt_ids` and grows by one id per
    decode step; `generated_ids` holds only the sampled ids. `kv_cache` is
    owned by the session and released by the decode loop on termination.
    """

    conversation: list[ChatMessage]
    prompt_ids: list[int]
    sampling: SamplingConfig
    stop_token_ids: frozenset[int] = frozenset()
    stream: bool = False
    priority: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sink: EventSink | None = None

    token_history: list[int] = field(init=False)
    generated_ids: list[int] = field(default_factory=list)
    text: str = ""
    kv_cache: Any = None

    status: SessionStatus = SessionStatus.PENDING
    finish_reason: str | None = None
    error: BaseException | None = None

    created_at: float = field(default_factory=time.monotonic)
    enqueued_at: float | None = None
    started_at: float | None = None
    first_token_at: float | None = None
    finished_at: float | None = None

    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def __post_init__(self) -> None:
        self.prompt_ids = list(self.prompt_ids)
        self.token_history = list(self.prompt_ids)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def usage(self) -> Usage:
        return Usage(prompt_tokens=len(self.prompt_ids), completion_tokens=len(self.generated_ids))

    def cancel(self) -> None:
        """Request cancellation; observed by the decode loop between steps."""
        self.cancel_event.set()

    def emit(self, event: StreamEvent) -> None:
        if self.sink is not None:
            self.sink(event)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session is terminal. Returns False on timeout."""
        return self.done_event.wait(timeout)
