"""Request scheduler: admission control, priority queue and dispatch.

Sessions are admitted into a bounded queue ordered by `(-priority, arrival)`
and dispatched to the least-loaded device context as running slots free up.
Each running session is driven by a `DecodeLoop` on its own worker thread;
sessions sharing a context interleave at step granularity through the
context's lock.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from .backends.base import DeviceContext
from .decode_loop import DecodeLoop, finalize_unstarted
from .errors import Overloaded
from .session import GenerationSession, SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerHandle:
    """Returned by `submit`; identifies a session to `cancel`."""

    session_id: str
    session: GenerationSession = field(compare=False, repr=False)


@dataclass(order=True)
class _QueueEntry:
    sort_key: tuple[int, int]
    session: GenerationSession = field(compare=False)
    enqueued_at: float = field(compare=False)
    removed: bool = field(default=False, compare=False)
    timer: threading.Timer | None = field(default=None, compare=False)


class RequestScheduler:
    """
    Admits sessions, queues them and runs them on device contexts.

    Args:
        contexts: Loaded device contexts to dispatch to.
        max_queue_depth: Maximum number of pending sessions. 0 rejects every
            submission that cannot start immediately.
        max_concurrency: Running sessions allowed per context.
        max_queue_wait_s: Pending sessions older than this are failed with
            `Overloaded`. None disables the bound.
        decode_loop: Loop used to advance sessions.

    Thread Safety:
        All methods may be called from any thread.
    """

    def __init__(
        self,
        contexts: Sequence[DeviceContext],
        *,
        max_queue_depth: int,
        max_concurrency: int = 1,
        max_queue_wait_s: float | None = None,
        decode_loop: DecodeLoop | None = None,
    ) -> None:
        if not contexts:
            raise ValueError("RequestScheduler requires at least one device context.")
        if max_queue_depth < 0:
            raise ValueError("max_queue_depth must be >= 0.")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        if max_queue_wait_s is not None and max_queue_wait_s <= 0:
            raise ValueError("max_queue_wait_s must be > 0.")

        self._contexts = list(contexts)
        self._max_queue_depth = int(max_queue_depth)
        self._max_concurrency = int(max_concurrency)
        self._max_queue_wait_s = max_queue_wait_s
        self._decode_loop = decode_loop or DecodeLoop()

        self._lock = threading.Lock()
        self._heap: list[_QueueEntry] = []
        self._pending: dict[str, _QueueEntry] = {}
        self._running: dict[str, GenerationSession] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._load = [0] * len(self._contexts)
        self._seq = itertools.count()
        self._closed = False

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def contexts(self) -> list[DeviceContext]:
        return list(self._contexts)

    @property
    def capacity(self) -> int:
        return self._max_concurrency * len(self._contexts)

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running(self) -> int:
        with self._lock:
            return len(self._running)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "queued": len(self._pending),
                "running": len(self._running),
                "capacity": self.capacity,
                "max_queue_depth": self._max_queue_depth,
                "contexts": {ctx.name: load for ctx, load in zip(self._contexts, self._load)},
            }

    # -------------------------------------------------------------------------
    # Submission / cancellation
    # -------------------------------------------------------------------------

    def submit(self, session: GenerationSession) -> SchedulerHandle:
        """Admit `session` for generation.

        Raises:
            Overloaded: The queue is full or the scheduler is shut down.
            ValueError: The session is not pending.
        """
        if session.status != SessionStatus.PENDING:
            raise ValueError(f"Session {session.id} is {session.status.value}, expected pending.")

        with self._lock:
            if self._closed:
                raise Overloaded("Scheduler is shutting down.")

            has_free_slot = len(self._running) < self.capacity
            if not (has_free_slot and not self._pending) and len(self._pending) >= self._max_queue_depth:
                logger.warning(
                    "Rejecting session %s: queue full (%d pending, %d running)",
                    session.id,
                    len(self._pending),
                    len(self._running),
                )
                raise Overloaded(
                    f"Server overloaded: {len(self._pending)} request(s) queued "
                    f"(max_queue_depth={self._max_queue_depth}). Retry later."
                )

            now = time.monotonic()
            session.enqueued_at = now
            entry = _QueueEntry(sort_key=(-int(session.priority), next(self._seq)), session=session, enqueued_at=now)
            heapq.heappush(self._heap, entry)
            self._pending[session.id] = entry
            self._dispatch_locked()

            # Only sessions left waiting need an expiry timer.
            if not entry.removed:
                logger.debug("Session %s queued (priority=%d, depth=%d)", session.id, session.priority, len(self._pending))
                if self._max_queue_wait_s is not None:
                    entry.timer = threading.Timer(self._max_queue_wait_s, self._expire, args=(entry,))
                    entry.timer.daemon = True
                    entry.timer.start()

        return SchedulerHandle(session_id=session.id, session=session)

    def cancel(self, handle: SchedulerHandle) -> bool:
        """Cancel a queued or running session.

        A queued session is removed without consuming any step. A running one
        stops after its in-flight step. Returns False if it already finished.
        """
        session = handle.session
        with self._lock:
            entry = self._pending.get(session.id)
            if entry is not None:
                self._remove_locked(entry)
            elif session.id in self._running:
                session.cancel()
                logger.info("Cancellation requested for running session %s", session.id)
                return True
            else:
                return False

        session.cancel()
        finalize_unstarted(session, SessionStatus.CANCELLED)
        return True

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop admitting sessions, cancel queued and running ones."""
        with self._lock:
            self._closed = True
            pending = list(self._pending.values())
            for entry in pending:
                self._remove_locked(entry)
            running = list(self._running.values())
            threads = list(self._threads.values())

        for entry in pending:
            entry.session.cancel()
            finalize_unstarted(entry.session, SessionStatus.CANCELLED)
        for session in running:
            session.cancel()
        if wait:
            for thread in threads:
                thread.join(timeout)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _detach_locked(self, entry: _QueueEntry) -> None:
        entry.removed = True
        self._pending.pop(entry.session.id, None)
        if entry.timer is not None:
            entry.timer.cancel()

    def _remove_locked(self, entry: _QueueEntry) -> None:
        """Take a still-queued entry out of the heap as well."""
        self._detach_locked(entry)
        for i, queued in enumerate(self._heap):
            if queued is entry:
                last = self._heap.pop()
                if i < len(self._heap):
                    self._heap[i] = last
                    heapq.heapify(self._heap)
                break

    def _expire(self, entry: _QueueEntry) -> None:
        with self._lock:
            if entry.removed:
                return
            self._remove_locked(entry)

        waited = time.monotonic() - entry.enqueued_at
        logger.warning("Session %s expired after %.1fs in queue", entry.session.id, waited)
        finalize_unstarted(
            entry.session,
            SessionStatus.FAILED,
            Overloaded(f"Request waited {waited:.1f}s in queue (max_queue_wait_s={self._max_queue_wait_s}). Retry later."),
        )

    def _pick_context_locked(self) -> int:
        return min(range(len(self._contexts)), key=lambda i: (self._load[i], i))

    def _dispatch_locked(self) -> None:
        while self._heap and len(self._running) < self.capacity:
            entry = heapq.heappop(self._heap)
            self._detach_locked(entry)

            idx = self._pick_context_locked()
            session = entry.session
            self._load[idx] += 1
            self._running[session.id] = session

            thread = threading.Thread(
                target=self._run,
                args=(session, idx),
                name=f"cylon-decode-{session.id}",
                daemon=True,
            )
            self._threads[session.id] = thread
            logger.debug("Dispatching session %s to %s", session.id, self._contexts[idx].name)
            thread.start()

    def _run(self, session: GenerationSession, idx: int) -> None:
        try:
            self._decode_loop.run(session, self._contexts[idx])
        finally:
            with self._lock:
                self._load[idx] -= 1
                self._running.pop(session.id, None)
                self._threads.pop(session.id, None)
                if not self._closed:
                    self._dispatch_locked()
