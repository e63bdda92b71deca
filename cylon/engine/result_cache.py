"""TTL cache for detached job results."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

JOB_QUEUED = "QUEUED"
JOB_RUNNING = "RUNNING"
JOB_COMPLETED = "COMPLETED"
JOB_ERROR = "ERROR"
JOB_CANCELLED = "CANCELLED"

TERMINAL_JOB_STATUSES = frozenset({JOB_COMPLETED, JOB_ERROR, JOB_CANCELLED})


@dataclass(frozen=True)
class JobRecord:
    """Status and (once terminal) output of a detached inference run."""

    uuid: str
    status: str = JOB_QUEUED
    response: str | None = None
    finish_reason: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class ResultCache(Generic[V]):
    """Thread-safe map whose entries expire `ttl_s` seconds after insertion.

    Expired entries are invisible to `get` immediately and are physically
    removed by `cleanup_expired`, which `start_cleanup` runs periodically on a
    daemon thread.
    """

    def __init__(self, ttl_s: float = 3600.0) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0.")
        self._ttl_s = float(ttl_s)
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[V, float]] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def insert(self, key: str, value: V) -> None:
        """Insert or replace `key`; the TTL restarts."""
        with self._lock:
            self._entries[key] = (value, time.monotonic())

    def update(self, key: str, value: V) -> bool:
        """Replace a live entry keeping its insertion time. Returns False if absent."""
        with self._lock:
            item = self._entries.get(key)
            if item is None or self._expired(item[1]):
                return False
            self._entries[key] = (value, item[1])
            return True

    def get(self, key: str) -> V | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None or self._expired(item[1]):
                return None
            return item[0]

    def remove(self, key: str) -> V | None:
        with self._lock:
            item = self._entries.pop(key, None)
        return None if item is None else item[0]

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            expired = [k for k, (_, inserted) in self._entries.items() if self._expired(inserted)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Removed %d expired result(s)", len(expired))
        return len(expired)

    def _expired(self, inserted_at: float) -> bool:
        return time.monotonic() - inserted_at >= self._ttl_s

    # -------------------------------------------------------------------------
    # Background cleanup
    # -------------------------------------------------------------------------

    def start_cleanup(self, interval_s: float = 300.0) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0.")
        if self._thread is not None:
            return
        self._stop.clear()

        def loop() -> None:
            while not self._stop.wait(interval_s):
                self.cleanup_expired()

        self._thread = threading.Thread(target=loop, name="cylon-result-cache-cleanup", daemon=True)
        self._thread.start()
        logger.info("Result cache cleanup every %.0fs (ttl=%.0fs)", interval_s, self._ttl_s)

    def stop_cleanup(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=1.0)
