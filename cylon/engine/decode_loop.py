"""Autoregressive decode loop.

Drives one `GenerationSession` against one `DeviceContext`: prefill, then one
`step` + sample per iteration until a stop condition, cancellation or a device
error. This module is the only place session status changes.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from .backends.base import DeviceContext
from .chat_types import DeltaEvent, ErrorEvent, FinalEvent, StartedEvent, Timing
from .errors import BackendError, CylonError
from .sampling import Sampler
from .session import ALLOWED_TRANSITIONS, GenerationSession, SessionStatus

logger = logging.getLogger(__name__)


def transition(session: GenerationSession, status: SessionStatus) -> None:
    """Move `session` to `status`, rejecting illegal changes."""
    current = session.status
    if status == current and status == SessionStatus.STREAMING:
        return
    if status not in ALLOWED_TRANSITIONS[current]:
        raise RuntimeError(f"Illegal session transition {current.value} -> {status.value} ({session.id})")
    session.status = status


class IncrementalDetokenizer:
    """Turns a growing list of token ids into safe-to-emit text fragments.

    The full id list is re-decoded on every push; a fragment is only released
    when it ends in a complete character and cannot be the start of a stop
    sequence, so emitted text is never retracted.
    """

    def __init__(self, tokenizer: Any, stop_sequences: Sequence[str] = ()) -> None:
        self._tokenizer = tokenizer
        self._stop_sequences = [s for s in stop_sequences if s]
        self._tail_keep = max((len(s) for s in self._stop_sequences), default=1) - 1
        self._ids: list[int] = []
        self._decoded = ""
        self._emitted = 0
        self.stopped = False

    @property
    def text(self) -> str:
        """Text released so far."""
        return self._decoded[: self._emitted]

    def _decode(self) -> str:
        return self._tokenizer.decode(self._ids, skip_special_tokens=True)

    def push(self, token_id: int) -> str:
        """Add one token; return the newly releasable text (may be empty)."""
        if self.stopped:
            return ""

        self._ids.append(int(token_id))
        decoded = self._decode()
        if decoded.endswith("\ufffd"):
            # Incomplete multi-byte character.
            return ""
        self._decoded = decoded

        stop_at = self._find_earliest_stop(decoded)
        if stop_at is not None:
            self.stopped = True
            return self._release(stop_at)

        return self._release(len(decoded) - self._tail_keep)

    def flush(self) -> str:
        """Release everything still held back (end of generation)."""
        if self.stopped:
            return ""
        if self._ids:
            self._decoded = self._decode()
        return self._release(len(self._decoded))

    def _release(self, end: int) -> str:
        if end <= self._emitted:
            return ""
        fragment = self._decoded[self._emitted : end]
        self._emitted = end
        return fragment

    def _find_earliest_stop(self, text: str) -> int | None:
        earliest: int | None = None
        for s in self._stop_sequences:
            idx = text.find(s)
            if idx != -1 and (earliest is None or idx < earliest):
                earliest = idx
        return earliest


def _timing(session: GenerationSession) -> Timing:
    ended = session.finished_at if session.finished_at is not None else time.monotonic()
    queue_s = None
    if session.enqueued_at is not None:
        queue_s = max((session.started_at or ended) - session.enqueued_at, 0.0)

    prefill_s = None
    decode_s = None
    tok_per_s = None
    if session.started_at is not None and session.first_token_at is not None:
        prefill_s = max(session.first_token_at - session.started_at, 0.0)
        decode_s = max(ended - session.first_token_at, 0.0)
        # The first token comes out of prefill.
        decode_tokens = len(session.generated_ids) - 1
        if decode_s > 0 and decode_tokens > 0:
            tok_per_s = decode_tokens / decode_s

    return Timing(
        queue_s=queue_s,
        prefill_s=prefill_s,
        decode_s=decode_s,
        total_s=max(ended - session.created_at, 0.0),
        tok_per_s=tok_per_s,
    )


def _finish(
    session: GenerationSession,
    status: SessionStatus,
    finish_reason: str,
    error: BaseException | None = None,
) -> None:
    transition(session, status)
    session.finish_reason = finish_reason
    session.error = error
    session.finished_at = time.monotonic()

    try:
        if error is not None:
            error_type = getattr(error, "error_type", "server_error")
            session.emit(ErrorEvent(str(error), error_type=error_type, retryable=error_type == "overloaded"))
        session.emit(FinalEvent(finish_reason=finish_reason, usage=session.usage, timing=_timing(session)))
    finally:
        session.done_event.set()


def finalize_unstarted(session: GenerationSession, status: SessionStatus, error: BaseException | None = None) -> None:
    """Terminate a session that never reached a decode loop (cancelled or expired in queue)."""
    finish_reason = "cancelled" if status == SessionStatus.CANCELLED else "error"
    _finish(session, status, finish_reason, error)
    logger.info("Session %s %s before dispatch", session.id, status.value)


class DecodeLoop:
    """Runs sessions to completion.

    Args:
        enable_kv_cache: When False every step resubmits the full token
            history instead of the newest token plus the session cache.
    """

    def __init__(self, *, enable_kv_cache: bool = True) -> None:
        self.enable_kv_cache = bool(enable_kv_cache)

    def run(self, session: GenerationSession, context: DeviceContext) -> None:
        """Advance `session` on `context` until it is terminal. Never raises."""
        transition(session, SessionStatus.RUNNING)
        session.started_at = time.monotonic()
        logger.debug("Session %s running on %s", session.id, context.name)

        status = SessionStatus.DONE
        finish_reason = "stop"
        error: BaseException | None = None
        try:
            session.emit(StartedEvent(session_id=session.id))
            status, finish_reason = self._decode(session, context)
        except BackendError as exc:
            logger.error("Session %s failed on %s: %s", session.id, context.name, exc)
            status, finish_reason, error = SessionStatus.FAILED, "error", exc
        except CylonError as exc:
            logger.error("Session %s failed: %s", session.id, exc)
            status, finish_reason, error = SessionStatus.FAILED, "error", exc
        except Exception as exc:
            logger.exception("Session %s failed with an unexpected error", session.id)
            status, finish_reason, error = SessionStatus.FAILED, "error", exc
        finally:
            cache, session.kv_cache = session.kv_cache, None
            if cache is not None:
                context.release_cache(cache)

        _finish(session, status, finish_reason, error)
        logger.info(
            "Session %s %s: finish_reason=%s prompt_tokens=%d completion_tokens=%d",
            session.id,
            session.status.value,
            finish_reason,
            len(session.prompt_ids),
            len(session.generated_ids),
        )

    def _decode(self, session: GenerationSession, context: DeviceContext) -> tuple[SessionStatus, str]:
        sampling = session.sampling
        handle = context.handle
        if handle is None:
            raise BackendError(f"Context {context.name} has no model loaded.")

        sampler = Sampler(sampling)
        detok = IncrementalDetokenizer(handle.tokenizer, sampling.stop_sequences)
        max_context = handle.max_context_length

        while True:
            if session.cancel_requested:
                return SessionStatus.CANCELLED, "cancelled"

            if session.kv_cache is None or not self.enable_kv_cache:
                input_ids = session.token_history
                cache = None
            else:
                input_ids = session.token_history[-1:]
                cache = session.kv_cache

            out = context.step(input_ids, cache)
            if self.enable_kv_cache:
                session.kv_cache = out.cache

            token = sampler.sample(out.logits, session.token_history)
            if session.first_token_at is None:
                session.first_token_at = time.monotonic()
            session.generated_ids.append(token)
            session.token_history.append(token)
            logger.debug("Session %s token %d: %d", session.id, len(session.generated_ids), token)

            if token in session.stop_token_ids:
                self._emit_text(session, detok.flush())
                return SessionStatus.DONE, "stop"

            self._emit_text(session, detok.push(token))
            if detok.stopped:
                return SessionStatus.DONE, "stop"

            if len(session.generated_ids) >= sampling.max_new_tokens or (
                max_context is not None and len(session.token_history) >= max_context
            ):
                self._emit_text(session, detok.flush())
                return SessionStatus.DONE, "length"

    def _emit_text(self, session: GenerationSession, fragment: str) -> None:
        if not fragment:
            return
        session.text += fragment
        if session.stream:
            transition(session, SessionStatus.STREAMING)
        session.emit(DeltaEvent(fragment))
