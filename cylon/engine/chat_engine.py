"""Async chat inference engine.

This module provides the core, reusable engine:
- request validation -> tokenizer prompt -> `GenerationSession`
- submission to the `RequestScheduler`
- async event streaming bridged from decode-loop worker threads
- detached jobs whose results are kept in a TTL `ResultCache`

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Sequence

from .backends.base import ModelHandle
from .chat_types import (
    VALID_ROLES,
    ChatMessage,
    ChatRequest,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    SamplingConfig,
    StartedEvent,
    StreamEvent,
)
from .errors import BackendError, CylonError, InvalidRequest, Overloaded
from .result_cache import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_ERROR,
    JOB_QUEUED,
    JOB_RUNNING,
    JobRecord,
    ResultCache,
)
from .scheduler import RequestScheduler, SchedulerHandle
from .session import GenerationSession

logger = logging.getLogger(__name__)


def encode_chat(tokenizer: Any, messages: Sequence[ChatMessage]) -> list[int]:
    """Render `messages` with the tokenizer's chat template into a flat id list."""
    apply_chat_template = getattr(tokenizer, "apply_chat_template", None)
    if not callable(apply_chat_template):
        raise RuntimeError("Tokenizer does not support apply_chat_template().")

    template_messages = [{"role": m.role, "content": m.content} for m in messages]
    ids = apply_chat_template(template_messages, add_generation_prompt=True, tokenize=True)

    # Some tokenizers return a BatchEncoding / tensor instead of a flat list.
    if hasattr(ids, "get") and not isinstance(ids, list):
        ids = ids.get("input_ids", ids)
    if hasattr(ids, "tolist"):
        ids = ids.tolist()
    if ids and isinstance(ids[0], list):
        ids = ids[0]
    return [int(t) for t in ids]


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    system_prompt: str | None = "You are a helpful assistant."
    # Default and upper bound for max_new_tokens.
    sample_len: int = 10_000
    temperature: float = 0.0
    top_p: float | None = None
    top_k: int | None = None
    seed: int = 299792458
    repeat_penalty: float = 1.0
    repeat_last_n: int = 128
    # None falls back to the model's context length.
    max_prompt_tokens: int | None = None

    def default_sampling(self) -> SamplingConfig:
        return SamplingConfig(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_new_tokens=self.sample_len,
            seed=self.seed,
            repeat_penalty=self.repeat_penalty,
            repeat_last_n=self.repeat_last_n,
        )


class EventStream:
    """Async iterator over one session's events, ending after its `FinalEvent`.

    Closing the stream before the session is terminal cancels it.
    """

    def __init__(
        self,
        *,
        session: GenerationSession,
        queue: asyncio.Queue[StreamEvent],
        cancel: Any,
    ) -> None:
        self._session = session
        self._queue = queue
        self._cancel = cancel
        self._finished = False

    @property
    def session(self) -> GenerationSession:
        return self._session

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            event = await self._queue.get()
        except asyncio.CancelledError:
            self.cancel()
            raise
        if isinstance(event, FinalEvent):
            self._finished = True
        return event

    def cancel(self) -> None:
        if not self._finished and not self._session.terminal:
            self._cancel()

    async def aclose(self) -> None:
        self.cancel()
        self._finished = True


class ChatEngine:
    """Core chat inference engine.

    Thread-safety:
        Sessions are executed by the scheduler's worker threads; this object
        only tokenizes, submits and relays events, and may be shared by any
        number of concurrent callers.
    """

    def __init__(
        self,
        handle: ModelHandle,
        scheduler: RequestScheduler,
        *,
        config: EngineConfig | None = None,
        results: ResultCache[JobRecord] | None = None,
    ) -> None:
        self._handle = handle
        self._scheduler = scheduler
        self._config = config or EngineConfig()
        self._results: ResultCache[JobRecord] = results if results is not None else ResultCache()
        self._detached_lock = threading.Lock()
        self._detached: dict[str, SchedulerHandle] = {}

    @property
    def handle(self) -> ModelHandle:
        return self._handle

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def results(self) -> ResultCache[JobRecord]:
        return self._results

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "model_path": self._handle.model_path,
            "model_family": self._handle.model_family,
            "dtype": self._handle.dtype,
            "max_context_length": self._handle.max_context_length,
            "contexts": [ctx.model_info for ctx in self._scheduler.contexts],
            "scheduler": self._scheduler.stats(),
        }

    def shutdown(self) -> None:
        self._scheduler.shutdown()
        self._results.stop_cleanup()
        for ctx in self._scheduler.contexts:
            ctx.unload()

    # -------------------------------------------------------------------------
    # Request -> session
    # -------------------------------------------------------------------------

    def _validate_messages(self, messages: Sequence[Any]) -> list[ChatMessage]:
        if not isinstance(messages, (list, tuple)) or not messages:
            raise InvalidRequest("'messages' must be a non-empty list.")
        out: list[ChatMessage] = []
        for m in messages:
            if not isinstance(m, ChatMessage):
                raise InvalidRequest("Each message must be a ChatMessage.")
            if m.role not in VALID_ROLES:
                raise InvalidRequest(f"Invalid message role: {m.role!r}.")
            if not isinstance(m.content, str):
                raise InvalidRequest("Message 'content' must be a string.")
            out.append(m)
        return out

    def _with_system_prompt(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        system_prompt = self._config.system_prompt
        if not system_prompt or any(m.role == "system" for m in messages):
            return messages
        return [ChatMessage(role="system", content=system_prompt), *messages]

    def _sampling_for(self, request: ChatRequest) -> SamplingConfig:
        overrides: dict[str, Any] = {}
        for name in ("temperature", "top_p", "top_k", "seed", "repeat_penalty", "repeat_last_n"):
            value = getattr(request, name)
            if value is not None:
                overrides[name] = value
        if request.max_new_tokens is not None:
            overrides["max_new_tokens"] = int(request.max_new_tokens)
        overrides["stop_sequences"] = tuple(s for s in request.stop if s)

        sampling = replace(self._config.default_sampling(), **overrides)
        try:
            sampling.validate()
        except ValueError as exc:
            raise InvalidRequest(str(exc)) from exc
        if sampling.max_new_tokens > self._config.sample_len:
            raise InvalidRequest(
                f"'max_new_tokens' must be <= {self._config.sample_len} (got {sampling.max_new_tokens})."
            )
        return sampling

    def _stop_token_ids(self, stop: Sequence[str]) -> frozenset[int]:
        """EOS ids plus stop strings that name a single special token.

        Special tokens are skipped when detokenizing, so they can only be
        matched by id.
        """
        ids = set(self._handle.eos_token_ids)
        tokenizer = self._handle.tokenizer
        special = set(getattr(tokenizer, "all_special_tokens", None) or ())
        convert = getattr(tokenizer, "convert_tokens_to_ids", None)
        if callable(convert):
            for s in stop:
                if s and s in special:
                    token_id = convert(s)
                    if isinstance(token_id, int):
                        ids.add(token_id)
        return frozenset(ids)

    def _tokenize(self, messages: list[ChatMessage]) -> list[int]:
        tokenizer = self._handle.tokenizer
        if not callable(getattr(tokenizer, "apply_chat_template", None)):
            raise RuntimeError("Tokenizer does not support apply_chat_template().")
        try:
            return encode_chat(tokenizer, messages)
        except Exception as exc:
            raise InvalidRequest(f"Failed to apply chat template: {exc}") from exc

    def build_session(self, request: ChatRequest, *, sink: Any = None) -> GenerationSession:
        """Validate `request` and build a pending session.

        Raises:
            InvalidRequest: Malformed conversation, bad sampling values or an
                over-long prompt. No session exists in that case.
        """
        messages = self._with_system_prompt(self._validate_messages(request.messages))
        sampling = self._sampling_for(request)
        prompt_ids = self._tokenize(messages)
        if not prompt_ids:
            raise InvalidRequest("Conversation tokenized to an empty prompt.")

        limit = self._config.max_prompt_tokens or self._handle.max_context_length
        if limit is not None and len(prompt_ids) >= limit:
            raise InvalidRequest(f"Prompt too long: {len(prompt_ids)} tokens (max={limit - 1}).")

        kwargs: dict[str, Any] = {}
        if request.request_id:
            kwargs["id"] = request.request_id
        return GenerationSession(
            conversation=messages,
            prompt_ids=prompt_ids,
            sampling=sampling,
            stop_token_ids=self._stop_token_ids(request.stop),
            stream=bool(request.stream),
            priority=int(request.priority),
            sink=sink,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    def open_stream(self, request: ChatRequest) -> EventStream:
        """Build and submit a session; return its event stream.

        Must be called from a running event loop. Validation and admission
        errors (`InvalidRequest`, `Overloaded`) raise here, before any event.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()

        def sink(event: StreamEvent) -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(queue.put_nowait, event)

        session = self.build_session(request, sink=sink)
        handle = self._scheduler.submit(session)
        logger.debug("Submitted session %s (stream=%s)", session.id, session.stream)
        return EventStream(session=session, queue=queue, cancel=lambda: self._scheduler.cancel(handle))

    async def astream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator streaming internal events."""
        stream = self.open_stream(request)
        try:
            async for event in stream:
                yield event
        finally:
            # If the consumer stops early (disconnect / generator close), cancel generation.
            stream.cancel()

    async def generate_chat(self, request: ChatRequest) -> dict[str, Any]:
        """Non-streaming chat completion.

        Returns:
            Dict containing:
              - id: str (session id)
              - content: str
              - finish_reason: str
              - usage: Usage
              - timing: Timing

        Raises:
            CylonError: The session failed; the error type is preserved.
        """
        content_parts: list[str] = []
        error: ErrorEvent | None = None
        session_id = None
        result: dict[str, Any] = {}

        async for event in self.astream_chat(request):
            if isinstance(event, StartedEvent):
                session_id = event.session_id
            elif isinstance(event, DeltaEvent):
                content_parts.append(event.text)
            elif isinstance(event, ErrorEvent):
                error = event
            elif isinstance(event, FinalEvent):
                result = {
                    "id": session_id,
                    "content": "".join(content_parts),
                    "finish_reason": event.finish_reason,
                    "usage": event.usage,
                    "timing": event.timing,
                }

        if error is not None:
            raise _error_from_event(error)
        return result

    # -------------------------------------------------------------------------
    # Detached jobs
    # -------------------------------------------------------------------------

    def submit_detached(self, request: ChatRequest) -> JobRecord:
        """Queue a request whose result is fetched later by id.

        Raises the same validation/admission errors as `open_stream`.
        """
        parts: list[str] = []
        state: dict[str, Any] = {}

        def sink(event: StreamEvent) -> None:
            job_id = state.get("id")
            if job_id is None:
                return
            if isinstance(event, StartedEvent):
                self._results.update(job_id, JobRecord(uuid=job_id, status=JOB_RUNNING))
            elif isinstance(event, DeltaEvent):
                parts.append(event.text)
            elif isinstance(event, ErrorEvent):
                state["error"] = event.message
            elif isinstance(event, FinalEvent):
                status = {"cancelled": JOB_CANCELLED, "error": JOB_ERROR}.get(event.finish_reason, JOB_COMPLETED)
                record = JobRecord(
                    uuid=job_id,
                    status=status,
                    response="".join(parts),
                    finish_reason=event.finish_reason,
                    error=state.get("error"),
                )
                self._results.insert(job_id, record)
                with self._detached_lock:
                    self._detached.pop(job_id, None)
                logger.info("Job %s %s", job_id, status)

        session = self.build_session(replace(request, stream=False), sink=sink)
        job_id = session.id
        record = JobRecord(uuid=job_id, status=JOB_QUEUED)
        self._results.insert(job_id, record)
        state["id"] = job_id

        with self._detached_lock:
            try:
                self._detached[job_id] = self._scheduler.submit(session)
            except CylonError:
                self._results.remove(job_id)
                raise
        logger.info("Job %s queued", job_id)
        return self._results.get(job_id) or record

    def job(self, job_id: str) -> JobRecord | None:
        """Current record of a detached job, or None if unknown or expired."""
        return self._results.get(job_id)

    def cancel_job(self, job_id: str) -> JobRecord | None:
        """Cancel a detached job. Returns its record, or None if unknown."""
        with self._detached_lock:
            handle = self._detached.get(job_id)
        if handle is not None:
            self._scheduler.cancel(handle)
            handle.session.wait(timeout=5.0)
        return self._results.get(job_id)


def _error_from_event(event: ErrorEvent) -> CylonError:
    cls = {
        "overloaded": Overloaded,
        "backend_error": BackendError,
        "invalid_request_error": InvalidRequest,
    }.get(event.error_type, CylonError)
    return cls(event.message)
