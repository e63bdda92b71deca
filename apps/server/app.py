"""FastAPI app exposing the `CylonApi` remote procedures.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`cylon/engine`).

Procedures are JSON-over-HTTP POSTs under `/cylon.CylonApi/<Method>`;
streaming runs use server-sent events terminated by `data: [DONE]`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from cylon._version import __version__
from cylon.engine.chat_engine import ChatEngine, EventStream
from cylon.engine.chat_types import (
    ChatMessage,
    ChatRequest,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    StartedEvent,
    Timing,
    Usage,
)
from cylon.engine.errors import CylonError, InvalidRequest, Overloaded
from cylon.engine.result_cache import JOB_CANCELLED, JOB_COMPLETED, JOB_ERROR, JobRecord

logger = logging.getLogger(__name__)

API_PREFIX = "/cylon.CylonApi"

_STATUS_BY_FINISH = {"cancelled": JOB_CANCELLED, "error": JOB_ERROR}


def create_app(
    *,
    engine: ChatEngine,
    model_id: str,
    queue_disabled: bool = False,
) -> FastAPI:
    app = FastAPI(title="Cylon Inference Server", version=__version__)

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _json_dict(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _job_uuid(payload: dict[str, Any]) -> str:
        job_id = payload.get("uuid")
        if not isinstance(job_id, str) or not job_id:
            raise HTTPException(status_code=400, detail="'uuid' is required and must be a string.")
        return job_id

    def _lookup_job(job_id: str) -> JobRecord:
        record = engine.job(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown or expired uuid: {job_id}")
        return record

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "cylon",
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    @app.post(f"{API_PREFIX}/InferenceRun")
    async def inference_run(request: Request) -> Any:
        payload = await _json_dict(request)
        chat_req, wait = _parse_inference_request(payload)

        if not wait:
            if queue_disabled:
                raise HTTPException(status_code=400, detail="Detached requests are disabled on this server.")
            try:
                record = engine.submit_detached(chat_req)
            except CylonError as exc:
                raise _http_error(exc) from exc
            return JSONResponse({"uuid": record.uuid, "status": record.status})

        if chat_req.stream:
            try:
                stream = engine.open_stream(chat_req)
            except CylonError as exc:
                raise _http_error(exc) from exc
            return StreamingResponse(_stream_inference(stream, request=request), media_type="text/event-stream")

        try:
            result = await _run_with_disconnect_cancellation(request, engine.generate_chat(chat_req))
        except HTTPException:
            raise
        except CylonError as exc:
            raise _http_error(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("InferenceRun failed")
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        finish_reason = result.get("finish_reason") or "stop"
        resp: dict[str, Any] = {
            "uuid": result.get("id"),
            "status": "OK",
            "response": {"role": "assistant", "content": result.get("content") or ""},
            "finish_reason": finish_reason,
        }
        usage = result.get("usage")
        if isinstance(usage, Usage):
            resp["usage"] = _usage_dict(usage)
        timing = result.get("timing")
        if isinstance(timing, Timing):
            resp["timing"] = _timing_dict(timing)
        return JSONResponse(resp)

    @app.post(f"{API_PREFIX}/InferenceStatus")
    async def inference_status(request: Request) -> Any:
        record = _lookup_job(_job_uuid(await _json_dict(request)))
        return {"uuid": record.uuid, "status": record.status}

    @app.post(f"{API_PREFIX}/InferenceResult")
    async def inference_result(request: Request) -> Any:
        record = _lookup_job(_job_uuid(await _json_dict(request)))
        resp: dict[str, Any] = {
            "uuid": record.uuid,
            "status": record.status,
            "response": None,
            "finish_reason": record.finish_reason,
        }
        if record.terminal:
            resp["response"] = {"role": "assistant", "content": record.response or ""}
        if record.error is not None:
            resp["error"] = {"message": record.error}
        return resp

    @app.post(f"{API_PREFIX}/InferenceCancel")
    async def inference_cancel(request: Request) -> Any:
        job_id = _job_uuid(await _json_dict(request))
        _lookup_job(job_id)
        record = await asyncio.to_thread(engine.cancel_job, job_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown or expired uuid: {job_id}")
        return {"uuid": record.uuid, "status": record.status}

    return app


def _http_error(exc: CylonError) -> HTTPException:
    if isinstance(exc, InvalidRequest):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, Overloaded):
        return HTTPException(status_code=429, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_dict(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _timing_dict(timing: Timing) -> dict[str, float | None]:
    return {
        "queue_s": timing.queue_s,
        "prefill_s": timing.prefill_s,
        "decode_s": timing.decode_s,
        "total_s": timing.total_s,
        "tok_per_s": timing.tok_per_s,
    }


async def _stream_inference(stream: EventStream, *, request: Request) -> AsyncIterator[str]:
    session_id = stream.session.id
    cancelled = False

    try:
        async for event in stream:
            # If the client disconnects mid-stream, stop consuming promptly.
            # The session is cancelled when the stream is closed below.
            if await request.is_disconnected():
                cancelled = True
                break

            if isinstance(event, StartedEvent):
                yield _sse(json.dumps({"uuid": session_id, "status": "RUNNING"}))
                continue

            if isinstance(event, DeltaEvent):
                if not event.text:
                    continue
                yield _sse(json.dumps({"uuid": session_id, "delta": {"content": event.text}}, ensure_ascii=False))
                continue

            if isinstance(event, ErrorEvent):
                yield _sse(
                    json.dumps(
                        {"uuid": session_id, "error": {"message": event.message, "type": event.error_type}},
                        ensure_ascii=False,
                    )
                )
                continue

            if isinstance(event, FinalEvent):
                yield _sse(
                    json.dumps(
                        {
                            "uuid": session_id,
                            "status": _STATUS_BY_FINISH.get(event.finish_reason, JOB_COMPLETED),
                            "finish_reason": event.finish_reason,
                            "usage": _usage_dict(event.usage),
                            "timing": _timing_dict(event.timing),
                        }
                    )
                )
    except asyncio.CancelledError:
        cancelled = True
        raise
    finally:
        await stream.aclose()

    if not cancelled:
        yield "data: [DONE]\n\n"


def _parse_inference_request(payload: Any) -> tuple[ChatRequest, bool]:
    """Parse an `InferenceRun` body into a `ChatRequest` and the `wait` flag."""
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise HTTPException(status_code=400, detail="'messages' must be a non-empty list.")

    messages: list[ChatMessage] = []
    for m in raw_messages:
        if not isinstance(m, dict):
            raise HTTPException(status_code=400, detail="Each message must be an object.")
        role = m.get("role")
        if role not in {"system", "user", "assistant"}:
            raise HTTPException(status_code=400, detail=f"Invalid message role: {role!r}.")
        content = m.get("content")
        if not isinstance(content, str):
            raise HTTPException(status_code=400, detail="Message 'content' must be a string.")
        messages.append(ChatMessage(role=role, content=content))

    def _opt_int(name: str, *, minimum: int | None = None) -> int | None:
        value = payload.get(name)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise HTTPException(status_code=400, detail=f"'{name}' must be an integer.")
        if minimum is not None and value < minimum:
            raise HTTPException(status_code=400, detail=f"'{name}' must be >= {minimum}.")
        return value

    def _opt_float(name: str) -> float | None:
        value = payload.get(name)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a number.")
        if not math.isfinite(value):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a finite number.")
        return float(value)

    def _opt_bool(name: str, default: bool) -> bool:
        value = payload.get(name)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a boolean.")
        return value

    stop = payload.get("stop")
    if stop is None:
        stop_list: list[str] = []
    elif isinstance(stop, str):
        stop_list = [stop]
    elif isinstance(stop, list) and all(isinstance(s, str) for s in stop):
        stop_list = list(stop)
    else:
        raise HTTPException(status_code=400, detail="'stop' must be a string or list of strings.")

    stream = _opt_bool("stream", False)
    wait = _opt_bool("wait", True)
    if stream and not wait:
        raise HTTPException(status_code=400, detail="'stream' requires 'wait' to be true.")

    chat_req = ChatRequest(
        messages=messages,
        max_new_tokens=_opt_int("max_new_tokens", minimum=1),
        temperature=_opt_float("temperature"),
        top_p=_opt_float("top_p"),
        top_k=_opt_int("top_k", minimum=1),
        seed=_opt_int("seed", minimum=0),
        repeat_penalty=_opt_float("repeat_penalty"),
        repeat_last_n=_opt_int("repeat_last_n", minimum=0),
        stop=stop_list,
        stream=stream,
        priority=_opt_int("priority") or 0,
    )
    return chat_req, wait
