"""HTTP client for the Cylon inference server.

This module provides small, dependency-free primitives for JSON requests and SSE
streaming, plus typed wrappers for the `CylonApi` procedures.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator

DEFAULT_URL = "http://127.0.0.1:8080"
API_PREFIX = "/cylon.CylonApi"


@dataclass(frozen=True)
class HttpError(RuntimeError):
    message: str
    url: str | None = None
    status_code: int | None = None
    body: str | None = None

    def __str__(self) -> str:  # pragma: no cover
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)


def _join_url(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    # Ensure base_url ends with "/" so urljoin doesn't drop the path.
    return urllib.parse.urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def iter_sse_data(stream: BinaryIO) -> Iterator[str]:
    """Yield decoded SSE `data:` payloads, one per event."""
    data_lines: list[str] = []
    for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if data_lines:
        yield "\n".join(data_lines)


def iter_sse_json(stream: BinaryIO) -> Iterator[dict[str, Any]]:
    """Yield JSON-decoded SSE `data:` payloads; stops on `[DONE]`."""
    for payload in iter_sse_data(stream):
        if payload == "[DONE]":
            return
        yield json.loads(payload)


def build_run_payload(
    prompt: str,
    *,
    system_prompt: str | None = None,
    max_new_tokens: int | None = None,
    temperature: float | None = None,
    top_p: float | None = None,
    top_k: int | None = None,
    seed: int | None = None,
    stop: list[str] | None = None,
    priority: int | None = None,
    stream: bool = False,
    wait: bool = True,
) -> dict[str, Any]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    payload: dict[str, Any] = {"messages": messages, "stream": stream, "wait": wait}
    optional = {
        "max_new_tokens": max_new_tokens,
        "temperature": temperature,
        "top_p": top_p,
        "top_k": top_k,
        "seed": seed,
        "stop": stop or None,
        "priority": priority,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    return payload


class CylonClient:
    def __init__(self, *, base_url: str = DEFAULT_URL, timeout_s: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)

    def _open(self, method: str, path: str, *, payload: Any | None, accept: str, timeout_s: float | None) -> Any:
        url = _join_url(self.base_url, path)
        body: bytes | None = None
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url=url, method=method.upper(), data=body)
        req.add_header("Accept", accept)
        if payload is not None:
            req.add_header("Content-Type", "application/json")

        try:
            return urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s)
        except urllib.error.HTTPError as exc:
            body_text: str | None
            try:
                body_text = exc.read().decode("utf-8", errors="replace")
            except OSError:
                body_text = None
            raise HttpError(
                "HTTP error",
                url=url,
                status_code=getattr(exc, "code", None),
                body=body_text,
            ) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

    def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        with self._open(method, path, payload=payload, accept="application/json", timeout_s=timeout_s) as resp:
            raw = resp.read()
            try:
                return json.loads(raw.decode("utf-8"))
            except ValueError as exc:
                raise HttpError(
                    "Invalid JSON response",
                    url=_join_url(self.base_url, path),
                    status_code=getattr(resp, "status", None),
                    body=raw.decode("utf-8", errors="replace"),
                ) from exc

    def request_sse(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
    ) -> Iterator[dict[str, Any]]:
        resp = self._open(method, path, payload=payload, accept="text/event-stream", timeout_s=timeout_s)
        try:
            yield from iter_sse_json(resp)
        finally:
            resp.close()

    # -------------------------------------------------------------------------
    # CylonApi
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        result = self.request_json("GET", "/health", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /health response", url=_join_url(self.base_url, "/health"))
        return result

    def inference_run(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Unary or detached run, depending on `payload["wait"]`."""
        return self.request_json("POST", f"{API_PREFIX}/InferenceRun", payload={**payload, "stream": False})

    def inference_run_stream(self, payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
        return self.request_sse("POST", f"{API_PREFIX}/InferenceRun", payload={**payload, "stream": True, "wait": True})

    def inference_status(self, job_id: str) -> dict[str, Any]:
        return self.request_json("POST", f"{API_PREFIX}/InferenceStatus", payload={"uuid": job_id})

    def inference_result(self, job_id: str) -> dict[str, Any]:
        return self.request_json("POST", f"{API_PREFIX}/InferenceResult", payload={"uuid": job_id})

    def inference_cancel(self, job_id: str) -> dict[str, Any]:
        return self.request_json("POST", f"{API_PREFIX}/InferenceCancel", payload={"uuid": job_id})
