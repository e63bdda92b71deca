import json
import threading
import time

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")

RUN = "/cylon.CylonApi/InferenceRun"
STATUS = "/cylon.CylonApi/InferenceStatus"
RESULT = "/cylon.CylonApi/InferenceResult"
CANCEL = "/cylon.CylonApi/InferenceCancel"

SKY = {"messages": [{"role": "user", "content": "In one word, what color is the sky?"}]}


def _collect_sse_events(raw: str) -> list[str]:
    events: list[str] = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        if not block.startswith("data: "):
            continue
        events.append(block[len("data: ") :])
    return events


class _FakeSession:
    def __init__(self, session_id: str) -> None:
        self.id = session_id


class _FakeStream:
    def __init__(self, events) -> None:
        self.session = _FakeSession("s-1")
        self._events = list(events)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)

    async def aclose(self) -> None:
        self.closed = True


def test_health_and_models():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    client = TestClient(create_app(engine=object(), model_id="cylon-test"))
    assert client.get("/health").json() == {"status": "ok"}
    data = client.get("/v1/models").json()
    assert data["data"][0]["id"] == "cylon-test"


def test_unary_run_shape():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine.chat_types import Timing, Usage

    seen = []

    class FakeEngine:
        async def generate_chat(self, req):
            seen.append(req)
            return {
                "id": "abc",
                "content": "Blue.",
                "finish_reason": "stop",
                "usage": Usage(prompt_tokens=3, completion_tokens=2),
                "timing": Timing(total_s=0.5),
            }

    client = TestClient(create_app(engine=FakeEngine(), model_id="cylon-test"))
    resp = client.post(RUN, json={**SKY, "temperature": 0.5, "stop": "END", "priority": 2})

    assert resp.status_code == 200
    data = resp.json()
    assert data["uuid"] == "abc"
    assert data["status"] == "OK"
    assert data["response"] == {"role": "assistant", "content": "Blue."}
    assert data["finish_reason"] == "stop"
    assert data["usage"] == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    assert data["timing"]["total_s"] == 0.5

    req = seen[0]
    assert req.temperature == 0.5
    assert req.stop == ["END"]
    assert req.priority == 2
    assert req.messages[0].role == "user"


def test_stream_sse_ordering_and_done():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine.chat_types import DeltaEvent, FinalEvent, StartedEvent, Timing, Usage

    stream = _FakeStream(
        [
            StartedEvent("s-1"),
            DeltaEvent("Bl"),
            DeltaEvent(""),
            DeltaEvent("ue."),
            FinalEvent(finish_reason="stop", usage=Usage(prompt_tokens=1, completion_tokens=3), timing=Timing()),
        ]
    )

    class FakeEngine:
        def open_stream(self, req):
            assert req.stream
            return stream

    client = TestClient(create_app(engine=FakeEngine(), model_id="cylon-test"))
    with client.stream("POST", RUN, json={**SKY, "stream": True}) as resp:
        assert resp.status_code == 200
        resp.read()
        raw = resp.text

    events = _collect_sse_events(raw)
    assert events[-1] == "[DONE]"
    assert json.loads(events[0]) == {"uuid": "s-1", "status": "RUNNING"}

    content = "".join(json.loads(e)["delta"]["content"] for e in events[1:-2])
    assert content == "Blue."

    final = json.loads(events[-2])
    assert final["status"] == "COMPLETED"
    assert final["finish_reason"] == "stop"
    assert final["usage"]["total_tokens"] == 4
    assert stream.closed


def test_stream_error_event_precedes_final():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine.chat_types import ErrorEvent, FinalEvent, StartedEvent, Timing, Usage

    stream = _FakeStream(
        [
            StartedEvent("s-1"),
            ErrorEvent("device lost", error_type="backend_error"),
            FinalEvent(finish_reason="error", usage=Usage(prompt_tokens=1, completion_tokens=0), timing=Timing()),
        ]
    )

    class FakeEngine:
        def open_stream(self, req):
            return stream

    client = TestClient(create_app(engine=FakeEngine(), model_id="cylon-test"))
    with client.stream("POST", RUN, json={**SKY, "stream": True}) as resp:
        resp.read()
        events = _collect_sse_events(resp.text)

    error = json.loads(events[1])
    assert error["error"] == {"message": "device lost", "type": "backend_error"}
    assert json.loads(events[2])["status"] == "ERROR"
    assert events[-1] == "[DONE]"


@pytest.mark.parametrize(
    "exc_name,status",
    [("InvalidRequest", 400), ("Overloaded", 429), ("BackendError", 500)],
)
def test_engine_errors_map_to_status(exc_name, status):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine import errors

    exc_cls = getattr(errors, exc_name)

    class FakeEngine:
        async def generate_chat(self, req):
            raise exc_cls("nope")

        def open_stream(self, req):
            raise exc_cls("nope")

    client = TestClient(create_app(engine=FakeEngine(), model_id="cylon-test"))
    assert client.post(RUN, json=SKY).status_code == status
    assert client.post(RUN, json={**SKY, "stream": True}).status_code == status


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": []},
        {"messages": [{"role": "tool", "content": "x"}]},
        {"messages": [{"role": "user", "content": 1}]},
        {**SKY, "max_new_tokens": 0},
        {**SKY, "top_k": "5"},
        {**SKY, "temperature": True},
        {**SKY, "stop": [1]},
        {**SKY, "stream": True, "wait": False},
    ],
)
def test_invalid_bodies_rejected(body):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    client = TestClient(create_app(engine=object(), model_id="cylon-test"))
    assert client.post(RUN, json=body).status_code == 400


def test_non_object_body_rejected():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    client = TestClient(create_app(engine=object(), model_id="cylon-test"))
    assert client.post(RUN, json=[1, 2]).status_code == 400
    assert client.post(RUN, content=b"{", headers={"content-type": "application/json"}).status_code == 400


def test_detached_refused_when_queue_disabled():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    client = TestClient(create_app(engine=object(), model_id="cylon-test", queue_disabled=True))
    assert client.post(RUN, json={**SKY, "wait": False}).status_code == 400


def test_job_lookups_404_for_unknown_uuid():
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    class FakeEngine:
        def job(self, job_id):
            return None

        def cancel_job(self, job_id):
            return None

    client = TestClient(create_app(engine=FakeEngine(), model_id="cylon-test"))
    for path in (STATUS, RESULT, CANCEL):
        assert client.post(path, json={"uuid": "missing"}).status_code == 404
        assert client.post(path, json={}).status_code == 400


# -----------------------------------------------------------------------------
# End-to-end with the real engine over a scripted device context
# -----------------------------------------------------------------------------


@pytest.fixture
def live_client(fake_handle, make_context):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine.chat_engine import ChatEngine
    from cylon.engine.result_cache import ResultCache
    from cylon.engine.scheduler import RequestScheduler

    gate = threading.Event()
    gate.set()
    ctx = make_context(reply_fn=lambda prompt: "Blue." if "sky" in prompt else "I don't know.", gate=gate)
    scheduler = RequestScheduler([ctx], max_queue_depth=4)
    engine = ChatEngine(fake_handle, scheduler, results=ResultCache(ttl_s=60))
    client = TestClient(create_app(engine=engine, model_id="cylon-test"))
    yield client, engine, gate
    gate.set()
    engine.shutdown()


def _wait_terminal(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.post(STATUS, json={"uuid": job_id}).json()["status"]
        if status in {"COMPLETED", "ERROR", "CANCELLED"}:
            return status
        time.sleep(0.01)
    raise AssertionError("job never finished")


def test_live_unary(live_client):
    client, _, _ = live_client
    data = client.post(RUN, json=SKY).json()
    assert data["response"]["content"] == "Blue."
    assert data["finish_reason"] == "stop"
    assert data["usage"]["completion_tokens"] == 6  # "Blue." + <eos>


def test_live_stream(live_client):
    client, _, _ = live_client
    with client.stream("POST", RUN, json={**SKY, "stream": True}) as resp:
        resp.read()
        events = _collect_sse_events(resp.text)

    assert events[-1] == "[DONE]"
    payloads = [json.loads(e) for e in events[:-1]]
    assert payloads[0]["status"] == "RUNNING"
    assert "".join(p["delta"]["content"] for p in payloads if "delta" in p) == "Blue."
    assert payloads[-1]["status"] == "COMPLETED"


def test_live_detached_job(live_client):
    client, _, _ = live_client
    submitted = client.post(RUN, json={**SKY, "wait": False}).json()
    job_id = submitted["uuid"]
    assert submitted["status"] in {"QUEUED", "RUNNING"}

    assert _wait_terminal(client, job_id) == "COMPLETED"
    result = client.post(RESULT, json={"uuid": job_id}).json()
    assert result["response"]["content"] == "Blue."
    assert result["finish_reason"] == "stop"


def test_live_cancel_queued_job(live_client):
    client, _, gate = live_client
    gate.clear()
    running = client.post(RUN, json={**SKY, "wait": False}).json()["uuid"]
    queued = client.post(RUN, json={**SKY, "wait": False}).json()["uuid"]

    pending = client.post(RESULT, json={"uuid": queued}).json()
    assert pending["status"] == "QUEUED"
    assert pending["response"] is None

    cancelled = client.post(CANCEL, json={"uuid": queued}).json()
    assert cancelled["status"] == "CANCELLED"

    gate.set()
    assert _wait_terminal(client, running) == "COMPLETED"


def test_live_prompt_too_long(live_client):
    client, _, _ = live_client
    body = {"messages": [{"role": "user", "content": "x" * 5000}]}
    assert client.post(RUN, json=body).status_code == 400


def test_live_overloaded(fake_handle, make_context):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from cylon.engine.chat_engine import ChatEngine
    from cylon.engine.scheduler import RequestScheduler

    gate = threading.Event()
    ctx = make_context(gate=gate)
    engine = ChatEngine(fake_handle, RequestScheduler([ctx], max_queue_depth=0))
    client = TestClient(create_app(engine=engine, model_id="cylon-test"))
    try:
        first = client.post(RUN, json={**SKY, "wait": False})
        assert first.status_code == 200
        assert client.post(RUN, json={**SKY, "wait": False}).status_code == 429
    finally:
        gate.set()
        engine.shutdown()


@pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
@pytest.mark.parametrize("field_name", ["temperature", "top_p", "repeat_penalty"])
def test_non_finite_numbers_rejected(literal, field_name):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    client = TestClient(create_app(engine=object(), model_id="cylon-test"))
    body = '{"messages": [{"role": "user", "content": "hi"}], "%s": %s}' % (field_name, literal)
    resp = client.post(RUN, content=body.encode(), headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert "finite" in resp.json()["detail"]
