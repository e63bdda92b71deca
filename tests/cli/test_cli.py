import io
import json
import threading

from apps.cli.client import HttpError, _join_url, build_run_payload, iter_sse_data, iter_sse_json
from apps.cli.main import SMOKE_PROMPT, build_parser, cmd_fanout, cmd_job, cmd_run, main


def test_sse_json_stops_on_done():
    stream = io.BytesIO(
        b"data: {\"x\": 1}\n\n"
        b"data: {\"y\": 2}\n\n"
        b"data: [DONE]\n\n"
        b"data: {\"z\": 3}\n\n"
    )
    events = list(iter_sse_json(stream))
    assert events == [{"x": 1}, {"y": 2}]


def test_sse_data_joins_multiline_and_ignores_comments():
    stream = io.BytesIO(b": keepalive\n\ndata: a\r\ndata: b\r\n\r\ndata: tail")
    assert list(iter_sse_data(stream)) == ["a\nb", "tail"]


def test_join_url():
    assert _join_url("http://h:1/", "/health") == "http://h:1/health"
    assert _join_url("http://h:1/base", "cylon.CylonApi/InferenceRun") == "http://h:1/base/cylon.CylonApi/InferenceRun"


def test_build_run_payload():
    payload = build_run_payload("hi", system_prompt="sys", temperature=0.0, stop=["END"], wait=False)
    assert payload["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    assert payload["temperature"] == 0.0
    assert payload["stop"] == ["END"]
    assert payload["wait"] is False
    assert "top_k" not in payload

    assert "stop" not in build_run_payload("hi", stop=[])


def test_parser_global_url():
    parser = build_parser()
    args = parser.parse_args(["--url", "http://example.invalid:8000", "run", "hello", "--stream"])
    assert args.url == "http://example.invalid:8000"
    assert args.command == "run"
    assert args.prompt == "hello"
    assert args.stream is True
    assert args.detach is False


def test_parser_fanout_defaults():
    args = build_parser().parse_args(["fanout"])
    assert args.prompt == SMOKE_PROMPT
    assert args.count == 5


def test_main_without_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out


class FakeClient:
    def __init__(self, *, fail=False):
        self.fail = fail
        self.payloads = []
        self._lock = threading.Lock()

    def inference_run(self, payload):
        with self._lock:
            self.payloads.append(payload)
        if self.fail:
            raise HttpError("HTTP error", status_code=429, body="busy")
        if not payload["wait"]:
            return {"uuid": "job-1", "status": "QUEUED"}
        return {"uuid": "u", "status": "OK", "response": {"role": "assistant", "content": "Blue."}, "finish_reason": "stop"}

    def inference_run_stream(self, payload):
        self.payloads.append(payload)
        yield {"uuid": "u", "status": "RUNNING"}
        yield {"uuid": "u", "delta": {"content": "Bl"}}
        yield {"uuid": "u", "delta": {"content": "ue."}}
        yield {"uuid": "u", "status": "COMPLETED", "finish_reason": "stop"}

    def inference_status(self, job_id):
        return {"uuid": job_id, "status": "RUNNING"}

    def inference_result(self, job_id):
        return {"uuid": job_id, "status": "COMPLETED", "finish_reason": "stop", "response": {"content": "Blue."}}

    def inference_cancel(self, job_id):
        return {"uuid": job_id, "status": "CANCELLED"}


def test_cmd_run_unary(capsys):
    client = FakeClient()
    args = build_parser().parse_args(["run", "sky?", "--temperature", "0"])
    assert cmd_run(client, args) == 0
    assert capsys.readouterr().out.strip() == "Blue."
    assert client.payloads[0]["temperature"] == 0.0


def test_cmd_run_stream(capsys):
    args = build_parser().parse_args(["run", "sky?", "--stream"])
    assert cmd_run(FakeClient(), args) == 0
    assert capsys.readouterr().out.strip() == "Blue."


def test_cmd_run_detach(capsys):
    client = FakeClient()
    args = build_parser().parse_args(["run", "sky?", "--detach", "--json"])
    assert cmd_run(client, args) == 0
    assert json.loads(capsys.readouterr().out) == {"uuid": "job-1", "status": "QUEUED"}
    assert client.payloads[0]["wait"] is False


def test_cmd_job_result(capsys):
    args = build_parser().parse_args(["result", "job-1"])
    assert cmd_job(FakeClient(), args) == 0
    out = capsys.readouterr().out
    assert "status: COMPLETED" in out
    assert "Blue." in out


def test_cmd_fanout(capsys):
    client = FakeClient()
    args = build_parser().parse_args(["fanout", "-n", "5", "--json"])
    assert cmd_fanout(client, args) == 0
    results = json.loads(capsys.readouterr().out)
    assert len(results) == 5
    assert {r["content"] for r in results} == {"Blue."}
    assert len(client.payloads) == 5


def test_cmd_fanout_reports_failures(capsys):
    args = build_parser().parse_args(["fanout", "-n", "2"])
    assert cmd_fanout(FakeClient(fail=True), args) == 1
    assert "failed (429)" in capsys.readouterr().out
