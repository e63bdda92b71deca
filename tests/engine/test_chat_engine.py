import asyncio
import threading
import time

import pytest

from cylon.engine.chat_engine import ChatEngine, EngineConfig
from cylon.engine.chat_types import ChatMessage, ChatRequest, DeltaEvent, FinalEvent, StartedEvent
from cylon.engine.errors import BackendError, InvalidRequest, Overloaded
from cylon.engine.result_cache import JOB_CANCELLED, JOB_COMPLETED, ResultCache
from cylon.engine.scheduler import RequestScheduler


def _engine(fake_handle, ctx, **config):
    scheduler = RequestScheduler([ctx], max_queue_depth=config.pop("max_queue_depth", 8), max_concurrency=1)
    return ChatEngine(fake_handle, scheduler, config=EngineConfig(**config), results=ResultCache(ttl_s=60))


def _req(content="In one word, what color is the sky?", **kwargs):
    return ChatRequest(messages=[ChatMessage(role="user", content=content)], **kwargs)


def test_build_session_injects_system_prompt(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(), system_prompt="Be brief.")
    session = engine.build_session(_req())

    assert [m.role for m in session.conversation] == ["system", "user"]
    assert session.conversation[0].content == "Be brief."
    assert fake_handle.tokenizer.decode(session.prompt_ids).startswith("system: Be brief.\n")
    assert session.token_history == session.prompt_ids
    assert 0 in session.stop_token_ids


def test_build_session_keeps_caller_system_prompt(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(), system_prompt="Be brief.")
    req = ChatRequest(
        messages=[ChatMessage(role="system", content="Custom"), ChatMessage(role="user", content="hi")]
    )
    session = engine.build_session(req)
    assert [m.content for m in session.conversation] == ["Custom", "hi"]


def test_build_session_applies_overrides_and_defaults(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(), temperature=0.5, seed=3, sample_len=64)
    session = engine.build_session(_req(top_k=4, stop=["END"]))
    assert session.sampling.temperature == 0.5
    assert session.sampling.seed == 3
    assert session.sampling.top_k == 4
    assert session.sampling.max_new_tokens == 64
    assert session.sampling.stop_sequences == ("END",)


@pytest.mark.parametrize(
    "req",
    [
        ChatRequest(messages=[]),
        ChatRequest(messages=[ChatMessage(role="tool", content="x")]),
        ChatRequest(messages=[ChatMessage(role="user", content=None)]),
        _req(temperature=-1.0),
        _req(top_p=2.0),
        _req(max_new_tokens=10_000_000),
    ],
)
def test_invalid_requests_raise_before_session(fake_handle, make_context, req) -> None:
    ctx = make_context()
    engine = _engine(fake_handle, ctx)
    with pytest.raises(InvalidRequest):
        engine.build_session(req)
    assert engine.scheduler.queue_depth == 0
    assert ctx.steps_executed == 0


def test_prompt_too_long_is_invalid(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(), max_prompt_tokens=16)
    with pytest.raises(InvalidRequest, match="Prompt too long"):
        engine.build_session(_req("x" * 100))


def test_generate_chat_returns_content(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context())
    result = asyncio.run(engine.generate_chat(_req(max_new_tokens=5)))

    assert result["content"] == "Blue."
    assert result["finish_reason"] == "length"
    assert result["usage"].completion_tokens == 5
    assert result["id"]


def test_astream_chat_event_order(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(reply_fn=lambda p: "hi"))

    async def collect():
        return [e async for e in engine.astream_chat(_req(stream=True))]

    events = asyncio.run(collect())
    assert isinstance(events[0], StartedEvent)
    assert "".join(e.text for e in events if isinstance(e, DeltaEvent)) == "hi"
    assert isinstance(events[-1], FinalEvent)
    assert events[-1].finish_reason == "stop"


def test_generate_chat_raises_backend_error(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(fail_on_step=1))
    with pytest.raises(BackendError, match="simulated device failure"):
        asyncio.run(engine.generate_chat(_req()))


def test_open_stream_overloaded(fake_handle, make_context) -> None:
    gate = threading.Event()
    engine = _engine(fake_handle, make_context(gate=gate), max_queue_depth=0)

    async def run():
        first = engine.open_stream(_req())
        with pytest.raises(Overloaded):
            engine.open_stream(_req())
        gate.set()
        return [e async for e in first]

    events = asyncio.run(run())
    assert isinstance(events[-1], FinalEvent)


def test_closing_stream_early_cancels_session(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(reply_fn=lambda p: "y" * 500, step_delay=0.001))

    async def run():
        stream = engine.open_stream(_req(max_new_tokens=400))
        async for event in stream:
            if isinstance(event, DeltaEvent):
                break
        await stream.aclose()
        return stream.session

    session = asyncio.run(run())
    assert session.wait(5.0)
    assert session.finish_reason == "cancelled"
    assert len(session.generated_ids) < 400


def test_detached_job_completes(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context(reply_fn=lambda p: "done"))
    record = engine.submit_detached(_req())
    assert record.uuid

    deadline = time.monotonic() + 5.0
    while not engine.job(record.uuid).terminal and time.monotonic() < deadline:
        time.sleep(0.01)

    final = engine.job(record.uuid)
    assert final.status == JOB_COMPLETED
    assert final.response == "done"
    assert final.finish_reason == "stop"


def test_cancel_queued_detached_job(fake_handle, make_context) -> None:
    gate = threading.Event()
    engine = _engine(fake_handle, make_context(gate=gate))
    blocker = engine.submit_detached(_req())
    queued = engine.submit_detached(_req())

    record = engine.cancel_job(queued.uuid)
    assert record.status == JOB_CANCELLED
    assert engine.cancel_job("unknown") is None

    gate.set()
    deadline = time.monotonic() + 5.0
    while not engine.job(blocker.uuid).terminal and time.monotonic() < deadline:
        time.sleep(0.01)
    assert engine.job(blocker.uuid).status == JOB_COMPLETED


def test_model_info_lists_contexts(fake_handle, make_context) -> None:
    engine = _engine(fake_handle, make_context())
    info = engine.model_info
    assert info["model_path"] == "fake-model"
    assert info["contexts"][0]["context"] == "fake:0"
    assert info["scheduler"]["capacity"] == 1


@pytest.mark.parametrize("field_name", ["temperature", "top_p", "repeat_penalty"])
@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_sampling_values_rejected(fake_handle, make_context, field_name, value) -> None:
    ctx = make_context()
    engine = _engine(fake_handle, ctx)
    with pytest.raises(InvalidRequest, match="finite"):
        engine.build_session(_req(**{field_name: value}))
    assert engine.scheduler.queue_depth == 0
    assert ctx.steps_executed == 0


def test_encode_chat_flattens_tensor_and_batch_outputs(fake_tokenizer) -> None:
    import torch

    from cylon.engine.chat_engine import encode_chat

    messages = [ChatMessage(role="user", content="hi")]
    expected = fake_tokenizer.apply_chat_template([{"role": "user", "content": "hi"}])

    class TensorTokenizer:
        def apply_chat_template(self, messages, add_generation_prompt=True, tokenize=True):
            return torch.tensor([expected])

    class BatchTokenizer:
        def apply_chat_template(self, messages, add_generation_prompt=True, tokenize=True):
            return {"input_ids": [expected]}

    assert encode_chat(fake_tokenizer, messages) == expected
    assert encode_chat(TensorTokenizer(), messages) == expected
    assert encode_chat(BatchTokenizer(), messages) == expected
