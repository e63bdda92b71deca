import os
import sys
import threading
import time

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


EOS_ID = 0
ASSISTANT_ID = 1
_OFFSET = 2
VOCAB_SIZE = 256 + _OFFSET


class FakeTokenizer:
    """Character-level tokenizer: id = ord(ch) + 2; 0 = <eos>, 1 = <assistant>."""

    eos_token_id = EOS_ID
    all_special_tokens = ["<eos>", "<assistant>"]

    def encode(self, text, add_special_tokens=False):
        return [ord(c) + _OFFSET for c in text if ord(c) < 256]

    def decode(self, ids, skip_special_tokens=True):
        out = []
        for i in ids:
            if i >= _OFFSET:
                out.append(chr(i - _OFFSET))
            elif not skip_special_tokens:
                out.append(self.all_special_tokens[i])
        return "".join(out)

    def convert_tokens_to_ids(self, token):
        return self.all_special_tokens.index(token)

    def apply_chat_template(self, messages, add_generation_prompt=True, tokenize=True):
        ids = []
        for m in messages:
            ids.extend(self.encode(f"{m['role']}: {m['content']}\n"))
        if add_generation_prompt:
            ids.append(ASSISTANT_ID)
        return ids


def _make_fake_context_class():
    import torch

    from cylon.engine.backends.base import DeviceContext, StepOutput
    from cylon.engine.errors import BackendError

    class FakeDeviceContext(DeviceContext):
        """Scripted context: replies with `reply_fn(prompt_text)` then <eos>.

        The "KV cache" is the list of token ids seen so far, so the context
        works identically with and without cache reuse.
        """

        backend = "fake"

        def __init__(self, *, reply_fn=None, gate=None, step_delay=0.0, fail_on_step=None, corrupt=False, **kwargs):
            super().__init__(**kwargs)
            self.reply_fn = reply_fn or (lambda prompt: "Blue.")
            self.gate = gate
            self.step_delay = step_delay
            self.fail_on_step = fail_on_step
            self.corrupt = corrupt
            self.calls = []
            self.released = []
            self.loads = 0
            self._calls_lock = threading.Lock()

        def check_available(self):
            pass

        def _load(self, handle):
            self.loads += 1

        def _forward(self, input_ids, cache):
            with self._calls_lock:
                self.calls.append((list(input_ids), None if cache is None else list(cache)))
                n = len(self.calls)
            if self.gate is not None:
                assert self.gate.wait(timeout=10.0), "gate never opened"
            if self.step_delay:
                time.sleep(self.step_delay)
            if self.fail_on_step is not None and n == self.fail_on_step:
                raise BackendError("simulated device failure", corrupted=self.corrupt)

            seen = (list(cache) if cache is not None else []) + list(input_ids)
            boundary = len(seen) - 1 - seen[::-1].index(ASSISTANT_ID)
            prompt_text = self.handle.tokenizer.decode(seen[:boundary])
            generated = seen[boundary + 1 :]
            reply = self.reply_fn(prompt_text)

            if len(generated) < len(reply):
                next_id = ord(reply[len(generated)]) + _OFFSET
            else:
                next_id = EOS_ID
            logits = torch.full((VOCAB_SIZE,), -1.0e4)
            logits[next_id] = 10.0
            return StepOutput(logits=logits, cache=seen)

        def release_cache(self, cache):
            self.released.append(cache)

    return FakeDeviceContext


@pytest.fixture
def fake_tokenizer():
    return FakeTokenizer()


@pytest.fixture
def fake_handle(fake_tokenizer):
    from cylon.engine.backends.base import ModelHandle

    return ModelHandle(
        model_path="fake-model",
        model_family="auto",
        tokenizer=fake_tokenizer,
        eos_token_ids=frozenset({EOS_ID}),
        dtype="f32",
        max_context_length=4096,
    )


@pytest.fixture
def fake_context_cls():
    """Scripted `DeviceContext` subclass; instances start unloaded."""
    return _make_fake_context_class()


@pytest.fixture
def make_context(fake_handle, fake_context_cls):
    """Factory for loaded fake device contexts."""
    cls = fake_context_cls

    def factory(**kwargs):
        ctx = cls(**kwargs)
        ctx.load(fake_handle)
        return ctx

    return factory


@pytest.fixture
def make_session(fake_tokenizer):
    """Factory for pending sessions built straight from a user message."""
    from cylon.engine.chat_types import ChatMessage, SamplingConfig
    from cylon.engine.session import GenerationSession

    def factory(content="In one word, what color is the sky?", *, sink=None, stream=False, priority=0, **sampling):
        messages = [ChatMessage(role="user", content=content)]
        prompt_ids = fake_tokenizer.apply_chat_template([{"role": "user", "content": content}])
        return GenerationSession(
            conversation=messages,
            prompt_ids=prompt_ids,
            sampling=SamplingConfig(**sampling),
            stop_token_ids=frozenset({EOS_ID}),
            stream=stream,
            priority=priority,
            sink=sink,
        )

    return factory
