"""Cylon inference server entrypoint (FastAPI + CylonApi procedures).

Example:
    python -m apps.server.main --model-path /data/models/my-model --backend cuda --listen-port 8080
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Sequence

from apps.server.app import create_app
from cylon.config import CylonConfig, parse_config
from cylon.engine.backends.loader import load_model_handle
from cylon.engine.chat_engine import ChatEngine, EngineConfig, encode_chat
from cylon.engine.chat_types import ChatMessage, SamplingConfig
from cylon.engine.decode_loop import DecodeLoop
from cylon.engine.errors import InitializationError
from cylon.engine.registry import create_device_contexts, resolve_backend
from cylon.engine.result_cache import ResultCache
from cylon.engine.scheduler import RequestScheduler
from cylon.engine.session import GenerationSession, SessionStatus

logger = logging.getLogger(__name__)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "target": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(debug: bool = False, json_logs: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    if json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def _run_blocking_warmup(*, contexts: Sequence, handle, decode_loop: DecodeLoop) -> None:
    """Run one short greedy generation on every context before serving."""
    t0 = time.time()
    print(f"[warmup] starting: contexts={len(contexts)}", flush=True)

    messages = [ChatMessage(role="user", content="Hello")]
    try:
        prompt_ids = encode_chat(handle.tokenizer, messages)
    except Exception as exc:
        raise InitializationError(f"Warmup could not tokenize a prompt: {exc}") from exc

    for ctx in contexts:
        session = GenerationSession(
            conversation=messages,
            prompt_ids=list(prompt_ids),
            sampling=SamplingConfig(max_new_tokens=4),
            stop_token_ids=handle.eos_token_ids,
        )
        decode_loop.run(session, ctx)
        if session.status == SessionStatus.FAILED:
            raise InitializationError(f"Warmup failed on {ctx.name}: {session.error}")
        print(f"[warmup] {ctx.name}: decode_steps_executed={len(session.generated_ids)}", flush=True)

    dt = time.time() - t0
    print(f"[warmup] done in {dt:.2f}s", flush=True)


def build_engine(config: CylonConfig) -> ChatEngine:
    """Load the model on every configured device and wire the engine.

    Raises:
        InitializationError: Any backend or model failure. Nothing is served.
    """
    backend = resolve_backend(config.backend)
    print(
        "[server] loading model... "
        f"model={config.model_path!r} family={config.model_family!r} backend={backend!r} "
        f"devices={list(config.device_ids)} dtype={config.dtype!r} flash_attn={config.use_flash_attn}",
        flush=True,
    )

    contexts = create_device_contexts(
        backend,
        device_ids=config.device_ids,
        dtype=config.dtype,
        compute_cap=config.cuda_compute_cap,
        use_flash_attn=config.use_flash_attn,
    )
    # Fail on a missing device before touching model files.
    for ctx in contexts:
        ctx.check_available()

    handle = load_model_handle(config.model_path, model_family=config.model_family, dtype=config.dtype)
    for ctx in contexts:
        ctx.load(handle)
    print("[server] model loaded", flush=True)

    decode_loop = DecodeLoop(enable_kv_cache=config.enable_kv_cache)
    if config.warmup:
        _run_blocking_warmup(contexts=contexts, handle=handle, decode_loop=decode_loop)
    else:
        print("[server] warmup disabled", flush=True)

    scheduler = RequestScheduler(
        contexts,
        max_queue_depth=config.queue_buffer_size,
        max_concurrency=config.max_concurrency,
        max_queue_wait_s=config.queue_timeout_s,
        decode_loop=decode_loop,
    )

    results = ResultCache(ttl_s=config.result_cache_ttl)
    results.start_cleanup(config.result_cache_cleanup_interval)

    return ChatEngine(
        handle,
        scheduler,
        config=EngineConfig(
            system_prompt=config.system_prompt or None,
            sample_len=config.sample_len,
            temperature=config.temperature,
            top_p=config.top_p,
            top_k=config.top_k,
            seed=config.seed,
            repeat_penalty=config.repeat_penalty,
            repeat_last_n=config.repeat_last_n,
            max_prompt_tokens=config.max_prompt_tokens,
        ),
        results=results,
    )


def main(argv: Sequence[str] | None = None) -> None:
    try:
        config = parse_config(argv)
    except ValueError as exc:
        print(f"[server] invalid configuration: {exc}", file=sys.stderr, flush=True)
        sys.exit(2)

    setup_logging(config.debug, config.log_json)
    logger.debug("Configuration: %s", config.to_dict())

    try:
        engine = build_engine(config)
    except (InitializationError, ValueError) as exc:
        logger.error("Initialization failed: %s", exc)
        print(f"[server] initialization failed: {exc}", file=sys.stderr, flush=True)
        sys.exit(1)

    model_id = os.path.basename(config.model_path.rstrip("/")) or "cylon"
    app = create_app(engine=engine, model_id=model_id, queue_disabled=config.queue_disabled)

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    print(f"[server] listening on {config.listen_address}:{config.listen_port}", flush=True)
    try:
        uvicorn.run(
            app,
            host=config.listen_address,
            port=config.listen_port,
            log_level="debug" if config.debug else "info",
            log_config=None,
        )
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
