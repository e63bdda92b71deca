"""Model artifact discovery and `ModelHandle` construction."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from ..errors import InitializationError
from ..registry import expected_model_types
from .base import ModelHandle

logger = logging.getLogger(__name__)


def resolve_weight_files(model_dir: str | os.PathLike[str]) -> list[Path]:
    """List the safetensors shards a model directory refers to.

    Sharded checkpoints are read from `model.safetensors.index.json`'s
    `weight_map`; otherwise every `*.safetensors` (or legacy `*.bin`) file
    in the directory is used.

    Raises:
        InitializationError: The directory or its weight files are missing or
            the index is malformed.
    """
    path = Path(model_dir)
    if not path.exists():
        raise InitializationError(f"Model directory does not exist: {path}")
    if not path.is_dir():
        raise InitializationError(f"Model path is not a directory: {path}")

    index_file = path / "model.safetensors.index.json"
    if index_file.is_file():
        try:
            index = json.loads(index_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InitializationError(f"Failed to read {index_file}: {exc}") from exc

        weight_map = index.get("weight_map") if isinstance(index, dict) else None
        if weight_map is None:
            raise InitializationError(f"No weight map in {index_file}")
        if not isinstance(weight_map, dict):
            raise InitializationError(f"Weight map in {index_file} is not a map")

        shards = sorted({v for v in weight_map.values() if isinstance(v, str)})
        files = [path / shard for shard in shards]
    else:
        files = sorted(path.glob("*.safetensors")) or sorted(path.glob("*.bin"))
        if not files:
            raise InitializationError(f"No weight files (*.safetensors, *.bin) in {path}")

    missing = [str(f) for f in files if not f.is_file()]
    if missing:
        raise InitializationError(f"Missing weight files in {path}: {', '.join(missing)}")
    return files


def _looks_like_local_path(model_path: str) -> bool:
    return model_path.startswith((".", "~")) or os.path.isabs(model_path)


def _eos_token_ids(tokenizer: Any, generation_config: Any) -> frozenset[int]:
    ids: set[int] = set()

    eos = getattr(tokenizer, "eos_token_id", None)
    if isinstance(eos, int):
        ids.add(eos)

    gen_eos = getattr(generation_config, "eos_token_id", None)
    if isinstance(gen_eos, int):
        ids.add(gen_eos)
    elif isinstance(gen_eos, (list, tuple)):
        ids.update(int(t) for t in gen_eos if isinstance(t, int))

    return frozenset(ids)


def load_model_handle(model_path: str, *, model_family: str = "auto", dtype: str = "f16") -> ModelHandle:
    """Load tokenizer + architecture metadata and build a shared `ModelHandle`.

    Local directories are validated before anything is loaded. Weights are not
    loaded here; each device context materializes them in `load()`.
    """
    from transformers import AutoConfig, AutoTokenizer, GenerationConfig

    model_path = os.path.expanduser(model_path)
    if os.path.isdir(model_path) or _looks_like_local_path(model_path):
        resolve_weight_files(model_path)
        if not os.path.isfile(os.path.join(model_path, "config.json")):
            raise InitializationError(f"Model config not found at {os.path.join(model_path, 'config.json')}")

    try:
        config = AutoConfig.from_pretrained(model_path)
        tokenizer = AutoTokenizer.from_pretrained(model_path)
    except Exception as exc:
        raise InitializationError(f"Failed to load model metadata from {model_path!r}: {exc}") from exc

    model_type = getattr(config, "model_type", None)
    allowed = expected_model_types(model_family)
    if allowed is not None and model_type not in allowed:
        raise InitializationError(
            f"Model family {model_family!r} requires model_type in {sorted(allowed)}, got {model_type!r}"
        )

    try:
        generation_config = GenerationConfig.from_pretrained(model_path)
    except Exception:
        generation_config = None

    eos_ids = _eos_token_ids(tokenizer, generation_config)
    if not eos_ids:
        logger.warning("No EOS token id found for %s; generation stops only on length or stop sequences", model_path)

    max_ctx = getattr(config, "max_position_embeddings", None)
    logger.info(
        "Loaded model metadata: path=%s model_type=%s vocab_size=%s max_context=%s",
        model_path,
        model_type,
        getattr(config, "vocab_size", None),
        max_ctx,
    )

    return ModelHandle(
        model_path=model_path,
        model_family=model_family,
        tokenizer=tokenizer,
        config=config,
        eos_token_ids=eos_ids,
        dtype=dtype,
        max_context_length=int(max_ctx) if isinstance(max_ctx, int) else None,
    )
