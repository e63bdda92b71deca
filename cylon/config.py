"""Process configuration.

Values are resolved from four sources, lowest precedence first:

1. `CylonConfig` defaults
2. a YAML file (`--config-file` or `CYLON_CONFIG_FILE`)
3. environment variables `CYLON_<FIELD>` (e.g. `CYLON_LISTEN_PORT=9000`)
4. command-line flags (`--listen-port 9000`)

Invalid values raise `ValueError` from `parse_config`.
"""

from __future__ import annotations

import argparse
import math
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping, Sequence

import yaml

ENV_PREFIX = "CYLON_"

BACKENDS = ("auto", "cpu", "cuda", "cudnn", "metal")
DTYPES = ("f16", "bf16", "f32")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class CylonConfig:
    debug: bool = field(default=False, metadata={"help": "Enable DEBUG logging"})
    log_json: bool = field(default=False, metadata={"help": "Emit one JSON object per log line"})

    listen_address: str = field(default="0.0.0.0", metadata={"help": "Bind address"})
    listen_port: int = field(default=8080, metadata={"help": "Bind port"})

    model_path: str = field(default="/data/models/my-model", metadata={"help": "Model directory or HF repo id"})
    model_family: str = field(default="llama", metadata={"help": "Model family (auto, llama, qwen, ...)"})

    backend: str = field(default="auto", metadata={"help": "Compute backend: " + ", ".join(BACKENDS)})
    device_ids: tuple[int, ...] = field(default=(0,), metadata={"help": "Comma-separated device indices"})
    cuda_compute_cap: str | None = field(default=None, metadata={"help": "Minimum CUDA compute capability (e.g. 89)"})
    use_flash_attn: bool = field(default=False, metadata={"help": "Use flash attention kernels"})
    dtype: str = field(default="f16", metadata={"help": "Weight dtype: " + ", ".join(DTYPES)})

    temperature: float = field(default=0.0, metadata={"help": "Default sampling temperature (0 = greedy)"})
    top_p: float | None = field(default=None, metadata={"help": "Default nucleus sampling cutoff"})
    top_k: int | None = field(default=None, metadata={"help": "Default top-k cutoff"})
    seed: int = field(default=299792458, metadata={"help": "Default sampling seed"})
    sample_len: int = field(default=10_000, metadata={"help": "Default and maximum max_new_tokens"})
    enable_kv_cache: bool = field(default=True, metadata={"help": "Reuse the KV cache between decode steps"})
    system_prompt: str = field(
        default="You are a helpful assistant.",
        metadata={"help": "System prompt added when a conversation has none"},
    )
    repeat_penalty: float = field(default=1.0, metadata={"help": "Repeat penalty (1.0 = off)"})
    repeat_last_n: int = field(default=128, metadata={"help": "Context size for the repeat penalty"})

    max_concurrency: int = field(default=1, metadata={"help": "Running sessions per device context"})
    queue_buffer_size: int = field(default=100, metadata={"help": "Maximum queued sessions"})
    queue_timeout_s: float = field(default=300.0, metadata={"help": "Maximum seconds a session may wait queued"})
    queue_disabled: bool = field(default=False, metadata={"help": "Refuse detached (wait=false) requests"})

    result_cache_ttl: float = field(default=3600.0, metadata={"help": "Seconds detached results are kept"})
    result_cache_cleanup_interval: float = field(default=300.0, metadata={"help": "Seconds between cache sweeps"})

    max_prompt_tokens: int | None = field(default=None, metadata={"help": "Maximum prompt length in tokens"})
    warmup: bool = field(default=True, metadata={"help": "Run a short generation before serving"})

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, float) and not math.isfinite(value):
                raise ValueError(f"{f.name} must be a finite number (got {value!r})")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {', '.join(BACKENDS)} (got {self.backend!r})")
        if self.dtype not in DTYPES:
            raise ValueError(f"dtype must be one of {', '.join(DTYPES)} (got {self.dtype!r})")
        if not (0 < self.listen_port < 65536):
            raise ValueError(f"listen_port must be in 1..65535 (got {self.listen_port})")
        if not self.device_ids:
            raise ValueError("device_ids must not be empty")
        if any(i < 0 for i in self.device_ids):
            raise ValueError("device_ids must be >= 0")
        if len(set(self.device_ids)) != len(self.device_ids):
            raise ValueError("device_ids must be unique")
        if self.temperature < 0:
            raise ValueError("temperature must be >= 0")
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise ValueError("top_p must be in (0, 1]")
        if self.top_k is not None and self.top_k <= 0:
            raise ValueError("top_k must be > 0")
        if self.sample_len <= 0:
            raise ValueError("sample_len must be > 0")
        if self.repeat_penalty <= 0:
            raise ValueError("repeat_penalty must be > 0")
        if self.repeat_last_n < 0:
            raise ValueError("repeat_last_n must be >= 0")
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if self.queue_buffer_size < 0:
            raise ValueError("queue_buffer_size must be >= 0")
        if self.queue_timeout_s <= 0:
            raise ValueError("queue_timeout_s must be > 0")
        if self.result_cache_ttl <= 0:
            raise ValueError("result_cache_ttl must be > 0")
        if self.result_cache_cleanup_interval <= 0:
            raise ValueError("result_cache_cleanup_interval must be > 0")
        if self.max_prompt_tokens is not None and self.max_prompt_tokens <= 0:
            raise ValueError("max_prompt_tokens must be > 0")
        if self.cuda_compute_cap is not None:
            from cylon.runtime import parse_compute_cap

            parse_compute_cap(self.cuda_compute_cap)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["device_ids"] = list(self.device_ids)
        return d


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------

_FIELD_TYPES: dict[str, str] = {f.name: str(f.type) for f in fields(CylonConfig)}


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {value!r})")


def _to_device_ids(name: str, value: Any) -> tuple[int, ...]:
    if isinstance(value, int) and not isinstance(value, bool):
        items: Sequence[Any] = [value]
    elif isinstance(value, str):
        items = [p for p in value.replace(" ", "").split(",") if p]
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise ValueError(f"{name} must be a list of integers (got {value!r})")
    try:
        return tuple(int(v) for v in items)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a list of integers (got {value!r})") from exc


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    optional = kind.endswith("| None")
    if optional and (value is None or (isinstance(value, str) and value.strip().lower() in {"", "none", "null"})):
        return None
    base = kind.split("|")[0].strip()

    if base == "bool":
        return _to_bool(name, value)
    if base.startswith("tuple"):
        return _to_device_ids(name, value)
    try:
        if base == "int":
            if isinstance(value, bool):
                raise ValueError
            return int(value)
        if base == "float":
            if isinstance(value, bool):
                raise ValueError
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be {'an integer' if base == 'int' else 'a number'} (got {value!r})") from exc
    return str(value)


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------


def load_yaml_config(path: str) -> dict[str, Any]:
    """Read a YAML mapping of config fields."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ValueError(f"Cannot read config file {path!r}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file {path!r}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path!r} must contain a mapping")

    unknown = sorted(set(data) - set(_FIELD_TYPES))
    if unknown:
        raise ValueError(f"Unknown config field(s) in {path!r}: {', '.join(unknown)}")
    return {k: _coerce(k, v) for k, v in data.items()}


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in _FIELD_TYPES:
        key = ENV_PREFIX + name.upper()
        if key in environ:
            out[name] = _coerce(name, environ[key])
    return out


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Cylon inference server")
    p.add_argument("--config-file", default=None, help="YAML config file (env: CYLON_CONFIG_FILE)")
    for f in fields(CylonConfig):
        flag = "--" + f.name.replace("_", "-")
        help_text = f"{f.metadata.get('help', '')} (default: {f.default!r})"
        if _FIELD_TYPES[f.name] == "bool":
            group = p.add_mutually_exclusive_group()
            group.add_argument(flag, dest=f.name, action="store_true", default=argparse.SUPPRESS, help=help_text)
            group.add_argument(
                "--no-" + f.name.replace("_", "-"),
                dest=f.name,
                action="store_false",
                default=argparse.SUPPRESS,
                help=f"Disable {flag}",
            )
        else:
            p.add_argument(flag, dest=f.name, default=argparse.SUPPRESS, help=help_text)
    return p


def parse_config(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> CylonConfig:
    """Resolve the process configuration from all sources."""
    environ = os.environ if environ is None else environ
    args = vars(build_arg_parser().parse_args(argv))

    values: dict[str, Any] = {}
    config_file = args.pop("config_file", None) or environ.get(ENV_PREFIX + "CONFIG_FILE")
    if config_file:
        values.update(load_yaml_config(config_file))
    values.update(env_overrides(environ))
    values.update({k: _coerce(k, v) for k, v in args.items()})

    config = CylonConfig(**values)
    config.validate()
    return config
