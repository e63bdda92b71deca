"""Token sampling: repeat penalty, temperature, top-k and top-p.

Sampling always runs on CPU in fp32 with a per-session seeded generator, so a
given (logits, history, seed) sequence yields the same tokens on every backend.
"""

from __future__ import annotations

from typing import Sequence

import torch

from .chat_types import SamplingConfig
from .errors import BackendError


def apply_repeat_penalty(logits: torch.Tensor, penalty: float, context: Sequence[int]) -> torch.Tensor:
    """Penalize tokens already present in `context`.

    Positive logits are divided by `penalty`, negative ones multiplied, so a
    penalty > 1 always makes repeated tokens less likely.
    """
    if penalty == 1.0 or not context:
        return logits

    vocab = logits.shape[-1]
    ids = torch.tensor(sorted({t for t in context if 0 <= t < vocab}), dtype=torch.long)
    if ids.numel() == 0:
        return logits

    out = logits.clone()
    picked = out[ids]
    out[ids] = torch.where(picked >= 0, picked / penalty, picked * penalty)
    return out


def top_k_filter(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Mask everything below the k-th largest logit."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits
    kth = torch.topk(logits, k).values[-1]
    return logits.masked_fill(logits < kth, float("-inf"))


def top_p_filter(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Nucleus filter: keep the smallest prefix of tokens whose mass reaches p."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    probs = torch.softmax(sorted_logits, dim=-1)
    # Mass strictly before each token; the top token is always kept.
    mass_before = torch.cumsum(probs, dim=-1) - probs
    remove_sorted = mass_before >= p

    remove = torch.zeros_like(remove_sorted)
    remove[sorted_idx] = remove_sorted
    return logits.masked_fill(remove, float("-inf"))


class Sampler:
    """Per-session token sampler.

    Greedy decoding is used when `temperature <= 0`. Ties between equal
    maxima are broken by a draw from the session's seeded generator rather than
    by vocabulary order.
    """

    def __init__(self, config: SamplingConfig) -> None:
        self._config = config
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(int(config.seed))

    @property
    def config(self) -> SamplingConfig:
        return self._config

    def sample(self, logits: torch.Tensor, history: Sequence[int] = ()) -> int:
        cfg = self._config
        logits = logits.detach().to(device="cpu", dtype=torch.float32).reshape(-1)
        logits = torch.nan_to_num(logits, nan=float("-inf"), posinf=float("inf"), neginf=float("-inf"))

        if not torch.isfinite(logits).any():
            raise BackendError("Forward step produced no finite logits.")

        if cfg.repeat_penalty != 1.0 and cfg.repeat_last_n > 0:
            logits = apply_repeat_penalty(logits, cfg.repeat_penalty, list(history)[-cfg.repeat_last_n :])

        if cfg.temperature <= 0:
            return self._argmax(logits)

        logits = logits / float(cfg.temperature)
        if cfg.top_k is not None:
            logits = top_k_filter(logits, int(cfg.top_k))
        if cfg.top_p is not None:
            logits = top_p_filter(logits, float(cfg.top_p))

        probs = torch.softmax(logits, dim=-1)
        if torch.isnan(probs).any() or (probs < 0).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0).clamp(min=0.0)
        total = probs.sum()
        if total <= 0:
            return self._argmax(logits)

        return int(torch.multinomial(probs / total, 1, generator=self._generator).item())

    def _argmax(self, logits: torch.Tensor) -> int:
        best = logits.max()
        candidates = torch.nonzero(logits == best, as_tuple=False).reshape(-1)
        if candidates.numel() == 0:
            return int(torch.argmax(logits).item())
        if candidates.numel() == 1:
            return int(candidates.item())
        pick = torch.randint(candidates.numel(), (1,), generator=self._generator)
        return int(candidates[pick].item())
