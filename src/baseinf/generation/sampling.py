"""
Logit post-processing: repeat penalty and seeded sampling.

The sampler owns a torch.Generator seeded exactly once, so a fixed seed and a
fixed sequence of logits always produce the same tokens.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence
import logging

import torch

from ..config import GenerationConfig
from ..errors import SampleError

logger = logging.getLogger(__name__)


def apply_repeat_penalty(
    logits: torch.Tensor,
    penalty: float,
    context: Sequence[int],
) -> torch.Tensor:
    """
    Discourage tokens that appear in `context`.

    Each distinct in-vocabulary token's logit is divided by `penalty` when it is
    non-negative and multiplied by it otherwise. Returns a new tensor.
    """
    logits = torch.as_tensor(logits).clone()
    vocab_size = logits.shape[-1]

    token_ids = sorted({t for t in context if 0 <= t < vocab_size})
    if not token_ids:
        return logits

    index = torch.tensor(token_ids, device=logits.device)
    selected = logits[..., index]
    logits[..., index] = torch.where(selected >= 0, selected / penalty, selected * penalty)
    return logits


class SamplingMethod(str, Enum):
    """How a token is picked from the distribution."""
    ARGMAX = "argmax"
    ALL = "all"
    TOP_K = "top_k"
    TOP_P = "top_p"
    TOP_K_THEN_TOP_P = "top_k_then_top_p"


@dataclass(frozen=True)
class Sampling:
    """Sampling strategy: temperature plus optional top-k / top-p filters."""

    temperature: float
    top_k: Optional[int] = None
    top_p: Optional[float] = None

    @property
    def method(self) -> SamplingMethod:
        if self.temperature <= 0:
            return SamplingMethod.ARGMAX
        if self.top_k is None and self.top_p is None:
            return SamplingMethod.ALL
        if self.top_p is None:
            return SamplingMethod.TOP_K
        if self.top_k is None:
            return SamplingMethod.TOP_P
        return SamplingMethod.TOP_K_THEN_TOP_P

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "Sampling":
        return cls(temperature=config.temperature, top_k=config.top_k, top_p=config.top_p)


class Sampler:
    """
    Seeded token sampler.

    Usage:
        sampler = Sampler.from_config(config)
        token_id = sampler(logits)
    """

    def __init__(self, seed: int, sampling: Sampling):
        self.seed = seed
        self.sampling = sampling
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "Sampler":
        return cls(config.seed, Sampling.from_config(config))

    def __call__(self, logits: torch.Tensor) -> int:
        return self.sample(logits)

    def sample(self, logits: torch.Tensor) -> int:
        """Pick one token id from a 1-D logits vector."""
        logits = self._prepare(logits)
        method = self.sampling.method

        if method == SamplingMethod.ARGMAX:
            return int(torch.argmax(logits).item())

        probs = torch.softmax(logits / self.sampling.temperature, dim=-1)

        if method in (SamplingMethod.TOP_K, SamplingMethod.TOP_K_THEN_TOP_P):
            probs = self._top_k(probs, self.sampling.top_k)
        if method in (SamplingMethod.TOP_P, SamplingMethod.TOP_K_THEN_TOP_P):
            probs = self._top_p(probs, self.sampling.top_p)

        try:
            token = torch.multinomial(probs, num_samples=1, generator=self.generator)
        except RuntimeError as e:
            raise SampleError(f"Cannot sample from distribution: {e}") from e
        return int(token.item())

    @staticmethod
    def _prepare(logits) -> torch.Tensor:
        """Validate and move logits to CPU float32."""
        logits = torch.as_tensor(logits).detach().to("cpu", torch.float32)

        if logits.dim() != 1:
            raise SampleError(f"Expected 1-D logits, got shape {tuple(logits.shape)}")
        if logits.numel() == 0:
            raise SampleError("Cannot sample from empty logits")

        logits = logits.masked_fill(torch.isnan(logits), float("-inf"))
        if not torch.isfinite(logits).any():
            raise SampleError("Logits contain no finite values")
        return logits

    @staticmethod
    def _top_k(probs: torch.Tensor, k: int) -> torch.Tensor:
        """Zero out everything but the k most probable tokens."""
        k = min(k, probs.numel())
        values, indices = torch.topk(probs, k)
        return torch.zeros_like(probs).scatter_(0, indices, values)

    @staticmethod
    def _top_p(probs: torch.Tensor, p: float) -> torch.Tensor:
        """Keep the most probable tokens until their mass reaches p."""
        sorted_probs, sorted_indices = torch.sort(probs, descending=True)
        mass_before = torch.cumsum(sorted_probs, dim=-1) - sorted_probs

        # The most probable token always survives (mass_before is 0 there)
        sorted_probs = sorted_probs.masked_fill(mass_before >= p, 0.0)
        return torch.zeros_like(probs).scatter_(0, sorted_indices, sorted_probs)
