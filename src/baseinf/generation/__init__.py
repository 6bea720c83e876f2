"""
Generation Loop

Drives next-token prediction for a model that keeps its own incremental
(KV-cache) state keyed by a decode cursor:

    forward -> repeat penalty -> sample -> decode / stop check

The prompt is fed once as a prefill chunk, then one sampled token at a time.
Text comes out as a lazy stream of fragments; the stop reason and statistics
are available on the stream once it is exhausted.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union


@dataclass(frozen=True)
class Prefill:
    """The whole prompt, fed on the first step."""

    tokens: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.tokens)


@dataclass(frozen=True)
class Token:
    """A single sampled token, fed on every step after the first."""

    token: int

    @property
    def tokens(self) -> tuple[int, ...]:
        return (self.token,)

    def __len__(self) -> int:
        return 1


InputChunk = Union[Prefill, Token]


class StopReason(str, Enum):
    """Why a generation ended."""
    EOS = "eos"  # Decoded text hit the end-of-sequence marker
    MAX_TOKENS = "max_tokens"  # Token budget exhausted


@dataclass
class GenerationStats:
    """Counters for one generation, filled in as the stream is consumed."""

    prompt_tokens: int
    generated_tokens: int = 0  # Sampled tokens, including a final eos token
    fragments: int = 0  # Text fragments actually yielded
    elapsed_ms: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_ms == 0:
            return 0.0
        return self.generated_tokens / (self.elapsed_ms / 1000)


from .sampling import (
    Sampler,
    Sampling,
    SamplingMethod,
    apply_repeat_penalty,
)
from .loop import (
    GenerationStream,
    generate,
    penalty_context,
)

__all__ = [
    # Types
    "Prefill",
    "Token",
    "InputChunk",
    "StopReason",
    "GenerationStats",
    # Sampling
    "Sampler",
    "Sampling",
    "SamplingMethod",
    "apply_repeat_penalty",
    # Loop
    "GenerationStream",
    "generate",
    "penalty_context",
]
