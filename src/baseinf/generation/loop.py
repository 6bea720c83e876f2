"""
Autoregressive decode loop.

Each step:
1. Forward: feed the current chunk at the current cursor (the full prompt on
   the first step, one token afterwards) and advance the cursor by its length.
2. Penalty: if enabled, apply the repeat penalty over the prompt tail.
3. Sample: draw one token with the caller's sampler.
4. Decode: stop on the end-of-sequence marker, otherwise emit the text.

The loop never retries. A failing forward or sample call aborts the stream;
fragments already yielded stay yielded.
"""

from typing import Callable, Optional, Sequence
import logging
import time

import torch

from . import GenerationStats, InputChunk, Prefill, StopReason, Token
from .sampling import apply_repeat_penalty
from ..config import GenerationConfig
from ..errors import ConfigError, ForwardError, SampleError

logger = logging.getLogger(__name__)

ForwardFn = Callable[[InputChunk, int], torch.Tensor]
PenaltyFn = Callable[[torch.Tensor, float, Sequence[int]], torch.Tensor]
SampleFn = Callable[[torch.Tensor], int]
DecodeFn = Callable[[int], Optional[str]]

# Log the decode rate every this many steps
RATE_LOG_INTERVAL = 10


def penalty_context(prompt_tokens: Sequence[int], repeat_last_n: int) -> list[int]:
    """The last `repeat_last_n` prompt tokens."""
    start = max(len(prompt_tokens) - repeat_last_n, 0)
    return list(prompt_tokens[start:])


class GenerationStream:
    """
    Lazy, finite, non-restartable stream of decoded text fragments.

    Iterate it to drive generation. Once exhausted, `stop_reason`, `cursor`,
    `tokens` and `stats` describe what happened.

    The repeat-penalty window is the tail of the original prompt on every
    step; generated tokens never enter it.
    """

    def __init__(
        self,
        prompt_tokens: Sequence[int],
        config: GenerationConfig,
        model: ForwardFn,
        sampler: SampleFn,
        decode: DecodeFn,
        penalty: PenaltyFn = apply_repeat_penalty,
    ):
        if len(prompt_tokens) == 0:
            raise ConfigError("prompt_tokens must be non-empty")

        self.config = config
        self.model = model
        self.sampler = sampler
        self.decode = decode
        self.penalty = penalty

        self.prompt_tokens = list(prompt_tokens)
        self.tokens = list(prompt_tokens)  # prompt + every sampled token
        self.cursor = 0  # tokens already fed to the model
        self.steps = 0
        self.stop_reason: Optional[StopReason] = None
        self.stats = GenerationStats(prompt_tokens=len(self.prompt_tokens))

        self._chunk: InputChunk = Prefill(tuple(self.prompt_tokens))
        self._context = penalty_context(self.prompt_tokens, config.repeat_last_n)
        self._started_at: Optional[float] = None
        self._aborted = False

    @property
    def finished(self) -> bool:
        return self.stop_reason is not None or self._aborted

    @property
    def generated_tokens(self) -> list[int]:
        return self.tokens[len(self.prompt_tokens):]

    def __iter__(self) -> "GenerationStream":
        return self

    def __next__(self) -> str:
        if self._started_at is None:
            self._started_at = time.perf_counter()

        while not self.finished:
            if self.steps >= self.config.max_tokens:
                self._finish(StopReason.MAX_TOKENS)
                break

            try:
                fragment = self._step()
            except Exception:
                self._aborted = True
                self._update_elapsed()
                raise

            if fragment is not None:
                return fragment

        raise StopIteration

    def _step(self) -> Optional[str]:
        """Run one forward -> penalty -> sample -> decode step."""
        chunk = self._chunk
        step_start = time.perf_counter()

        try:
            logits = self.model(chunk, self.cursor)
        except ForwardError:
            raise
        except Exception as e:
            raise ForwardError(f"Forward pass failed at cursor {self.cursor}: {e}") from e

        self.cursor += len(chunk)

        if self.config.repeat_penalty != 1.0:
            logits = self.penalty(logits, self.config.repeat_penalty, self._context)

        try:
            token = self.sampler(logits)
        except SampleError:
            raise
        except Exception as e:
            raise SampleError(f"Sampling failed at step {self.steps}: {e}") from e

        self.tokens.append(token)
        self.steps += 1
        self.stats.generated_tokens = self.steps
        self._chunk = Token(token)
        self._update_elapsed()

        if self.steps % RATE_LOG_INTERVAL == 0:
            step_time = time.perf_counter() - step_start
            if step_time > 0:
                logger.info(f"Step {self.steps}: {1.0 / step_time:.2f} tok/s")

        text = self.decode(token)
        logger.debug(f"Step {self.steps}: token={token} cursor={self.cursor} text={text!r}")

        if text is None:
            # Undecodable token: nothing to show, keep going
            return None

        if self.config.eos_marker in text:
            self._finish(StopReason.EOS)
            return None

        self.stats.fragments += 1
        return text

    def _finish(self, reason: StopReason):
        self.stop_reason = reason
        self._update_elapsed()
        logger.info(
            f"Generation stopped ({reason.value}): {self.stats.generated_tokens} tokens, "
            f"{self.stats.fragments} fragments, {self.stats.elapsed_ms:.1f} ms"
        )

    def _update_elapsed(self):
        if self._started_at is not None:
            self.stats.elapsed_ms = (time.perf_counter() - self._started_at) * 1000


def generate(
    prompt_tokens: Sequence[int],
    config: GenerationConfig,
    model: ForwardFn,
    sampler: SampleFn,
    decode: DecodeFn,
    penalty: PenaltyFn = apply_repeat_penalty,
) -> GenerationStream:
    """
    Start a generation.

    Args:
        prompt_tokens: Non-empty prompt token ids
        config: Sampling parameters, token budget and eos marker
        model: ForwardFn(chunk, cursor) -> logits for the next token
        sampler: SampleFn(logits) -> token id
        decode: DecodeFn(token_id) -> text, or None if undecodable
        penalty: PenaltyFn(logits, strength, context) -> logits

    Returns:
        GenerationStream yielding text fragments lazily
    """
    return GenerationStream(prompt_tokens, config, model, sampler, decode, penalty)
