"""
vLLM Runtime Driver

Hands a prompt to vLLM, which owns batching, scheduling, KV-cache paging and
chat formatting. Handles both HuggingFace models and GGUF files.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import time

from .config import ModelType, RuntimeConfig
from .hub import fetch_file

logger = logging.getLogger(__name__)


@dataclass
class RuntimeResult:
    """Completion plus usage statistics."""

    prompt: str
    generated_text: str
    finish_reason: str
    prompt_tokens: int
    completion_tokens: int
    generation_time_ms: float

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def tokens_per_second(self) -> float:
        if self.generation_time_ms == 0:
            return 0.0
        return self.completion_tokens / (self.generation_time_ms / 1000)


class RuntimeEngine:
    """
    vLLM-based inference engine.

    Usage:
        engine = RuntimeEngine.from_config(config)
        result = engine.complete("What is 2+2?")
    """

    def __init__(self, config: RuntimeConfig):
        self.config = config.validate()
        self._llm = None

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "RuntimeEngine":
        """Create engine from config."""
        return cls(config)

    def _model_source(self) -> tuple[str, Optional[str]]:
        """(model, tokenizer) arguments for vLLM."""
        if self.config.model_type == ModelType.GGUF:
            if Path(self.config.model_id).is_file():
                gguf_path = Path(self.config.model_id)
            else:
                gguf_path = fetch_file(self.config.model_id, self.config.gguf_file, self.config.revision)
            tokenizer = self.config.tokenizer_id or self.config.model_id
            logger.info(f"Using GGUF file {gguf_path} with tokenizer {tokenizer}")
            return str(gguf_path), tokenizer
        return self.config.model_id, self.config.tokenizer_id

    def _ensure_loaded(self):
        """Lazy-load the model."""
        if self._llm is not None:
            return

        try:
            from vllm import LLM
        except ImportError:
            raise ImportError(
                "vLLM required for the runtime driver. Install with: pip install 'base-inf[runtime]'"
            )

        model, tokenizer = self._model_source()
        logger.info(f"Loading model: {model}")
        start = time.perf_counter()

        llm_kwargs = {
            "model": model,
            "gpu_memory_utilization": self.config.gpu_memory_utilization,
            "dtype": self.config.dtype,
            "trust_remote_code": True,
        }

        if tokenizer:
            llm_kwargs["tokenizer"] = tokenizer
        if self.config.revision and self.config.model_type == ModelType.NORMAL:
            llm_kwargs["revision"] = self.config.revision
        if self.config.max_model_len:
            llm_kwargs["max_model_len"] = self.config.max_model_len

        self._llm = LLM(**llm_kwargs)

        elapsed = time.perf_counter() - start
        logger.info(f"Model loaded in {elapsed:.1f}s")

    def sampling_params(self):
        """vLLM SamplingParams built from the config."""
        from vllm import SamplingParams

        kwargs = {
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "repetition_penalty": self.config.repeat_penalty,
            "presence_penalty": self.config.presence_penalty,
            "frequency_penalty": self.config.frequency_penalty,
        }
        if self.config.top_k is not None:
            kwargs["top_k"] = self.config.top_k
        if self.config.seed is not None:
            kwargs["seed"] = self.config.seed

        return SamplingParams(**kwargs)

    def complete(self, prompt: str) -> RuntimeResult:
        """Run one text or chat completion."""
        self._ensure_loaded()
        params = self.sampling_params()

        start = time.perf_counter()
        if self.config.chat:
            messages = [{"role": "user", "content": prompt}]
            outputs = self._llm.chat(messages, params)
        else:
            outputs = self._llm.generate([prompt], params)
        elapsed_ms = (time.perf_counter() - start) * 1000

        output = outputs[0]
        generated = output.outputs[0]

        return RuntimeResult(
            prompt=prompt,
            generated_text=generated.text,
            finish_reason=generated.finish_reason or "unknown",
            prompt_tokens=len(output.prompt_token_ids or []),
            completion_tokens=len(generated.token_ids),
            generation_time_ms=elapsed_ms,
        )
