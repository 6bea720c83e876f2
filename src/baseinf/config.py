"""
Configuration for both drivers.

GenerationConfig drives the direct decode loop; RuntimeConfig drives the
vLLM serving runtime. Both are plain dataclasses validated up front so that
bad input never reaches the model.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

import torch

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Hello, my name is"
DEFAULT_EOS_MARKER = "</s>"
DEFAULT_SEED = 299792458

# Precision tags accepted by --dtype
DTYPES = {
    "f16": torch.float16,
    "bf16": torch.bfloat16,
    "f32": torch.float32,
}


@dataclass(frozen=True)
class GenerationConfig:
    """Sampling parameters for one generation. Never mutated once built."""

    temperature: float = 0.8
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    seed: int = DEFAULT_SEED

    # Repeat penalty (1.0 = no penalty)
    repeat_penalty: float = 1.1
    repeat_last_n: int = 128

    max_tokens: int = 128
    eos_marker: str = DEFAULT_EOS_MARKER

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ConfigError(f"max_tokens must be >= 0, got {self.max_tokens}")
        if self.repeat_last_n < 0:
            raise ConfigError(f"repeat_last_n must be >= 0, got {self.repeat_last_n}")
        if self.repeat_penalty <= 0:
            raise ConfigError(f"repeat_penalty must be > 0, got {self.repeat_penalty}")
        if self.top_k is not None and self.top_k < 1:
            raise ConfigError(f"top_k must be >= 1, got {self.top_k}")
        if self.top_p is not None and not 0.0 < self.top_p <= 1.0:
            raise ConfigError(f"top_p must be in (0, 1], got {self.top_p}")
        if not self.eos_marker:
            raise ConfigError("eos_marker must be a non-empty string")


class ModelType(str, Enum):
    """Model formats the serving runtime can load."""
    NORMAL = "normal"  # Standard HuggingFace models
    GGUF = "gguf"  # GGUF quantized models


@dataclass
class RuntimeConfig:
    """Configuration for the vLLM runtime driver."""

    model_id: str  # HuggingFace ID or local path
    model_type: ModelType = ModelType.NORMAL
    gguf_file: Optional[str] = None  # Only for GGUF models
    tokenizer_id: Optional[str] = None  # GGUF tokenizer source, defaults to model_id
    revision: Optional[str] = None

    # Generation
    max_tokens: int = 128
    temperature: float = 0.8
    top_p: float = 0.95
    top_k: Optional[int] = None
    repeat_penalty: float = 1.1
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    seed: Optional[int] = None

    # Use chat completion format
    chat: bool = False

    # Hardware
    dtype: str = "auto"
    gpu_memory_utilization: float = 0.85
    max_model_len: Optional[int] = None  # None = use model default

    def validate(self) -> "RuntimeConfig":
        """Reject settings the runtime would choke on."""
        if self.max_tokens < 0:
            raise ConfigError(f"max_tokens must be >= 0, got {self.max_tokens}")
        if (self.model_type == ModelType.GGUF and not self.gguf_file
                and not self.model_id.endswith(".gguf")):
            raise ConfigError("--gguf-file is required when using GGUF model type")
        if self.top_k is not None and self.top_k < 1:
            raise ConfigError(f"top_k must be >= 1, got {self.top_k}")
        return self


def parse_dtype(tag: str) -> torch.dtype:
    """Map a precision tag (f16, bf16, f32) to a torch dtype."""
    try:
        return DTYPES[tag]
    except KeyError:
        raise ConfigError(f"Unsupported dtype: {tag}") from None


def resolve_device(cpu: bool = False) -> torch.device:
    """CPU if asked for, else the first CUDA device when there is one."""
    if cpu:
        return torch.device("cpu")
    if torch.cuda.is_available():
        return torch.device("cuda", 0)
    logger.warning("CUDA not available, falling back to CPU")
    return torch.device("cpu")
