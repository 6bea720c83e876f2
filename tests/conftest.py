"""
Pytest configuration and shared fixtures.

Provides scripted collaborators for the generation loop and a tiny
Llama-style model written to disk, so the whole stack runs on CPU without
network access.
"""

import json
import logging
from typing import Optional

import pytest
import torch
from safetensors.torch import save_file
from tokenizers import Tokenizer, models, pre_tokenizers

from baseinf.model import LlamaConfig, LlamaModel

# Configure logging for test runs
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# Scripted Collaborators (generation loop)
# =============================================================================

VOCAB_SIZE = 16
EOS_TOKEN_ID = 2


class ScriptedModel:
    """
    ForwardFn that returns one-hot logits for a fixed token script.

    Records every (chunk, cursor) it is called with.
    """

    def __init__(self, script: list[int], vocab_size: int = VOCAB_SIZE):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.calls = []

    def __call__(self, chunk, cursor: int) -> torch.Tensor:
        step = len(self.calls)
        self.calls.append((chunk, cursor))
        logits = torch.full((self.vocab_size,), -10.0)
        logits[self.script[step % len(self.script)]] = 10.0
        return logits


class RecordingPenalty:
    """PenaltyFn that records its context window and leaves logits alone."""

    def __init__(self):
        self.contexts = []

    def __call__(self, logits, strength, context):
        self.contexts.append(list(context))
        return logits


def argmax_sampler(logits) -> int:
    return int(torch.argmax(logits).item())


def word_decode(token_id: int) -> Optional[str]:
    """Maps the eos id to "</s>" and everything else to "<id>"."""
    if token_id == EOS_TOKEN_ID:
        return "</s>"
    return f"<{token_id}>"


@pytest.fixture
def scripted_model():
    """Factory for ScriptedModel instances."""
    return ScriptedModel


@pytest.fixture
def recording_penalty():
    return RecordingPenalty()


@pytest.fixture
def argmax():
    """Greedy SampleFn."""
    return argmax_sampler


@pytest.fixture
def decode():
    """DecodeFn with "</s>" at EOS_TOKEN_ID."""
    return word_decode


# =============================================================================
# Tiny Model Fixtures (lightweight, CPU only)
# =============================================================================

WORDS = ["<unk>", "<s>", "</s>", "hello", "my", "name", "is", "bob", "alice",
         "the", "cat", "sat", "on", "mat", ".", ","]


@pytest.fixture
def tiny_config() -> LlamaConfig:
    """A 2-layer GQA config small enough for exact CPU checks."""
    return LlamaConfig(
        vocab_size=len(WORDS),
        hidden_dim=32,
        num_layers=2,
        num_heads=4,
        num_kv_heads=2,
        head_dim=8,
        intermediate_dim=64,
        max_seq_len=128,
    )


@pytest.fixture
def tiny_model(tiny_config) -> LlamaModel:
    torch.manual_seed(0)
    return LlamaModel(tiny_config).eval()


def write_word_tokenizer(path):
    """Save a whitespace word-level tokenizer over WORDS."""
    vocab = {word: i for i, word in enumerate(WORDS)}
    tokenizer = Tokenizer(models.WordLevel(vocab=vocab, unk_token="<unk>"))
    tokenizer.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer.add_special_tokens(["<unk>", "<s>", "</s>"])
    tokenizer.save(str(path))
    return path


@pytest.fixture
def tokenizer_file(tmp_path):
    return write_word_tokenizer(tmp_path / "tokenizer.json")


@pytest.fixture
def tiny_model_dir(tmp_path, tiny_config, tiny_model):
    """
    A HuggingFace-style model directory: config.json, tokenizer.json and
    model.safetensors with "model."-prefixed weight names.
    """
    model_dir = tmp_path / "tiny-llama"
    model_dir.mkdir()

    (model_dir / "config.json").write_text(json.dumps({
        "architectures": ["LlamaForCausalLM"],
        "vocab_size": tiny_config.vocab_size,
        "hidden_size": tiny_config.hidden_dim,
        "intermediate_size": tiny_config.intermediate_dim,
        "num_hidden_layers": tiny_config.num_layers,
        "num_attention_heads": tiny_config.num_heads,
        "num_key_value_heads": tiny_config.num_kv_heads,
        "head_dim": tiny_config.head_dim,
        "rms_norm_eps": tiny_config.rms_norm_eps,
        "rope_theta": tiny_config.rope_base,
        "max_position_embeddings": tiny_config.max_seq_len,
        "tie_word_embeddings": False,
    }))

    state_dict = {}
    for name, tensor in tiny_model.state_dict().items():
        key = name if name.startswith("lm_head") else f"model.{name}"
        state_dict[key] = tensor.detach().clone().contiguous()
    save_file(state_dict, str(model_dir / "model.safetensors"))

    write_word_tokenizer(model_dir / "tokenizer.json")
    logger.info(f"Wrote tiny model to {model_dir}")
    return model_dir


# =============================================================================
# Hub Errors
# =============================================================================


def make_hub_error(cls, message: str):
    """A huggingface_hub HTTP error built without a live response."""
    err = cls.__new__(cls)
    Exception.__init__(err, message)
    err.response = None
    err.server_message = None
    return err


@pytest.fixture
def hub_error():
    """Factory: hub_error(RepositoryNotFoundError, "message")."""
    return make_hub_error


# =============================================================================
# Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "network: marks tests requiring network access")
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "gpu: marks tests requiring GPU")
