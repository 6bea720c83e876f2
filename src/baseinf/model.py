"""
Llama-family Transformer for Direct Inference

Pure PyTorch transformer loaded from HuggingFace artifacts (config.json plus
safetensors or pytorch_model.bin weights).

Supports Llama/Mistral/Qwen2-style architectures:
- RMSNorm
- SwiGLU FFN (gate_proj, up_proj, down_proj)
- RoPE (Rotary Position Embeddings), with linear and llama3 rope_scaling
- Grouped Query Attention (GQA)
- Per-layer KV cache for incremental decoding

Usage:
    model = LlamaModel.from_pretrained(artifacts, device, torch.float16)
    forward = LlamaForward(model)
    logits = forward(Prefill(tuple(prompt_ids)), 0)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union
import json
import logging
import math

import torch
import torch.nn as nn
import torch.nn.functional as F
from safetensors.torch import load_file

from .errors import ArtifactError, ForwardError
from .generation import InputChunk
from .hub import ModelArtifacts

logger = logging.getLogger(__name__)


# Architectures whose q/k/v projections always carry a bias
QKV_BIAS_MODEL_TYPES = {"qwen2"}
QKV_BIAS_ARCHITECTURES = {"Qwen2ForCausalLM"}
ATTENTION_BIAS_SUFFIXES = ("q_proj.bias", "k_proj.bias", "v_proj.bias")

# rope_scaling types applied by RotaryEmbedding
SUPPORTED_ROPE_SCALING = {"default", "linear", "llama3"}


@dataclass
class LlamaConfig:
    """Model configuration read from a HuggingFace config.json."""

    vocab_size: int
    hidden_dim: int
    num_layers: int
    num_heads: int
    num_kv_heads: int  # For GQA
    head_dim: int
    intermediate_dim: int
    rms_norm_eps: float = 1e-6
    rope_base: float = 10000.0
    rope_scaling: Optional[dict[str, Any]] = None
    max_seq_len: int = 4096
    tie_embeddings: bool = False
    attention_bias: bool = False  # Qwen2 has QKV bias

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "LlamaConfig":
        hidden_dim = d["hidden_size"]
        num_heads = d["num_attention_heads"]

        rope_scaling = d.get("rope_scaling") or None
        if rope_scaling is not None:
            rope_type = rope_scaling.get("rope_type", rope_scaling.get("type", "default"))
            if rope_type not in SUPPORTED_ROPE_SCALING:
                raise ArtifactError(f"Unsupported rope_scaling type: {rope_type}")
            if rope_type != "default" and "factor" not in rope_scaling:
                raise ArtifactError(f"rope_scaling {rope_type} needs a factor")
            logger.info(f"Applying {rope_type} rope scaling: {rope_scaling}")

        attention_bias = d.get("attention_bias")
        if attention_bias is None:
            attention_bias = (d.get("model_type") in QKV_BIAS_MODEL_TYPES
                              or bool(QKV_BIAS_ARCHITECTURES & set(d.get("architectures") or [])))

        return cls(
            vocab_size=d["vocab_size"],
            hidden_dim=hidden_dim,
            num_layers=d["num_hidden_layers"],
            num_heads=num_heads,
            num_kv_heads=d.get("num_key_value_heads") or num_heads,
            head_dim=d.get("head_dim") or hidden_dim // num_heads,
            intermediate_dim=d["intermediate_size"],
            rms_norm_eps=d.get("rms_norm_eps", 1e-6),
            rope_base=d.get("rope_theta", 10000.0),
            rope_scaling=rope_scaling,
            max_seq_len=d.get("max_position_embeddings", 4096),
            tie_embeddings=d.get("tie_word_embeddings", False),
            attention_bias=attention_bias,
        )

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "LlamaConfig":
        try:
            return cls.from_dict(json.loads(Path(path).read_text()))
        except (OSError, json.JSONDecodeError) as e:
            raise ArtifactError(f"Cannot read model config {path}: {e}") from e
        except (KeyError, TypeError) as e:
            raise ArtifactError(f"Incomplete model config {path}: missing {e}") from e


class KVCache:
    """
    Per-layer key/value tensors, appended along the sequence axis.

    Keys and values are stored before GQA expansion:
    [batch, num_kv_heads, seq_len, head_dim]. A disabled cache keeps nothing.
    """

    def __init__(self, num_layers: int, enabled: bool = True):
        self.enabled = enabled
        self.layers: list[Optional[tuple[torch.Tensor, torch.Tensor]]] = [None] * num_layers

    @property
    def seq_len(self) -> int:
        first = self.layers[0]
        return 0 if first is None else first[0].shape[2]

    def update(
        self,
        layer_idx: int,
        k: torch.Tensor,
        v: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Append new K/V for a layer and return the full K/V."""
        if not self.enabled:
            return k, v

        past = self.layers[layer_idx]
        if past is not None:
            k = torch.cat([past[0], k], dim=2)
            v = torch.cat([past[1], v], dim=2)

        self.layers[layer_idx] = (k, v)
        return k, v

    def reset(self):
        self.layers = [None] * len(self.layers)


class RMSNorm(nn.Module):
    """Root Mean Square Layer Normalization."""

    def __init__(self, dim: int, eps: float = 1e-6):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        dtype = x.dtype
        x = x.float()
        x = x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + self.eps)
        return self.weight * x.to(dtype)


class SwiGLUFFN(nn.Module):
    """SwiGLU Feed-Forward Network (Llama style)."""

    def __init__(self, hidden_dim: int, intermediate_dim: int):
        super().__init__()
        self.gate_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.up_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.down_proj = nn.Linear(intermediate_dim, hidden_dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


class RotaryEmbedding(nn.Module):
    """
    Standard RoPE for causal LM, with optional linear or llama3 frequency scaling.

    Frequencies are computed per call in float32, so the module holds no
    state and survives meta-device construction.
    """

    def __init__(self, dim: int, base: float = 10000.0, scaling: Optional[dict[str, Any]] = None):
        super().__init__()
        self.dim = dim
        self.base = base
        self.scaling = scaling or {}

    def inv_freq(self, device: Optional[torch.device] = None) -> torch.Tensor:
        """Per-pair inverse frequencies, [dim // 2], after scaling."""
        inv_freq = 1.0 / (self.base ** (
            torch.arange(0, self.dim, 2, device=device, dtype=torch.float32) / self.dim
        ))

        rope_type = self.scaling.get("rope_type", self.scaling.get("type", "default"))
        if rope_type == "linear":
            return inv_freq / self.scaling["factor"]
        if rope_type == "llama3":
            return self._llama3_inv_freq(inv_freq)
        return inv_freq

    def _llama3_inv_freq(self, inv_freq: torch.Tensor) -> torch.Tensor:
        # Slow long wavelengths by `factor` and interpolate the band just below them
        factor = self.scaling["factor"]
        low_freq_factor = self.scaling.get("low_freq_factor", 1.0)
        high_freq_factor = self.scaling.get("high_freq_factor", 4.0)
        old_context_len = self.scaling.get("original_max_position_embeddings", 8192)

        low_freq_wavelen = old_context_len / low_freq_factor
        high_freq_wavelen = old_context_len / high_freq_factor
        wavelen = 2 * math.pi / inv_freq

        scaled = torch.where(wavelen > low_freq_wavelen, inv_freq / factor, inv_freq)
        smooth = (old_context_len / wavelen - low_freq_factor) / (high_freq_factor - low_freq_factor)
        smoothed = (1 - smooth) * scaled / factor + smooth * scaled
        is_medium = (wavelen >= high_freq_wavelen) & (wavelen <= low_freq_wavelen)
        return torch.where(is_medium, smoothed, scaled)

    def cos_sin(self, positions: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """cos/sin tables for [seq_len] positions, shaped [1, 1, seq_len, dim]."""
        freqs = torch.outer(positions.float(), self.inv_freq(positions.device))
        emb = torch.cat([freqs, freqs], dim=-1)
        return emb.cos()[None, None], emb.sin()[None, None]

    def forward(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Apply RoPE to [batch, heads, seq_len, head_dim] queries and keys."""
        return self._apply_rotary(q, cos, sin), self._apply_rotary(k, cos, sin)

    def _apply_rotary(self, x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
        x1 = x[..., : self.dim // 2]
        x2 = x[..., self.dim // 2 :]
        rotated = torch.cat([-x2, x1], dim=-1)
        out = (x.float() * cos) + (rotated.float() * sin)
        return out.to(x.dtype)


class Attention(nn.Module):
    """Multi-head attention with RoPE and GQA."""

    def __init__(self, config: LlamaConfig, layer_idx: int):
        super().__init__()
        self.layer_idx = layer_idx
        self.num_heads = config.num_heads
        self.num_kv_heads = config.num_kv_heads
        self.head_dim = config.head_dim
        self.num_kv_groups = config.num_heads // config.num_kv_heads

        bias = config.attention_bias
        self.q_proj = nn.Linear(config.hidden_dim, config.num_heads * config.head_dim, bias=bias)
        self.k_proj = nn.Linear(config.hidden_dim, config.num_kv_heads * config.head_dim, bias=bias)
        self.v_proj = nn.Linear(config.hidden_dim, config.num_kv_heads * config.head_dim, bias=bias)
        self.o_proj = nn.Linear(config.num_heads * config.head_dim, config.hidden_dim, bias=False)

        self.rope = RotaryEmbedding(config.head_dim, config.rope_base, config.rope_scaling)

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        batch, seq_len, _ = hidden_states.shape

        q = self.q_proj(hidden_states)
        k = self.k_proj(hidden_states)
        v = self.v_proj(hidden_states)

        q = q.view(batch, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = k.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = v.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)

        q, k = self.rope(q, k, cos, sin)

        if cache is not None:
            k, v = cache.update(self.layer_idx, k, v)

        # Expand KV for GQA
        if self.num_kv_groups > 1:
            k = k.repeat_interleave(self.num_kv_groups, dim=1)
            v = v.repeat_interleave(self.num_kv_groups, dim=1)

        scale = 1.0 / math.sqrt(self.head_dim)
        scores = torch.matmul(q, k.transpose(-2, -1)) * scale

        if mask is not None:
            scores = scores + mask

        attn_weights = F.softmax(scores, dim=-1, dtype=torch.float32).to(q.dtype)
        attn_out = torch.matmul(attn_weights, v)

        attn_out = attn_out.transpose(1, 2).contiguous().view(batch, seq_len, -1)
        return self.o_proj(attn_out)


class TransformerBlock(nn.Module):
    """Single pre-norm transformer block."""

    def __init__(self, config: LlamaConfig, layer_idx: int):
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_dim, config.rms_norm_eps)
        self.self_attn = Attention(config, layer_idx)
        self.post_attention_layernorm = RMSNorm(config.hidden_dim, config.rms_norm_eps)
        self.mlp = SwiGLUFFN(config.hidden_dim, config.intermediate_dim)

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        residual = hidden_states
        hidden_states = self.self_attn(self.input_layernorm(hidden_states), cos, sin, mask, cache)
        hidden_states = residual + hidden_states

        residual = hidden_states
        hidden_states = self.mlp(self.post_attention_layernorm(hidden_states))
        return residual + hidden_states


class LlamaModel(nn.Module):
    """
    Llama-family causal LM.

    Parameter names match HuggingFace checkpoints with the "model." prefix
    stripped, so state dicts load without a name map.
    """

    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.config = config

        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_dim)
        self.layers = nn.ModuleList([
            TransformerBlock(config, i) for i in range(config.num_layers)
        ])
        self.norm = RMSNorm(config.hidden_dim, config.rms_norm_eps)
        self.rotary = RotaryEmbedding(config.head_dim, config.rope_base, config.rope_scaling)

        # LM head - may be tied to embeddings
        if config.tie_embeddings:
            self.lm_head = None  # Will use embed_tokens.weight
        else:
            self.lm_head = nn.Linear(config.hidden_dim, config.vocab_size, bias=False)

    @classmethod
    def from_pretrained(
        cls,
        artifacts: ModelArtifacts,
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float16,
    ) -> "LlamaModel":
        """Build the model from resolved HuggingFace artifacts."""
        config = LlamaConfig.from_json(artifacts.config)
        logger.info(f"Config: {config.num_layers} layers, {config.hidden_dim} hidden, "
                    f"{config.num_heads} heads ({config.num_kv_heads} kv), {config.vocab_size} vocab")

        # Skip random init: every parameter is replaced by a loaded tensor
        with torch.device("meta"):
            model = cls(config)

        state_dict = {}
        for path in artifacts.weights:
            logger.info(f"Loading weights from {path.name}")
            state_dict.update(load_weights(path))

        state_dict = {
            (name[len("model."):] if name.startswith("model.") else name): tensor.to(dtype)
            for name, tensor in state_dict.items()
        }

        # Untied checkpoints without an lm_head reuse the embeddings
        if model.lm_head is not None and "lm_head.weight" not in state_dict:
            if "embed_tokens.weight" in state_dict:
                logger.info("lm_head.weight missing, tying to embed_tokens.weight")
                state_dict["lm_head.weight"] = state_dict["embed_tokens.weight"]

        result = model.load_state_dict(state_dict, strict=False, assign=True)
        if result.missing_keys:
            raise ArtifactError(f"Missing {len(result.missing_keys)} weights, "
                                f"e.g. {result.missing_keys[:3]}")
        dropped_bias = [k for k in result.unexpected_keys if k.endswith(ATTENTION_BIAS_SUFFIXES)]
        if dropped_bias:
            raise ArtifactError(f"Checkpoint has attention biases the config does not enable, "
                                f"e.g. {dropped_bias[:3]}")
        if result.unexpected_keys:
            logger.warning(f"Skipped {len(result.unexpected_keys)} unexpected tensors")

        logger.info(f"Loaded {len(state_dict) - len(result.unexpected_keys)} tensors")
        return model.to(device=device).eval()

    @property
    def device(self) -> torch.device:
        return self.embed_tokens.weight.device

    def forward(
        self,
        input_ids: torch.Tensor,
        start_pos: int = 0,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """
        Forward pass.

        Args:
            input_ids: [batch, seq_len] token IDs
            start_pos: Position of the first token in input_ids
            cache: KV cache, updated in place

        Returns:
            logits: [batch, seq_len, vocab_size]
        """
        batch, seq_len = input_ids.shape
        device = input_ids.device

        past_len = cache.seq_len if cache is not None else 0
        positions = torch.arange(start_pos, start_pos + seq_len, device=device)

        hidden_states = self.embed_tokens(input_ids)

        # Causal mask
        if seq_len > 1:
            mask = torch.full((seq_len, seq_len), float("-inf"), device=device, dtype=hidden_states.dtype)
            mask = torch.triu(mask, diagonal=1)

            # Extend mask for past KV
            if past_len > 0:
                past_mask = torch.zeros((seq_len, past_len), device=device, dtype=hidden_states.dtype)
                mask = torch.cat([past_mask, mask], dim=1)
        else:
            mask = None

        cos, sin = self.rotary.cos_sin(positions)

        for layer in self.layers:
            hidden_states = layer(hidden_states, cos, sin, mask, cache)

        hidden_states = self.norm(hidden_states)

        # LM head (tied or separate)
        if self.lm_head is not None:
            return self.lm_head(hidden_states)
        return F.linear(hidden_states, self.embed_tokens.weight)


def load_weights(path: Path) -> dict[str, torch.Tensor]:
    """Read a safetensors or pytorch_model.bin file onto the CPU."""
    if path.suffix == ".safetensors":
        return load_file(str(path), device="cpu")
    return torch.load(path, map_location="cpu", weights_only=True)


class LlamaForward:
    """
    ForwardFn adapter: (chunk, cursor) -> next-token logits.

    With the KV cache on, only the chunk is fed, at position `cursor`. With it
    off, the adapter keeps the token history and recomputes the whole
    sequence from position 0 on every call.
    """

    def __init__(self, model: LlamaModel, use_kv_cache: bool = True):
        self.model = model
        self.cache = KVCache(model.config.num_layers, enabled=use_kv_cache)
        self._history: list[int] = []

    @torch.inference_mode()
    def __call__(self, chunk: InputChunk, cursor: int) -> torch.Tensor:
        tokens = list(chunk.tokens)

        if self.cache.enabled:
            if cursor != self.cache.seq_len:
                raise ForwardError(f"Cursor {cursor} does not match cache length {self.cache.seq_len}")
            input_ids, start_pos = tokens, cursor
        else:
            self._history.extend(tokens)
            input_ids, start_pos = self._history, 0

        ids = torch.tensor([input_ids], dtype=torch.long, device=self.model.device)
        logits = self.model(ids, start_pos=start_pos, cache=self.cache)
        return logits[0, -1].float()

    def reset(self):
        self.cache.reset()
        self._history = []
