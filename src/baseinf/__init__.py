"""
base-inf - Basic LLM inference drivers

Runs a pre-built language model from the command line, either directly with
PyTorch or through the vLLM serving runtime.

Core components:
- generation: Autoregressive decode loop (forward -> penalize -> sample -> emit)
- model: PyTorch Llama-family transformer with KV cache, loaded from HuggingFace
- hub: Locate or download model artifacts (config, tokenizer, weights)
- tokenizer: HuggingFace `tokenizers` wrapper
- runtime: vLLM serving-runtime driver (normal and GGUF models, chat mode)
- cli: `base-inf generate` / `base-inf runtime`
"""

__version__ = "0.1.0"
