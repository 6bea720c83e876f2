"""
Tests for the vLLM runtime driver.

vLLM is replaced by a MagicMock module so these run without a GPU.
"""

import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from baseinf.config import ModelType, RuntimeConfig
from baseinf.errors import ConfigError
from baseinf.runtime import RuntimeEngine, RuntimeResult


def request_output(text="Bob.", token_ids=(11, 12, 14), prompt_ids=(3, 4, 5, 6), finish_reason="stop"):
    """Shape of a vllm.RequestOutput, as far as the driver reads it."""
    completion = SimpleNamespace(text=text, token_ids=list(token_ids), finish_reason=finish_reason)
    return SimpleNamespace(prompt_token_ids=list(prompt_ids), outputs=[completion])


@pytest.fixture
def fake_vllm():
    """A stand-in vllm module whose LLM returns canned outputs."""
    module = MagicMock()
    llm = module.LLM.return_value
    llm.generate.return_value = [request_output()]
    llm.chat.return_value = [request_output(text="Hi there!")]
    with patch.dict(sys.modules, {"vllm": module}):
        yield module


# =============================================================================
# Engine Tests
# =============================================================================


class TestRuntimeEngine:
    """Engine lifecycle and request building."""

    def test_invalid_config_rejected_up_front(self):
        with pytest.raises(ConfigError):
            RuntimeEngine(RuntimeConfig(model_id="org/model", model_type=ModelType.GGUF))

    def test_generate(self, fake_vllm):
        engine = RuntimeEngine.from_config(RuntimeConfig(model_id="org/model"))
        result = engine.complete("Hello, my name is")

        assert result.prompt == "Hello, my name is"
        assert result.generated_text == "Bob."
        assert result.finish_reason == "stop"
        assert result.prompt_tokens == 4
        assert result.completion_tokens == 3
        assert result.total_tokens == 7

        llm = fake_vllm.LLM.return_value
        prompts, params = llm.generate.call_args.args
        assert prompts == ["Hello, my name is"]
        assert params is fake_vllm.SamplingParams.return_value
        llm.chat.assert_not_called()

    def test_chat(self, fake_vllm):
        engine = RuntimeEngine(RuntimeConfig(model_id="org/model", chat=True))
        result = engine.complete("Hello")

        assert result.generated_text == "Hi there!"
        messages, _ = fake_vllm.LLM.return_value.chat.call_args.args
        assert messages == [{"role": "user", "content": "Hello"}]

    def test_model_loaded_once(self, fake_vllm):
        engine = RuntimeEngine(RuntimeConfig(model_id="org/model"))
        engine.complete("a")
        engine.complete("b")

        assert fake_vllm.LLM.call_count == 1

    def test_llm_kwargs(self, fake_vllm):
        config = RuntimeConfig(model_id="org/model", revision="v1", dtype="bfloat16", max_model_len=2048)
        RuntimeEngine(config).complete("x")

        kwargs = fake_vllm.LLM.call_args.kwargs
        assert kwargs["model"] == "org/model"
        assert kwargs["revision"] == "v1"
        assert kwargs["dtype"] == "bfloat16"
        assert kwargs["max_model_len"] == 2048
        assert "tokenizer" not in kwargs

    def test_sampling_params(self, fake_vllm):
        config = RuntimeConfig(
            model_id="org/model",
            max_tokens=32,
            temperature=0.0,
            top_p=0.9,
            repeat_penalty=1.3,
            presence_penalty=0.5,
            frequency_penalty=0.25,
        )
        RuntimeEngine(config).sampling_params()

        kwargs = fake_vllm.SamplingParams.call_args.kwargs
        assert kwargs == {
            "max_tokens": 32,
            "temperature": 0.0,
            "top_p": 0.9,
            "repetition_penalty": 1.3,
            "presence_penalty": 0.5,
            "frequency_penalty": 0.25,
        }

    def test_optional_sampling_params(self, fake_vllm):
        RuntimeEngine(RuntimeConfig(model_id="org/model", top_k=40, seed=7)).sampling_params()

        kwargs = fake_vllm.SamplingParams.call_args.kwargs
        assert kwargs["top_k"] == 40
        assert kwargs["seed"] == 7

    def test_missing_finish_reason(self, fake_vllm):
        fake_vllm.LLM.return_value.generate.return_value = [request_output(finish_reason=None)]
        result = RuntimeEngine(RuntimeConfig(model_id="org/model")).complete("x")

        assert result.finish_reason == "unknown"

    def test_vllm_not_installed(self):
        with patch.dict(sys.modules, {"vllm": None}):
            engine = RuntimeEngine(RuntimeConfig(model_id="org/model"))
            with pytest.raises(ImportError, match="base-inf\\[runtime\\]"):
                engine.complete("x")


class TestGGUF:
    """GGUF model sources."""

    def test_downloads_gguf_file(self, fake_vllm, tmp_path):
        gguf = tmp_path / "model.Q4_K_M.gguf"
        config = RuntimeConfig(
            model_id="org/model-GGUF",
            model_type=ModelType.GGUF,
            gguf_file="model.Q4_K_M.gguf",
            tokenizer_id="org/model",
            revision="v3",
        )

        with patch("baseinf.runtime.fetch_file", return_value=gguf) as fetch:
            RuntimeEngine(config).complete("x")

        fetch.assert_called_once_with("org/model-GGUF", "model.Q4_K_M.gguf", "v3")
        kwargs = fake_vllm.LLM.call_args.kwargs
        assert kwargs["model"] == str(gguf)
        assert kwargs["tokenizer"] == "org/model"
        assert "revision" not in kwargs

    def test_tokenizer_defaults_to_model_id(self, fake_vllm, tmp_path):
        config = RuntimeConfig(model_id="org/model-GGUF", model_type=ModelType.GGUF, gguf_file="m.gguf")

        with patch("baseinf.runtime.fetch_file", return_value=tmp_path / "m.gguf"):
            RuntimeEngine(config).complete("x")

        assert fake_vllm.LLM.call_args.kwargs["tokenizer"] == "org/model-GGUF"

    def test_local_gguf_file(self, fake_vllm, tmp_path):
        gguf = tmp_path / "local.gguf"
        gguf.write_bytes(b"GGUF")
        config = RuntimeConfig(model_id=str(gguf), model_type=ModelType.GGUF, tokenizer_id="org/model")

        with patch("baseinf.runtime.fetch_file") as fetch:
            RuntimeEngine(config).complete("x")

        fetch.assert_not_called()
        assert fake_vllm.LLM.call_args.kwargs["model"] == str(gguf)


# =============================================================================
# Result Tests
# =============================================================================


class TestRuntimeResult:

    def test_tokens_per_second(self):
        result = RuntimeResult("p", "t", "length", 4, 10, generation_time_ms=500.0)
        assert result.total_tokens == 14
        assert result.tokens_per_second == pytest.approx(20.0)

    def test_zero_time(self):
        result = RuntimeResult("p", "t", "length", 4, 10, generation_time_ms=0.0)
        assert result.tokens_per_second == 0.0
