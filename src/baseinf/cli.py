"""
base-inf CLI - Basic LLM inference from the command line

Commands:
- generate: Load a Llama-family model with PyTorch and run the decode loop directly
- runtime: Hand the prompt to the vLLM serving runtime
- version: Show version information
"""

from typing import Optional
import logging

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from baseinf.config import (
    DEFAULT_EOS_MARKER,
    DEFAULT_PROMPT,
    DEFAULT_SEED,
    GenerationConfig,
    ModelType,
    RuntimeConfig,
    parse_dtype,
    resolve_device,
)
from baseinf.errors import InferenceError

app = typer.Typer(
    name="base-inf",
    help="Basic LLM inference with PyTorch or the vLLM runtime",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool):
    """Log to stderr so streamed text on stdout stays clean."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    logging.getLogger("baseinf").setLevel(logging.DEBUG if verbose else logging.INFO)


def _print_stats(title: str, rows: list[tuple[str, str]]):
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for name, value in rows:
        table.add_row(name, value)
    console.print(table)


@app.command()
def version():
    """Show version information."""
    from baseinf import __version__

    console.print(f"base-inf version {__version__}")


# === Direct (PyTorch) Driver ===


@app.command()
def generate(
    model_id: str = typer.Option(..., "--model-id", "-m", help="HuggingFace model ID or local directory"),
    prompt: str = typer.Option(DEFAULT_PROMPT, "--prompt", "-p", help="Initial prompt for text generation"),
    num_tokens: int = typer.Option(128, "--num-tokens", "-n", help="Number of tokens to generate"),
    cpu: bool = typer.Option(False, "--cpu", help="Run on CPU instead of GPU"),
    temperature: float = typer.Option(0.8, help="Sampling temperature (<= 0 = greedy)"),
    top_p: Optional[float] = typer.Option(None, help="Top-p (nucleus) sampling threshold"),
    top_k: Optional[int] = typer.Option(None, help="Sample from the top k tokens"),
    seed: int = typer.Option(DEFAULT_SEED, help="Random seed for reproducibility"),
    dtype: str = typer.Option("f16", help="Data type: f16, bf16, f32"),
    repeat_penalty: float = typer.Option(1.1, help="Penalty for repeating tokens (1.0 = no penalty)"),
    repeat_last_n: int = typer.Option(128, help="Context size for repeat penalty"),
    no_kv_cache: bool = typer.Option(False, "--no-kv-cache", help="Disable key-value cache"),
    revision: Optional[str] = typer.Option(None, help="Revision/branch on the HuggingFace Hub"),
    eos_token: str = typer.Option(DEFAULT_EOS_MARKER, "--eos-token", help="Text that ends generation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run a model directly with PyTorch and a manual decode loop."""
    from baseinf.generation import Sampler, StopReason, generate as start_generation
    from baseinf.hub import fetch_artifacts
    from baseinf.model import LlamaForward, LlamaModel
    from baseinf.tokenizer import Tokenizer

    _setup_logging(verbose)

    console.print("\n[bold]=== Basic LLM Inference with PyTorch ===[/bold]\n")
    console.print(f"Model ID: {model_id}")
    console.print(f"Prompt: \"{prompt}\"", markup=False)
    console.print(f"Tokens to generate: {num_tokens}")
    console.print(f"Device: {'CPU' if cpu else 'GPU (CUDA)'}")
    console.print(f"Temperature: {temperature}\n")

    try:
        torch_dtype = parse_dtype(dtype)
        config = GenerationConfig(
            temperature=temperature,
            top_k=top_k,
            top_p=top_p,
            seed=seed,
            repeat_penalty=repeat_penalty,
            repeat_last_n=repeat_last_n,
            max_tokens=num_tokens,
            eos_marker=eos_token,
        )
        device = resolve_device(cpu)
        console.print(f"Using device: {device}\n")

        console.print("Downloading model files...")
        artifacts = fetch_artifacts(model_id, revision)

        tokenizer = Tokenizer.from_file(artifacts.tokenizer)
        model = LlamaModel.from_pretrained(artifacts, device=device, dtype=torch_dtype)
        console.print("[green]Model loaded successfully![/green]\n")

        prompt_tokens = tokenizer.encode(prompt)
        console.print(f"Tokenized into {len(prompt_tokens)} tokens\n")

        stream = start_generation(
            prompt_tokens,
            config,
            model=LlamaForward(model, use_kv_cache=not no_kv_cache),
            sampler=Sampler.from_config(config),
            decode=tokenizer.decode,
        )

        console.print("[bold]=== Output ===[/bold]")
        console.print(prompt, end="", markup=False, highlight=False)
        for fragment in stream:
            console.print(fragment, end="", markup=False, highlight=False, soft_wrap=True)
            console.file.flush()
    except InferenceError as e:
        console.print()
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    if stream.stop_reason == StopReason.EOS:
        console.print("\n[End of generation]", markup=False)

    stats = stream.stats
    console.print()
    _print_stats("Statistics", [
        ("Tokens generated", str(stats.generated_tokens)),
        ("Stop reason", stream.stop_reason.value if stream.stop_reason else "-"),
        ("Time", f"{stats.elapsed_ms / 1000:.2f} s"),
        ("Speed", f"{stats.tokens_per_second:.2f} tokens/s"),
    ])
    console.print("\n[bold]=== Inference Complete ===[/bold]\n")


# === Serving Runtime Driver ===


@app.command()
def runtime(
    model_id: str = typer.Option(..., "--model-id", "-m", help="HuggingFace model ID, local directory or .gguf file"),
    prompt: str = typer.Option(DEFAULT_PROMPT, "--prompt", "-p", help="Initial prompt for text generation"),
    max_tokens: int = typer.Option(128, "--max-tokens", "-n", help="Number of tokens to generate"),
    model_type: ModelType = typer.Option(ModelType.NORMAL, "--model-type", "-t", help="Model type"),
    gguf_file: Optional[str] = typer.Option(None, help="GGUF filename (only for gguf model type)"),
    tokenizer_id: Optional[str] = typer.Option(None, help="Tokenizer model ID (GGUF only, defaults to model ID)"),
    revision: Optional[str] = typer.Option(None, help="Revision/branch on the HuggingFace Hub"),
    temperature: float = typer.Option(0.8, help="Sampling temperature (0.0 = greedy)"),
    top_p: float = typer.Option(0.95, help="Top-p (nucleus) sampling threshold"),
    top_k: Optional[int] = typer.Option(None, help="Top-k sampling"),
    repeat_penalty: float = typer.Option(1.1, help="Penalty for repeating tokens (1.0 = no penalty)"),
    presence_penalty: float = typer.Option(0.0, help="Presence penalty"),
    frequency_penalty: float = typer.Option(0.0, help="Frequency penalty"),
    seed: Optional[int] = typer.Option(None, help="Random seed"),
    chat: bool = typer.Option(False, "--chat", help="Use chat completion format"),
    dtype: str = typer.Option("auto", help="Runtime dtype (auto, float16, bfloat16, float32)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run a model through the vLLM serving runtime."""
    from baseinf.runtime import RuntimeEngine

    _setup_logging(verbose)

    console.print("\n[bold]=== Basic LLM Inference with vLLM ===[/bold]\n")
    console.print(f"Model ID: {model_id}")
    console.print(f"Model Type: {model_type.value}")
    console.print(f"Prompt: \"{prompt}\"", markup=False)
    console.print(f"Max Tokens: {max_tokens}")
    console.print(f"Temperature: {temperature}\n")

    config = RuntimeConfig(
        model_id=model_id,
        model_type=model_type,
        gguf_file=gguf_file,
        tokenizer_id=tokenizer_id,
        revision=revision,
        max_tokens=max_tokens,
        temperature=temperature,
        top_p=top_p,
        top_k=top_k,
        repeat_penalty=repeat_penalty,
        presence_penalty=presence_penalty,
        frequency_penalty=frequency_penalty,
        seed=seed,
        chat=chat,
        dtype=dtype,
    )

    try:
        engine = RuntimeEngine.from_config(config)
        result = engine.complete(prompt)
    except (InferenceError, ImportError) as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print("[bold]=== Output ===[/bold]")
    console.print(prompt, end="", markup=False, highlight=False)
    console.print(result.generated_text, markup=False, highlight=False, soft_wrap=True)
    console.print()

    _print_stats("Statistics", [
        ("Prompt tokens", str(result.prompt_tokens)),
        ("Completion tokens", str(result.completion_tokens)),
        ("Total tokens", str(result.total_tokens)),
        ("Finish reason", result.finish_reason),
        ("Time", f"{result.generation_time_ms / 1000:.2f} s"),
        ("Speed", f"{result.tokens_per_second:.2f} tokens/s"),
    ])
    console.print("\n[bold]=== Inference Complete ===[/bold]\n")


if __name__ == "__main__":
    app()
