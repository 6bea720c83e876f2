"""
Error taxonomy for base-inf.

Nothing here is retried: a failure mid-generation aborts the stream, and
fragments already yielded stay yielded.
"""


class InferenceError(RuntimeError):
    """Base class for every error raised by base-inf."""


class ForwardError(InferenceError):
    """The model's forward pass failed."""


class SampleError(InferenceError):
    """Logits could not be sampled (empty, malformed, or all non-finite)."""


class ConfigError(InferenceError, ValueError):
    """Invalid configuration, rejected before generation starts."""


class ArtifactError(InferenceError):
    """Required model files could not be found locally or on the Hub."""


class ArtifactNotFoundError(ArtifactError):
    """A single model file does not exist in the directory or Hub repo."""
