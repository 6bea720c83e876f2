"""
Model Artifact Resolution

Finds config.json, tokenizer.json and weights for a model, either in a local
directory or on the HuggingFace Hub.

Weight lookup order:
- model.safetensors
- shards listed in model.safetensors.index.json
- pytorch_model.bin
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import json
import logging

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import EntryNotFoundError, HfHubHTTPError, HFValidationError

from .errors import ArtifactError, ArtifactNotFoundError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
TOKENIZER_FILE = "tokenizer.json"
SAFETENSORS_FILE = "model.safetensors"
SAFETENSORS_INDEX_FILE = "model.safetensors.index.json"
PYTORCH_FILE = "pytorch_model.bin"

DEFAULT_REVISION = "main"


@dataclass
class ModelArtifacts:
    """Local paths of everything needed to load a model."""

    config: Path
    tokenizer: Path
    weights: list[Path]

    @property
    def is_safetensors(self) -> bool:
        return all(p.suffix == ".safetensors" for p in self.weights)


def fetch_file(model_id: str, filename: str, revision: Optional[str] = None) -> Path:
    """
    Locate or download a single file.

    Local directories are read directly; anything else is treated as a
    HuggingFace repo id.
    """
    local_dir = Path(model_id)
    if local_dir.is_dir():
        path = local_dir / filename
        if not path.exists():
            raise ArtifactNotFoundError(f"{filename} not found in {local_dir}")
        return path

    try:
        return Path(hf_hub_download(
            repo_id=model_id,
            filename=filename,
            revision=revision or DEFAULT_REVISION,
        ))
    except EntryNotFoundError as e:
        raise ArtifactNotFoundError(f"{filename} not found in {model_id}") from e
    except HFValidationError as e:
        raise ArtifactError(f"Invalid model id or local path: {model_id}") from e
    except HfHubHTTPError as e:
        raise ArtifactError(f"Cannot fetch {filename} from {model_id}: {e}") from e


def _fetch_weights(model_id: str, revision: Optional[str]) -> list[Path]:
    try:
        return [fetch_file(model_id, SAFETENSORS_FILE, revision)]
    except ArtifactNotFoundError:
        logger.info(f"{SAFETENSORS_FILE} not found, trying {SAFETENSORS_INDEX_FILE}...")

    try:
        index_path = fetch_file(model_id, SAFETENSORS_INDEX_FILE, revision)
    except ArtifactNotFoundError:
        logger.info(f"{SAFETENSORS_INDEX_FILE} not found, trying {PYTORCH_FILE}...")
    else:
        try:
            weight_map = json.loads(index_path.read_text())["weight_map"]
        except (json.JSONDecodeError, KeyError) as e:
            raise ArtifactError(f"Malformed {SAFETENSORS_INDEX_FILE} for {model_id}: {e}") from e
        shards = sorted(set(weight_map.values()))
        logger.info(f"Fetching {len(shards)} safetensors shards")
        return [fetch_file(model_id, shard, revision) for shard in shards]

    try:
        return [fetch_file(model_id, PYTORCH_FILE, revision)]
    except ArtifactNotFoundError as e:
        raise ArtifactError(f"No model weights found for {model_id}") from e


def fetch_artifacts(model_id: str, revision: Optional[str] = None) -> ModelArtifacts:
    """Resolve tokenizer, config and weights for `model_id`."""
    logger.info(f"Fetching model files for {model_id} (revision={revision or DEFAULT_REVISION})")

    tokenizer = fetch_file(model_id, TOKENIZER_FILE, revision)
    config = fetch_file(model_id, CONFIG_FILE, revision)
    weights = _fetch_weights(model_id, revision)

    logger.info(f"Model files ready: {len(weights)} weight file(s)")
    return ModelArtifacts(config=config, tokenizer=tokenizer, weights=weights)
