"""
Tokenizer wrapper around HuggingFace `tokenizers`.

decode() works one token at a time and keeps special tokens, so an
end-of-sequence marker such as "</s>" shows up in the decoded text.
"""

from pathlib import Path
from typing import Optional, Union
import logging

from tokenizers import Tokenizer as HFTokenizer

from .errors import ArtifactError

logger = logging.getLogger(__name__)


class Tokenizer:
    """Encode prompts and decode single tokens."""

    def __init__(self, tokenizer: HFTokenizer):
        self._tokenizer = tokenizer

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Tokenizer":
        logger.info(f"Loading tokenizer from {path}")
        try:
            return cls(HFTokenizer.from_file(str(path)))
        except Exception as e:
            raise ArtifactError(f"Failed to load tokenizer: {e}") from e

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        return self._tokenizer.encode(text, add_special_tokens=add_special_tokens).ids

    def decode(self, token_id: int) -> Optional[str]:
        """Text for one token, or None if the id cannot be decoded."""
        try:
            return self._tokenizer.decode([token_id], skip_special_tokens=False)
        except Exception as e:
            logger.debug(f"Cannot decode token {token_id}: {e}")
            return None

    def token_to_id(self, token: str) -> Optional[int]:
        return self._tokenizer.token_to_id(token)

    def __call__(self, token_id: int) -> Optional[str]:
        return self.decode(token_id)
