"""
Tokenizer service for token counting and truncation.

Counts must match the downstream language model, since the assembled context is
budgeted in that model's tokens. Two backends:
- tiktoken (default): OpenAI BPE encodings, ``cl100k_base`` unless configured
- hf: HuggingFace AutoTokenizer for non-OpenAI models (optional ``transformers``)
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import tiktoken

from contextrag.shared.config import ContextConfig

logger = logging.getLogger(__name__)


class TokenizerBackend(ABC):
    """Abstract base class for tokenizer backends."""

    name: str = "abstract"

    @abstractmethod
    def encode(self, text: str) -> List[int]:
        """Encode text to token IDs."""

    @abstractmethod
    def decode(self, token_ids: List[int]) -> str:
        """Decode token IDs back to text."""

    def count_tokens(self, text: str) -> int:
        return len(self.encode(text))


class TiktokenBackend(TokenizerBackend):
    """tiktoken BPE backend; loads the encoding once at construction."""

    name = "tiktoken"

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)
        logger.info(
            "tiktoken_backend_loaded", extra={"encoding": encoding_name}
        )

    def encode(self, text: str) -> List[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, token_ids: List[int]) -> str:
        return self._encoding.decode(token_ids)


class HuggingFaceTokenizerBackend(TokenizerBackend):
    """
    HuggingFace local tokenizer backend.

    ``transformers`` is imported lazily (install the ``hf`` extra). The model is
    loaded from HF_CACHE; TRANSFORMERS_OFFLINE=true forbids downloads.
    """

    name = "huggingface"

    def __init__(self, *, model_id: str):
        try:
            from transformers import AutoTokenizer
        except ImportError as e:
            raise RuntimeError(
                "HuggingFace tokenizer backend requires the 'transformers' package "
                "(pip install contextrag[hf])"
            ) from e

        cache_dir = os.getenv("HF_CACHE")
        offline = os.getenv("TRANSFORMERS_OFFLINE", "false").lower() == "true"
        logger.info(
            "Loading HuggingFace tokenizer",
            extra={"hf_model_id": model_id, "hf_cache": cache_dir, "hf_offline": offline},
        )
        try:
            self.tokenizer = AutoTokenizer.from_pretrained(
                model_id,
                cache_dir=cache_dir,
                local_files_only=offline,
            )
        except OSError as e:
            raise RuntimeError(
                f"HuggingFace tokenizer {model_id!r} could not be loaded: {e}"
            ) from e
        self.model_id = model_id

    def encode(self, text: str) -> List[int]:
        return self.tokenizer.encode(text, add_special_tokens=False)

    def decode(self, token_ids: List[int]) -> str:
        return self.tokenizer.decode(token_ids, skip_special_tokens=True)


class TokenizerService:
    """Token counting and truncation on top of a TokenizerBackend."""

    def __init__(self, backend: TokenizerBackend):
        self.backend = backend
        self.backend_name = backend.name

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return self.backend.count_tokens(text)

    def count_tokens_batch(self, texts: List[str]) -> int:
        return sum(self.count_tokens(text) for text in texts)

    def truncate_to_token_limit(self, text: str, max_tokens: int) -> str:
        """
        Truncate text to at most ``max_tokens`` tokens.

        Decoding a prefix can re-tokenize to a slightly different count, so the
        prefix is shortened until the decoded text fits.
        """
        if max_tokens <= 0:
            return ""
        tokens = self.backend.encode(text)
        if len(tokens) <= max_tokens:
            return text

        limit = max_tokens
        truncated = self.backend.decode(tokens[:limit])
        while limit > 0 and self.count_tokens(truncated) > max_tokens:
            limit -= 1
            truncated = self.backend.decode(tokens[:limit])
        return truncated


def create_tokenizer_service(config: Optional[ContextConfig] = None) -> TokenizerService:
    """
    Factory function to create TokenizerService from context configuration.

    Raises:
        ValueError: If the backend name is invalid
        RuntimeError: If the backend cannot be initialized
    """
    config = config or ContextConfig()
    backend_name = (os.getenv("TOKENIZER_BACKEND") or config.tokenizer_backend).lower()

    if backend_name == "tiktoken":
        backend: TokenizerBackend = TiktokenBackend(config.tokenizer_encoding)
    elif backend_name == "hf":
        if not config.tokenizer_model_id:
            raise ValueError("context.tokenizer_model_id is required for the hf backend")
        backend = HuggingFaceTokenizerBackend(model_id=config.tokenizer_model_id)
    else:
        raise ValueError(
            f"Invalid tokenizer backend: {backend_name}. Must be 'tiktoken' or 'hf'."
        )

    return TokenizerService(backend)
