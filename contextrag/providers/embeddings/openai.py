"""OpenAI-compatible embeddings provider (``POST /embeddings``)."""

import logging
from typing import List, Optional

import httpx

from contextrag.providers.base import post_json, record_provider_call
from contextrag.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """
    Embeddings over any OpenAI-compatible endpoint.

    Args:
        api_key: Bearer token; required unless an authenticated ``client`` is given
        model: Embedding model id
        base_url: API root, e.g. ``https://api.openai.com/v1``
        timeout: Request timeout in seconds
        client: Pre-built httpx client (tests inject a MockTransport client)
    """

    service = "embedding"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY required for the openai embedding provider"
            )
        self._model_id = model
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )
        logger.info("OpenAIEmbeddingProvider initialized: model=%s", model)

    @property
    def model_id(self) -> str:
        return self._model_id

    def close(self) -> None:
        self._client.close()

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        with record_provider_call("openai", "embed"):
            data = post_json(
                self._client,
                self.service,
                "/embeddings",
                {"model": self._model_id, "input": texts, "encoding_format": "float"},
            )
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        if len(items) != len(texts):
            raise ValueError(
                f"Embedding count mismatch: sent {len(texts)}, received {len(items)}"
            )
        return [[float(x) for x in item["embedding"]] for item in items]
