"""
Jina AI rerank provider (jina-reranker models).

Cross-attention scoring of (query, candidate) pairs. Retries and circuit
breaking are handled by the ErrorRecoveryCoordinator around ``score``.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from contextrag.providers.base import post_json, record_provider_call
from contextrag.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)


class JinaRerankProvider:
    API_URL = "https://api.jina.ai/v1/rerank"
    service = "rerank"

    def __init__(
        self,
        model: str = "jina-reranker-v2-base-multilingual",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError(
                "JINA_API_KEY required for jina-ai reranker. "
                "Set JINA_API_KEY environment variable or pass api_key parameter."
            )
        self._model_id = model
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )
        logger.info("JinaRerankProvider initialized: model=%s", model)

    @property
    def model_id(self) -> str:
        return self._model_id

    def close(self) -> None:
        self._client.close()

    def score(self, query: str, candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not candidates:
            return []
        for i, cand in enumerate(candidates):
            if "text" not in cand or "id" not in cand:
                raise ValueError(f"Candidate {i} must have 'id' and 'text' keys")

        with record_provider_call("jina", "rerank"):
            data = post_json(
                self._client,
                self.service,
                self.API_URL,
                {
                    "model": self._model_id,
                    "query": query,
                    "documents": [cand["text"] for cand in candidates],
                    "top_n": len(candidates),
                    "return_documents": False,
                },
            )

        scored = []
        for result in data.get("results", []):
            index = result.get("index")
            if index is None:
                index = result.get("document_index")
            try:
                index = int(index)
            except (TypeError, ValueError):
                index = None
            if index is None or not 0 <= index < len(candidates):
                logger.warning("Jina rerank response missing valid index: %s", result)
                continue
            scored.append(
                {
                    "id": candidates[index]["id"],
                    "score": float(result.get("relevance_score", 0.0)),
                }
            )
        return scored
