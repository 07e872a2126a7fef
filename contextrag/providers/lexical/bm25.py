"""
In-memory BM25 (Okapi) lexical index.

Scoring is delegated to ``rank_bm25.BM25Okapi``; this module owns the id
mapping, payloads and filters. The Okapi model is rebuilt lazily on the first
search after the corpus changes.
"""

import re
import threading
from typing import Any, Dict, List, Optional

from rank_bm25 import BM25Okapi

from contextrag.providers.base import matches_filters

_TOKEN_RE = re.compile(r"\w+")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class BM25Index:
    """
    Okapi BM25 over an in-process corpus.

    Args:
        k1: Term frequency saturation
        b: Length normalization strength
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._tokens: Dict[str, List[str]] = {}
        self._bm25: Optional[BM25Okapi] = None
        self._ids: List[str] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._docs)

    def add_documents(self, documents: List[Dict[str, Any]]) -> None:
        """Index ``[{"id", "text", "metadata"?}]``; re-adding an id replaces it."""
        with self._lock:
            for doc in documents:
                self._tokens[doc["id"]] = tokenize(doc["text"])
                self._docs[doc["id"]] = {
                    **doc.get("metadata", {}),
                    "text": doc["text"],
                    "chunk_id": doc["id"],
                }
            self._bm25 = None

    def remove(self, ids: List[str]) -> None:
        with self._lock:
            for chunk_id in ids:
                self._tokens.pop(chunk_id, None)
                self._docs.pop(chunk_id, None)
            self._bm25 = None

    def _model(self) -> BM25Okapi:
        # Caller holds the lock
        if self._bm25 is None:
            self._ids = list(self._tokens)
            self._bm25 = BM25Okapi(
                [self._tokens[chunk_id] for chunk_id in self._ids], k1=self.k1, b=self.b
            )
        return self._bm25

    def search(
        self, query: str, filters: Dict[str, Any], top_k: int
    ) -> List[Dict[str, Any]]:
        terms = tokenize(query)
        with self._lock:
            if not terms or not self._docs:
                return []
            scores = self._model().get_scores(list(dict.fromkeys(terms)))
            scored = []
            for chunk_id, score in zip(self._ids, scores):
                if not score > 0:
                    continue
                payload = self._docs[chunk_id]
                if not matches_filters(payload, filters):
                    continue
                scored.append((float(score), chunk_id, dict(payload)))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [
            {"id": chunk_id, "score": score, "metadata": payload}
            for score, chunk_id, payload in scored[:top_k]
        ]
