"""In-process vector store backed by a numpy matrix (cosine similarity)."""

import threading
from typing import Any, Dict, List

import numpy as np

from contextrag.providers.base import matches_filters


class InMemoryVectorStore:
    """
    Exact cosine search over all stored vectors.

    Suitable for tests and small corpora; rows are kept L2-normalized so a
    query is one matrix-vector product.
    """

    def __init__(self):
        self._ids: List[str] = []
        self._payloads: List[Dict[str, Any]] = []
        self._matrix = np.zeros((0, 0), dtype=np.float32)
        self._lock = threading.Lock()

    @staticmethod
    def _normalize(vectors: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms

    def __len__(self) -> int:
        return len(self._ids)

    def upsert(self, points: List[Dict[str, Any]]) -> None:
        if not points:
            return
        with self._lock:
            rows = self._normalize(
                np.asarray([p["vector"] for p in points], dtype=np.float32)
            )
            if self._matrix.size and rows.shape[1] != self._matrix.shape[1]:
                raise ValueError(
                    f"Vector dimension {rows.shape[1]} does not match store "
                    f"dimension {self._matrix.shape[1]}"
                )
            index = {chunk_id: i for i, chunk_id in enumerate(self._ids)}
            new_rows = []
            for point, row in zip(points, rows):
                payload = {**point.get("metadata", {}), "chunk_id": point["id"]}
                if point["id"] in index:
                    i = index[point["id"]]
                    self._matrix[i] = row
                    self._payloads[i] = payload
                else:
                    index[point["id"]] = len(self._ids)
                    self._ids.append(point["id"])
                    self._payloads.append(payload)
                    new_rows.append(row)
            if new_rows:
                stacked = np.vstack(new_rows)
                self._matrix = (
                    stacked if not self._matrix.size else np.vstack([self._matrix, stacked])
                )

    def delete(self, ids: List[str]) -> None:
        doomed = set(ids)
        with self._lock:
            keep = [i for i, chunk_id in enumerate(self._ids) if chunk_id not in doomed]
            self._ids = [self._ids[i] for i in keep]
            self._payloads = [self._payloads[i] for i in keep]
            self._matrix = self._matrix[keep] if keep else np.zeros((0, 0), dtype=np.float32)

    def search(
        self, vector: List[float], filters: Dict[str, Any], top_k: int
    ) -> List[Dict[str, Any]]:
        with self._lock:
            if not self._ids:
                return []
            query = self._normalize(np.asarray(vector, dtype=np.float32))
            scores = self._matrix @ query
            order = np.argsort(-scores, kind="stable")
            hits = []
            for i in order:
                payload = self._payloads[i]
                if not matches_filters(payload, filters):
                    continue
                hits.append(
                    {"id": self._ids[i], "score": float(scores[i]), "metadata": dict(payload)}
                )
                if len(hits) >= top_k:
                    break
            return hits
