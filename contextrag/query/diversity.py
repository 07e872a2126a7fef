"""Maximal marginal relevance (MMR) diversity filter."""

from typing import List

import numpy as np

from contextrag.shared.config import DiversityConfig
from contextrag.shared.models import CandidateChunk
from contextrag.shared.observability import get_logger

logger = get_logger(__name__)


def relevance_of(chunk: CandidateChunk) -> float:
    if chunk.rerank_score is not None:
        return chunk.rerank_score
    if chunk.fused_score is not None:
        return chunk.fused_score
    return chunk.best_score


def min_max(values: np.ndarray) -> np.ndarray:
    if values.size == 0:
        return values
    low, high = float(values.min()), float(values.max())
    if high == low:
        return np.ones_like(values)
    return (values - low) / (high - low)


class DiversityFilter:
    """
    Picks ``target`` candidates maximizing
    ``lambda * relevance - (1 - lambda) * max cosine to the already selected``.

    Input order is the rank order; ties go to the earlier candidate. Without
    an embedding on every candidate the filter is skipped and the top
    ``target`` by relevance are returned.
    """

    def __init__(self, config: DiversityConfig = None):
        self.config = config or DiversityConfig()

    def select(self, candidates: List[CandidateChunk], target: int) -> List[CandidateChunk]:
        if target <= 0 or not candidates:
            return []
        if not self.config.enabled or len(candidates) <= target:
            return list(candidates[:target])
        if any(c.embedding is None for c in candidates):
            logger.debug("diversity_filter_skipped", reason="missing embeddings")
            ranked = sorted(
                enumerate(candidates), key=lambda item: (-relevance_of(item[1]), item[0])
            )
            return [c for _, c in ranked[:target]]

        lam = self.config.lambda_
        relevance = min_max(np.asarray([relevance_of(c) for c in candidates], dtype=float))
        vectors = np.asarray([c.embedding for c in candidates], dtype=float)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        unit = vectors / norms
        similarity = unit @ unit.T

        selected: List[int] = []
        remaining = list(range(len(candidates)))
        max_sim = np.zeros(len(candidates))
        while remaining and len(selected) < target:
            best_index, best_value = remaining[0], -np.inf
            for i in remaining:
                value = lam * relevance[i] - (1 - lam) * max_sim[i]
                # Strict comparison keeps the earlier rank on ties
                if value > best_value:
                    best_index, best_value = i, value
            selected.append(best_index)
            remaining.remove(best_index)
            max_sim = np.maximum(max_sim, similarity[best_index])

        logger.debug(
            "diversity_filter_applied",
            input=len(candidates),
            output=len(selected),
            lambda_=lam,
        )
        return [candidates[i] for i in selected]
