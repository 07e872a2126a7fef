"""
Reranking of fused candidates.

Strategies:
- cross_encoder: pairwise (query, chunk) scores from a RerankProvider, batched
- rrf: reciprocal rank fusion over per-source ranks, sum(1 / (k + rank))
- score: local blend of semantic, lexical, length and position signals

Any cross_encoder failure falls back to rrf; reranking never fails a request.
Sorting is stable, so equal rerank scores keep the fused order.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from contextrag.providers.base import RerankProvider
from contextrag.services.error_recovery import ErrorRecoveryCoordinator
from contextrag.shared.config import RerankerConfig
from contextrag.shared.models import CandidateChunk
from contextrag.shared.observability import get_logger
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)

SERVICE = "rerank"


@dataclass
class RerankOutcome:
    candidates: List[CandidateChunk]
    strategy: str
    fallback_reason: Optional[str] = None


def rrf_score(chunk: CandidateChunk, k: int) -> float:
    return sum(
        1.0 / (k + rank)
        for rank in (chunk.vector_rank, chunk.lexical_rank, chunk.web_rank)
        if rank is not None
    )


def length_score(text: str) -> float:
    """Shorter texts score higher: 1 / (1 + log10(max(1, len / 100)))."""
    score = 1.0 / (1.0 + math.log10(max(1.0, len(text) / 100.0)))
    return min(1.0, max(0.0, score))


def position_score(index: int, total: int) -> float:
    return 0.0 if total == 0 else 1.0 - index / total


class Reranker:
    def __init__(
        self,
        config: Optional[RerankerConfig] = None,
        provider: Optional[RerankProvider] = None,
        recovery: Optional[ErrorRecoveryCoordinator] = None,
    ):
        self.config = config or RerankerConfig()
        self.provider = provider
        self.recovery = recovery or ErrorRecoveryCoordinator()

    def _rrf_scores(self, candidates: List[CandidateChunk]) -> Dict[str, float]:
        return {c.chunk_id: rrf_score(c, self.config.rrf_k) for c in candidates}

    def _blend_scores(self, candidates: List[CandidateChunk]) -> Dict[str, float]:
        weights = self.config.score_weights
        lexical = [c.lexical_score for c in candidates if c.lexical_score is not None]
        lexical_max = max(lexical, default=0.0)
        total = len(candidates)
        scores = {}
        for index, chunk in enumerate(candidates):
            semantic = min(1.0, max(0.0, chunk.similarity_score or 0.0))
            keyword = (chunk.lexical_score or 0.0) / lexical_max if lexical_max > 0 else 0.0
            scores[chunk.chunk_id] = (
                semantic * weights.get("semantic", 0.0)
                + keyword * weights.get("lexical", 0.0)
                + length_score(chunk.text) * weights.get("length", 0.0)
                + position_score(index, total) * weights.get("position", 0.0)
            )
        return scores

    async def _cross_encoder_scores(
        self, query: str, candidates: List[CandidateChunk], deadline: Deadline
    ) -> Dict[str, float]:
        if self.provider is None:
            raise RuntimeError("cross_encoder strategy requires a rerank provider")
        size = self.config.batch_size
        scores: Dict[str, float] = {}
        for start in range(0, len(candidates), size):
            batch = [{"id": c.chunk_id, "text": c.text} for c in candidates[start : start + size]]
            results = await self.recovery.execute(
                SERVICE,
                lambda batch=batch: asyncio.to_thread(self.provider.score, query, batch),
                timeout=self.config.timeout_ms / 1000.0,
                deadline=deadline,
            )
            for item in results:
                scores[str(item["id"])] = float(item["score"])
        missing = [c.chunk_id for c in candidates if c.chunk_id not in scores]
        if missing:
            raise ValueError(f"rerank provider returned no score for {len(missing)} candidates")
        return scores

    async def rerank(
        self,
        query: str,
        candidates: List[CandidateChunk],
        deadline: Optional[Deadline] = None,
    ) -> RerankOutcome:
        """Attach ``rerank_score`` to (at most ``max_candidates``) candidates and reorder."""
        deadline = deadline or Deadline.unbounded()
        bounded = list(candidates[: self.config.max_candidates])
        strategy = self.config.strategy
        fallback_reason = None

        if not bounded:
            return RerankOutcome(candidates=[], strategy=strategy)

        if strategy == "cross_encoder":
            try:
                scores = await self._cross_encoder_scores(query, bounded, deadline)
            except Exception as e:
                logger.warning(
                    "rerank_fallback_to_rrf",
                    error=str(e),
                    error_type=type(e).__name__,
                    candidates=len(bounded),
                )
                self.recovery.record_degradation(SERVICE, e, reason="rrf_fallback")
                strategy = "rrf"
                fallback_reason = f"cross_encoder failed: {type(e).__name__}"
                scores = self._rrf_scores(bounded)
        elif strategy == "score":
            scores = self._blend_scores(bounded)
        else:
            scores = self._rrf_scores(bounded)

        for chunk in bounded:
            chunk.attach_score("rerank_score", scores[chunk.chunk_id])
        bounded.sort(key=lambda c: -(c.rerank_score or 0.0))

        logger.debug(
            "candidates_reranked",
            strategy=strategy,
            input=len(candidates),
            output=len(bounded),
        )
        return RerankOutcome(candidates=bounded, strategy=strategy, fallback_reason=fallback_reason)
