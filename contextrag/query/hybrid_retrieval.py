"""
Hybrid retrieval: concurrent vector + lexical search with weighted fusion.

Both searches run as asyncio tasks, each wrapped by the ErrorRecoveryCoordinator
with a per-call timeout, and are joined with a bounded ``asyncio.wait``. A task
still pending at the join timeout is cancelled and the completed source is
used alone (degraded).

Fusion:
    fused = w_v * (vec / max(vec)) + w_l * (lex / max(lex))
with w_v=0.6, w_l=0.4; a single surviving source gets weight 1.0.
Ordering: fused desc, best per-source rank asc, vector before lexical.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from contextrag.providers.base import EmbeddingProvider, LexicalIndex, VectorStore
from contextrag.query.thresholds import ThresholdOptimizer
from contextrag.services.error_recovery import ErrorCategory, ErrorRecoveryCoordinator
from contextrag.shared.config import HybridSearchConfig
from contextrag.shared.errors import RetrievalUnavailableError
from contextrag.shared.models import (
    SOURCE_PRIORITY,
    CandidateChunk,
    RetrievalFilters,
    SourceDescriptor,
    SourceOrigin,
)
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import retrieval_candidates
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)

VECTOR_SOURCE = "vector"
LEXICAL_SOURCE = "lexical"

# Recovery/breaker service names
SERVICE_NAMES = {
    VECTOR_SOURCE: "vector_search",
    LEXICAL_SOURCE: "lexical_search",
}


@dataclass
class RetrievalOutcome:
    candidates: List[CandidateChunk]
    degraded: bool = False
    reasons: List[str] = field(default_factory=list)
    sources_succeeded: List[str] = field(default_factory=list)
    sources_failed: List[str] = field(default_factory=list)
    similarity_threshold: Optional[float] = None
    threshold_relaxed: bool = False
    query_vector: Optional[List[float]] = field(default=None, repr=False)


def max_normalize(scores: Dict[str, float]) -> Dict[str, float]:
    """Divide by the maximum score; non-positive maxima normalize to 0."""
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0:
        return {key: 0.0 for key in scores}
    return {key: max(0.0, value) / top for key, value in scores.items()}


def fusion_sort_key(chunk: CandidateChunk) -> Tuple[float, int, int, str]:
    return (
        -(chunk.fused_score or 0.0),
        chunk.best_rank,
        SOURCE_PRIORITY[chunk.origin],
        chunk.chunk_id,
    )


def _split_metadata(hit: Dict[str, Any]) -> Tuple[str, Optional[str], Dict[str, Any]]:
    metadata = dict(hit.get("metadata") or {})
    text = metadata.pop("text", "") or ""
    metadata.pop("chunk_id", None)
    return text, metadata.get("document_id"), metadata


class HybridRetriever:
    """
    Fan-out retrieval over a vector store and a lexical index.

    Args:
        config: Fusion weights and timeouts
        embedder: Embeds the (original) query for vector search
        vector_store: Vector similarity search
        lexical_index: Keyword search
        recovery: Wraps every provider call
        thresholds: Relaxes the similarity threshold when too few results survive
    """

    def __init__(
        self,
        config: HybridSearchConfig,
        embedder: Optional[EmbeddingProvider],
        vector_store: Optional[VectorStore],
        lexical_index: Optional[LexicalIndex],
        recovery: ErrorRecoveryCoordinator,
        thresholds: Optional[ThresholdOptimizer] = None,
    ):
        self.config = config
        self.embedder = embedder
        self.vector_store = vector_store
        self.lexical_index = lexical_index
        self.recovery = recovery
        self.thresholds = thresholds or ThresholdOptimizer()

    @property
    def per_call_timeout(self) -> float:
        return self.config.per_call_timeout_ms / 1000.0

    async def embed_query(self, query: str, deadline: Deadline) -> List[float]:
        return await self.recovery.execute(
            "embedding",
            lambda: asyncio.to_thread(self.embedder.embed, query),
            timeout=self.per_call_timeout,
            deadline=deadline,
        )

    async def _vector_search(
        self,
        query: str,
        query_vector: Optional[List[float]],
        filters: Dict[str, Any],
        top_k: int,
        deadline: Deadline,
    ) -> Tuple[List[float], List[Dict[str, Any]]]:
        if query_vector is None:
            query_vector = await self.embed_query(query, deadline)
        hits = await self.recovery.execute(
            SERVICE_NAMES[VECTOR_SOURCE],
            lambda: asyncio.to_thread(self.vector_store.search, query_vector, filters, top_k),
            timeout=self.per_call_timeout,
            deadline=deadline,
        )
        return query_vector, hits

    async def _lexical_search(
        self, query: str, filters: Dict[str, Any], top_k: int, deadline: Deadline
    ) -> List[Dict[str, Any]]:
        return await self.recovery.execute(
            SERVICE_NAMES[LEXICAL_SOURCE],
            lambda: asyncio.to_thread(self.lexical_index.search, query, filters, top_k),
            timeout=self.per_call_timeout,
            deadline=deadline,
        )

    def _apply_threshold(
        self, hits: List[Dict[str, Any]], threshold: float
    ) -> Tuple[List[Tuple[int, Dict[str, Any]]], float, bool]:
        """Drop vector hits below ``threshold``, relaxing it once if too few survive."""
        ranked = list(enumerate(hits, start=1))
        kept = [(rank, hit) for rank, hit in ranked if hit["score"] >= threshold]
        relaxed = False
        if len(kept) < self.thresholds.config.min_results:
            new_threshold = self.thresholds.relax_for_results(threshold, len(kept))
            if new_threshold < threshold:
                logger.debug(
                    "similarity_threshold_relaxed",
                    before=threshold,
                    after=new_threshold,
                    survivors=len(kept),
                )
                threshold = new_threshold
                relaxed = True
                kept = [(rank, hit) for rank, hit in ranked if hit["score"] >= threshold]
        return kept, threshold, relaxed

    def fuse(
        self,
        vector_hits: Optional[List[Tuple[int, Dict[str, Any]]]],
        lexical_hits: Optional[List[Dict[str, Any]]],
    ) -> List[CandidateChunk]:
        """
        Merge per-source hits by chunk id and attach ``fused_score``.

        ``None`` for a source means it failed; the other one is weighted 1.0.
        """
        if vector_hits is not None and lexical_hits is not None:
            w_vector, w_lexical = self.config.vector_weight, self.config.lexical_weight
        else:
            w_vector = 1.0 if vector_hits is not None else 0.0
            w_lexical = 1.0 if lexical_hits is not None else 0.0

        chunks: Dict[str, CandidateChunk] = {}
        for rank, hit in vector_hits or []:
            text, document_id, metadata = _split_metadata(hit)
            chunk_id = str(hit["id"])
            chunks[chunk_id] = CandidateChunk(
                chunk_id=chunk_id,
                text=text,
                source=SourceDescriptor(SourceOrigin.VECTOR, chunk_id, document_id),
                similarity_score=float(hit["score"]),
                vector_rank=rank,
                metadata=metadata,
            )

        for rank, hit in enumerate(lexical_hits or [], start=1):
            chunk_id = str(hit["id"])
            existing = chunks.get(chunk_id)
            if existing is not None:
                existing.attach_score("lexical_score", hit["score"])
                existing.lexical_rank = rank
                continue
            text, document_id, metadata = _split_metadata(hit)
            chunks[chunk_id] = CandidateChunk(
                chunk_id=chunk_id,
                text=text,
                source=SourceDescriptor(SourceOrigin.LEXICAL, chunk_id, document_id),
                lexical_score=float(hit["score"]),
                lexical_rank=rank,
                metadata=metadata,
            )

        vec_norm = max_normalize(
            {cid: c.similarity_score for cid, c in chunks.items() if c.similarity_score is not None}
        )
        lex_norm = max_normalize(
            {cid: c.lexical_score for cid, c in chunks.items() if c.lexical_score is not None}
        )

        fused: List[CandidateChunk] = []
        for chunk_id, chunk in chunks.items():
            score = w_vector * vec_norm.get(chunk_id, 0.0) + w_lexical * lex_norm.get(chunk_id, 0.0)
            if score < self.config.min_fused_score:
                continue
            chunk.attach_score("fused_score", score)
            fused.append(chunk)

        fused.sort(key=fusion_sort_key)
        return fused

    async def retrieve(
        self,
        query: str,
        *,
        filters: Optional[RetrievalFilters] = None,
        top_k: int = 20,
        similarity_threshold: float = 0.7,
        lexical_query: Optional[str] = None,
        query_vector: Optional[List[float]] = None,
        enable_vector: bool = True,
        enable_lexical: bool = True,
        deadline: Optional[Deadline] = None,
    ) -> RetrievalOutcome:
        """
        Run vector and lexical search concurrently and fuse the results.

        Args:
            query: Original query (embedded for vector search)
            lexical_query: Expanded query for lexical search (defaults to ``query``)
            query_vector: Pre-computed embedding of ``query``

        Raises:
            RetrievalUnavailableError: Every enabled source failed
        """
        deadline = deadline or Deadline.unbounded()
        provider_filters = (filters or RetrievalFilters()).to_provider_filters()
        start_time = time.time()

        coroutines = {}
        if enable_vector and self.vector_store is not None:
            if query_vector is None and self.embedder is None:
                logger.warning("vector_search_skipped", reason="no embedding provider")
            else:
                coroutines[VECTOR_SOURCE] = self._vector_search(
                    query, query_vector, provider_filters, top_k, deadline
                )
        if enable_lexical and self.lexical_index is not None:
            coroutines[LEXICAL_SOURCE] = self._lexical_search(
                lexical_query or query, provider_filters, top_k, deadline
            )
        if not coroutines:
            return RetrievalOutcome(candidates=[], similarity_threshold=similarity_threshold)

        tasks = {name: asyncio.create_task(coro) for name, coro in coroutines.items()}
        join_timeout = deadline.cap(self.config.search_timeout_ms / 1000.0)
        _, pending = await asyncio.wait(tasks.values(), timeout=join_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, Any] = {}
        causes: Dict[str, BaseException] = {}
        for name, task in tasks.items():
            service = SERVICE_NAMES[name]
            if task in pending:
                error = asyncio.TimeoutError(
                    f"{service} still pending at join timeout ({join_timeout}s)"
                )
                causes[name] = error
                self.recovery.record_degradation(
                    service, error, category=ErrorCategory.TIMEOUT, reason="join_timeout"
                )
            elif task.exception() is not None:
                error = task.exception()
                causes[name] = error
                self.recovery.record_degradation(service, error, reason="source_failed")
            else:
                results[name] = task.result()

        if not results:
            logger.error(
                "retrieval_unavailable",
                failed_sources=list(causes),
                errors={name: str(err) for name, err in causes.items()},
            )
            raise RetrievalUnavailableError(causes)

        outcome = RetrievalOutcome(
            candidates=[],
            sources_succeeded=list(results),
            sources_failed=list(causes),
            similarity_threshold=similarity_threshold,
        )
        for name, error in causes.items():
            outcome.degraded = True
            outcome.reasons.append(f"{name}_search_failed: {type(error).__name__}")

        vector_hits = None
        if VECTOR_SOURCE in results:
            outcome.query_vector, raw_hits = results[VECTOR_SOURCE]
            vector_hits, threshold, relaxed = self._apply_threshold(raw_hits, similarity_threshold)
            outcome.similarity_threshold = threshold
            outcome.threshold_relaxed = relaxed
        lexical_hits = results.get(LEXICAL_SOURCE)

        outcome.candidates = self.fuse(vector_hits, lexical_hits)
        retrieval_candidates.labels(stage="fused").observe(len(outcome.candidates))

        logger.info(
            "hybrid_retrieval_completed",
            vector_hits=len(vector_hits) if vector_hits is not None else None,
            lexical_hits=len(lexical_hits) if lexical_hits is not None else None,
            fused=len(outcome.candidates),
            degraded=outcome.degraded,
            threshold=outcome.similarity_threshold,
            time_ms=round((time.time() - start_time) * 1000, 2),
        )
        return outcome
