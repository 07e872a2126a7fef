"""Live web search as an additional, optional candidate source."""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from contextrag.providers.base import WebSearchProvider
from contextrag.services.error_recovery import ErrorRecoveryCoordinator
from contextrag.shared.config import HybridSearchConfig, WebSearchConfig
from contextrag.shared.models import CandidateChunk, SourceDescriptor, SourceOrigin
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import retrieval_candidates
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)

SERVICE = "web_search"


def web_chunk_id(url: str, position: int) -> str:
    material = url or f"position-{position}"
    return "web:" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


@dataclass
class WebSearchOutcome:
    candidates: List[CandidateChunk] = field(default_factory=list)
    degraded: bool = False
    reason: Optional[str] = None


class WebSearchStage:
    """
    Turns web search results into ``origin=web`` candidates.

    Scores are max-normalized and scaled by ``web_weight`` into ``fused_score``
    so web and document candidates share one ordering. Any failure yields an
    empty outcome flagged as degraded.
    """

    def __init__(
        self,
        hybrid_config: HybridSearchConfig,
        web_config: WebSearchConfig,
        provider: Optional[WebSearchProvider],
        recovery: ErrorRecoveryCoordinator,
    ):
        self.hybrid_config = hybrid_config
        self.web_config = web_config
        self.provider = provider
        self.recovery = recovery

    @property
    def available(self) -> bool:
        return self.web_config.enabled and self.provider is not None

    def to_candidates(self, results: List[Dict[str, Any]]) -> List[CandidateChunk]:
        scores = [max(0.0, float(r.get("score") or 0.0)) for r in results]
        top = max(scores, default=0.0)
        n = len(results)
        candidates: List[CandidateChunk] = []
        seen = set()
        for position, (result, score) in enumerate(zip(results, scores), start=1):
            chunk_id = web_chunk_id(result.get("url", ""), position)
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            # Providers without scores: fall back to positional decay
            normalized = score / top if top > 0 else 1.0 - (position - 1) / n
            candidates.append(
                CandidateChunk(
                    chunk_id=chunk_id,
                    text=result.get("content", ""),
                    source=SourceDescriptor(SourceOrigin.WEB, result.get("url", chunk_id)),
                    lexical_score=score,
                    fused_score=normalized * self.hybrid_config.web_weight,
                    web_rank=position,
                    metadata={"url": result.get("url", ""), "title": result.get("title", "")},
                )
            )
        return candidates

    async def search(
        self, query: str, max_results: int, deadline: Optional[Deadline] = None
    ) -> WebSearchOutcome:
        if not self.available or max_results <= 0:
            return WebSearchOutcome()

        deadline = deadline or Deadline.unbounded()
        options = {
            "max_results": max_results,
            "search_depth": self.web_config.search_depth,
        }
        try:
            response = await self.recovery.execute(
                SERVICE,
                lambda: asyncio.to_thread(self.provider.search, query, options),
                timeout=self.hybrid_config.web_timeout_ms / 1000.0,
                deadline=deadline,
            )
        except Exception as e:
            logger.warning(
                "web_search_failed",
                query=query[:100],
                error=str(e),
                error_type=type(e).__name__,
            )
            self.recovery.record_degradation(SERVICE, e, reason="empty_web_results")
            return WebSearchOutcome(
                degraded=True, reason=f"web_search_failed: {type(e).__name__}"
            )

        results = list(response.get("results") or [])[:max_results]
        candidates = self.to_candidates(results)
        retrieval_candidates.labels(stage="web").observe(len(candidates))
        logger.info("web_search_completed", results=len(candidates))
        return WebSearchOutcome(candidates=candidates)
