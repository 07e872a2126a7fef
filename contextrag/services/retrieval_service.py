"""
RetrievalService: query -> ContextWindow.

Pipeline (per request, wrapped by the context cache):

    analyze -> thresholds -> expand -> {hybrid retrieval || web search}
            -> rerank -> embed missing -> diversity (MMR) -> dedup -> assemble

Every external call goes through the ErrorRecoveryCoordinator. A failed stage
applies its degradation policy (expander: original query; web: no results;
retriever: single source; reranker: RRF) and the reason is recorded on the
window. Degraded windows are not cached.
"""

import asyncio
import math
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from contextrag import __version__
from contextrag.providers.base import (
    EmbeddingProvider,
    LanguageModelProvider,
    LexicalIndex,
    RerankProvider,
    VectorStore,
    WebSearchProvider,
)
from contextrag.providers.factory import ProviderFactory
from contextrag.providers.tokenizer_service import TokenizerService, create_tokenizer_service
from contextrag.query.analyzer import QueryAnalyzer
from contextrag.query.context_assembly import (
    ContextAssembler,
    format_context_for_prompt,
    plan_token_budget,
)
from contextrag.query.dedup import Deduplicator
from contextrag.query.diversity import DiversityFilter
from contextrag.query.expansion import ExpandedQuery, QueryExpander
from contextrag.query.hybrid_retrieval import HybridRetriever, RetrievalOutcome, fusion_sort_key
from contextrag.query.reranking import Reranker
from contextrag.query.thresholds import ThresholdOptimizer
from contextrag.query.web_search import WebSearchOutcome, WebSearchStage
from contextrag.services.cache_layer import (
    NAMESPACE_CONTEXT,
    CacheLayer,
    InvalidationResult,
    InvalidationTrigger,
)
from contextrag.services.error_recovery import ErrorRecoveryCoordinator
from contextrag.services.worker_pool import WorkerPool
from contextrag.shared.config import Config, Settings, get_config, get_settings
from contextrag.shared.connections import ConnectionManager, get_connection_manager
from contextrag.shared.errors import RetrievalUnavailableError
from contextrag.shared.models import CandidateChunk, ContextWindow, RetrievalOptions, TokenUsage
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import (
    retrieval_degraded_total,
    retrieval_duration_seconds,
    retrieval_requests_total,
    retrieval_stage_duration_seconds,
)
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)


@contextmanager
def _stage(name: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        retrieval_stage_duration_seconds.labels(stage=name).observe(
            time.perf_counter() - start
        )


class RetrievalService:
    """
    Composes the pipeline stages around injected providers.

    Args:
        config: Full configuration
        tokenizer: Token counter matching the downstream model
        embedder: Query/candidate embeddings
        vector_store: Vector similarity search
        lexical_index: Keyword search
        llm: Language model (query expansion)
        rerank_provider: Cross-encoder scorer (cross_encoder strategy)
        web_provider: Web search
        cache: Versioned cache (an L1-only cache is built when omitted)
        recovery: Shared error recovery coordinator
    """

    def __init__(
        self,
        config: Config,
        *,
        tokenizer: TokenizerService,
        embedder: Optional[EmbeddingProvider] = None,
        vector_store: Optional[VectorStore] = None,
        lexical_index: Optional[LexicalIndex] = None,
        llm: Optional[LanguageModelProvider] = None,
        rerank_provider: Optional[RerankProvider] = None,
        web_provider: Optional[WebSearchProvider] = None,
        cache: Optional[CacheLayer] = None,
        recovery: Optional[ErrorRecoveryCoordinator] = None,
    ):
        self.config = config
        self.tokenizer = tokenizer
        self.embedder = embedder
        self.recovery = recovery or ErrorRecoveryCoordinator(config.recovery)
        self.cache = cache or CacheLayer(config.cache)
        self._providers = [
            p for p in (embedder, vector_store, lexical_index, llm, rerank_provider, web_provider)
            if p is not None
        ]

        self.analyzer = QueryAnalyzer(config.query_analysis)
        self.thresholds = ThresholdOptimizer(config.thresholds)
        self.expander = QueryExpander(config.expansion, llm, self.recovery, self.cache)
        self.retriever = HybridRetriever(
            config.hybrid, embedder, vector_store, lexical_index, self.recovery, self.thresholds
        )
        self.web = WebSearchStage(config.hybrid, config.web_search, web_provider, self.recovery)
        self.reranker = Reranker(config.reranker, rerank_provider, self.recovery)
        self.diversity = DiversityFilter(config.diversity)
        self.deduplicator = Deduplicator(config.deduplication)
        self.assembler = ContextAssembler(config.context, tokenizer)
        self.worker_pool = WorkerPool(self.run_job, config.workers)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def retrieve_context(
        self, query: str, options: Optional[RetrievalOptions] = None
    ) -> ContextWindow:
        """
        Assemble the context window for ``query``.

        Raises:
            RetrievalUnavailableError: No document source and no web result available
        """
        options = options or RetrievalOptions()
        deadline = Deadline(options.deadline_ms)
        start_time = time.time()

        key = None
        if self.cache.enabled:
            key = self.cache.make_key(
                NAMESPACE_CONTEXT, query, params=options.cache_params(), filters=options.filters
            )
            cached = await self.cache.aget(key)
            if cached is not None:
                retrieval_requests_total.labels(status="cache_hit").inc()
                logger.info("context_cache_hit", query=query[:100])
                window = ContextWindow.from_dict(cached)
                window.query = query
                return window

        try:
            window = await self._run_pipeline(query, options, deadline)
        except Exception as e:
            retrieval_requests_total.labels(status="error").inc()
            logger.error(
                "retrieval_failed",
                query=query[:100],
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        if window.degraded:
            retrieval_requests_total.labels(status="degraded").inc()
            for reason in window.degradation_reasons:
                retrieval_degraded_total.labels(reason=reason.split(":")[0]).inc()
        else:
            retrieval_requests_total.labels(status="success").inc()
            if key is not None:
                document_ids = set(options.filters.document_ids)
                document_ids.update(c.document_id for c in window.chunks if c.document_id)
                await self.cache.aset(
                    key,
                    window.to_dict(),
                    ttl_seconds=self.config.cache.context_ttl_seconds,
                    document_ids=document_ids,
                )

        elapsed = time.time() - start_time
        retrieval_duration_seconds.observe(elapsed)
        logger.info(
            "context_retrieved",
            query=query[:100],
            chunks=len(window.chunks),
            tokens=window.token_total,
            degraded=window.degraded,
            time_ms=round(elapsed * 1000, 2),
        )
        return window

    async def _run_pipeline(
        self, query: str, options: RetrievalOptions, deadline: Deadline
    ) -> ContextWindow:
        qa = self.config.query_analysis
        min_chunks = options.min_chunks or qa.min_chunks
        max_chunks = options.max_chunks or qa.max_chunks
        if min_chunks > max_chunks:
            raise ValueError(f"min_chunks ({min_chunks}) must not exceed max_chunks ({max_chunks})")

        with _stage("analyze"):
            analysis = self.analyzer.analyze(query, min_chunks, max_chunks)
            rationale = [analysis.reasoning]
            if options.use_adaptive_context_selection:
                target = analysis.target_chunk_count
            else:
                target = max(min_chunks, min(max_chunks, qa.default_chunks))
                rationale.append(f"Adaptive selection off; using default chunk count {target}")
            analysis.target_chunk_count = target

            web_enabled = options.enable_web_search and self.web.available
            balance = self.analyzer.plan_source_balance(
                analysis,
                max_document_chunks=options.max_document_chunks,
                max_web_results=options.max_web_results,
                web_enabled=web_enabled,
                adaptive=options.use_adaptive_context_selection,
            )
            decision = self.thresholds.thresholds_for(analysis.query_type, target)
            rationale.extend([balance.reasoning, decision.reasoning])

        expansion_enabled = (
            options.enable_query_expansion
            if options.enable_query_expansion is not None
            else self.config.expansion.enabled
        )
        with _stage("expand"):
            if expansion_enabled:
                expanded = await self.expander.expand(query, deadline=deadline)
                rationale.append(f"Expansion: {expanded.rationale}")
            else:
                expanded = ExpandedQuery.passthrough(query)

        reasons: List[str] = []
        with _stage("retrieve"):
            document_outcome, web_outcome = await self._gather_sources(
                query, expanded, options, decision, balance.web_results, deadline
            )
        candidates: List[CandidateChunk] = []
        if document_outcome is not None:
            candidates.extend(document_outcome.candidates)
            reasons.extend(document_outcome.reasons)
        candidates.extend(web_outcome.candidates)
        if web_outcome.reason:
            reasons.append(web_outcome.reason)
        candidates.sort(key=fusion_sort_key)

        limit = min(max_chunks, balance.document_chunks + balance.web_results)

        if deadline.expired():
            reasons.append("deadline_exceeded_before_rerank")
            selected = candidates
        else:
            with _stage("rerank"):
                reranked = await self.reranker.rerank(query, candidates, deadline)
                candidates = reranked.candidates
                rationale.append(f"Rerank strategy: {reranked.strategy}")
                if reranked.fallback_reason:
                    reasons.append(f"rerank_fallback_rrf: {reranked.fallback_reason}")

            with _stage("diversity"):
                pool_size = math.ceil(limit * self.config.diversity.candidate_multiplier)
                await self._embed_missing(candidates, deadline)
                selected = self.diversity.select(candidates, pool_size)

        with _stage("dedup"):
            deduped = self.deduplicator.deduplicate(selected)

        budget = plan_token_budget(self.config.context, options.token_budget)
        with _stage("assemble"):
            window = self.assembler.assemble(
                query,
                deduped,
                token_budget=budget.context_tokens,
                target_chunk_count=target,
                min_chunks=min_chunks,
                max_chunks=max_chunks,
                max_document_chunks=balance.document_chunks,
                max_web_results=balance.web_results,
                response_tokens=budget.response_tokens,
                deadline=deadline,
                rationale=rationale,
            )

        if expanded.expansion_applied:
            window.expanded_query = expanded.expanded_query
            window.expansion_applied = True
        for reason in reasons:
            window.mark_degraded(reason)
        return window

    async def _gather_sources(
        self,
        query: str,
        expanded: ExpandedQuery,
        options: RetrievalOptions,
        decision: Any,
        web_results: int,
        deadline: Deadline,
    ):
        async def documents() -> Optional[RetrievalOutcome]:
            if not options.enable_document_search:
                return None
            return await self.retriever.retrieve(
                query,
                filters=options.filters,
                top_k=decision.top_k,
                similarity_threshold=decision.similarity_threshold,
                lexical_query=expanded.expanded_query,
                enable_vector=options.enable_vector_search,
                deadline=deadline,
            )

        async def web() -> WebSearchOutcome:
            if web_results <= 0:
                return WebSearchOutcome()
            return await self.web.search(query, web_results, deadline)

        document_result, web_outcome = await asyncio.gather(
            documents(), web(), return_exceptions=True
        )
        if isinstance(web_outcome, BaseException):
            raise web_outcome
        if isinstance(document_result, RetrievalUnavailableError):
            if not web_outcome.candidates:
                raise document_result
            logger.warning(
                "document_sources_unavailable_using_web",
                failed_sources=document_result.failed_sources,
            )
            document_result = RetrievalOutcome(
                candidates=[],
                degraded=True,
                reasons=[f"document_search_failed: {','.join(document_result.failed_sources)}"],
                sources_failed=document_result.failed_sources,
            )
        elif isinstance(document_result, BaseException):
            raise document_result
        return document_result, web_outcome

    async def _embed_missing(self, candidates: List[CandidateChunk], deadline: Deadline) -> None:
        """Embed candidates lacking embeddings so MMR can run; failures just skip MMR."""
        if not (self.config.diversity.enabled and self.config.diversity.embed_missing):
            return
        missing = [c for c in candidates if c.embedding is None]
        if not missing or self.embedder is None:
            return
        texts = [c.text for c in missing]
        try:
            vectors = await self.recovery.execute(
                "embedding",
                lambda: asyncio.to_thread(self.embedder.embed_batch, texts),
                timeout=self.config.hybrid.per_call_timeout_ms / 1000.0,
                deadline=deadline,
            )
        except Exception as e:
            logger.warning("candidate_embedding_failed", count=len(missing), error=str(e))
            return
        for chunk, vector in zip(missing, vectors):
            chunk.embedding = vector

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def run_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Worker pool handler: ``{"query", "options"?}`` -> ContextWindow dict."""
        options = RetrievalOptions(**(payload.get("options") or {}))
        window = await self.retrieve_context(payload["query"], options)
        return window.to_dict()

    # ------------------------------------------------------------------
    # Observability and mutations
    # ------------------------------------------------------------------

    @staticmethod
    def format_context_for_prompt(window: ContextWindow) -> str:
        return format_context_for_prompt(window)

    def get_recovery_stats(self) -> Dict[str, Any]:
        return self.recovery.get_stats()

    def get_recovery_history(
        self,
        service: Optional[str] = None,
        category: Optional[str] = None,
        strategy: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        return [
            attempt.to_dict()
            for attempt in self.recovery.get_history(service, category, strategy, limit)
        ]

    def get_degradation_status(self) -> Dict[str, Any]:
        return self.recovery.get_degradation_status()

    def reset_recovery_stats(self) -> None:
        self.recovery.reset_stats()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def get_cache_version(self) -> int:
        return self.cache.current_version()

    def get_invalidation_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [result.to_dict() for result in self.cache.get_invalidation_history(limit)]

    def invalidate_cache(self, trigger: InvalidationTrigger) -> InvalidationResult:
        return self.cache.invalidate(trigger)

    def clear_cache(self, reason: str = "") -> InvalidationResult:
        return self.cache.clear(reason)

    def health(self) -> Dict[str, Any]:
        degradation = self.get_degradation_status()
        return {
            "status": degradation["status"],
            "version": __version__,
            "cache_version": self.cache.current_version(),
            "degraded_services": degradation["degraded_services"],
            "workers": self.worker_pool.stats(),
        }

    async def close(self) -> None:
        await self.worker_pool.stop()
        for provider in self._providers:
            close = getattr(provider, "close", None)
            if callable(close):
                close()


def build_retrieval_service(
    config: Optional[Config] = None,
    settings: Optional[Settings] = None,
    connections: Optional[ConnectionManager] = None,
) -> RetrievalService:
    """
    Build a RetrievalService from configuration.

    Raises:
        ConfigurationError: Missing credentials or unreachable Redis (L2 enabled)
    """
    config = config or get_config()
    settings = settings or get_settings()
    needs_connections = config.cache.l2.enabled or config.providers.vector_store == "qdrant"
    if connections is None and needs_connections:
        connections = get_connection_manager()

    redis_client = connections.get_redis_client() if config.cache.l2.enabled else None
    cache = CacheLayer(config.cache, redis_client)
    recovery = ErrorRecoveryCoordinator(config.recovery)

    llm = None
    if config.expansion.enabled and config.expansion.method in ("llm", "hybrid"):
        llm = ProviderFactory.create_llm_provider(config, settings)

    ProviderFactory.log_provider_config(config)
    return RetrievalService(
        config,
        tokenizer=create_tokenizer_service(config.context),
        embedder=ProviderFactory.create_embedding_provider(config, settings),
        vector_store=ProviderFactory.create_vector_store(config, connections),
        lexical_index=ProviderFactory.create_lexical_index(config),
        llm=llm,
        rerank_provider=ProviderFactory.create_rerank_provider(config, settings),
        web_provider=ProviderFactory.create_web_search_provider(config, settings),
        cache=cache,
        recovery=recovery,
    )
