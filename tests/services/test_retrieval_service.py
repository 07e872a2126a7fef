"""
RetrievalService end to end on the in-memory corpus.

Covers the cache path, source degradation, web results and the job handler.
"""

import pytest

from conftest import CountingLexicalIndex, FailingProvider, StaticWebSearch
from contextrag.providers import tokenizer_service as tokenizer_module
from contextrag.providers.embeddings.openai import OpenAIEmbeddingProvider
from contextrag.providers.lexical.bm25 import BM25Index
from contextrag.providers.vector.memory import InMemoryVectorStore
from contextrag.services.cache_layer import CacheLayer, InvalidationTrigger
from contextrag.services.retrieval_service import RetrievalService, build_retrieval_service
from contextrag.services.worker_pool import JobState
from contextrag.shared.config import Settings
from contextrag.shared.errors import ProviderError, RetrievalUnavailableError
from contextrag.shared.models import RetrievalOptions, SourceOrigin

QUERY = "What is AI?"

WEB_RESULTS = [
    {"url": "https://example.com/ai", "title": "AI", "content": "AI overview page", "score": 0.9},
    {"url": "https://example.com/ml", "title": "ML", "content": "Machine learning page", "score": 0.6},
]


@pytest.fixture
def lexical(stores):
    return CountingLexicalIndex(stores[1])


def make_service(config, tokenizer, embedder, recovery, *, vector_store, lexical_index, **kwargs):
    return RetrievalService(
        config,
        tokenizer=tokenizer,
        embedder=embedder,
        vector_store=vector_store,
        lexical_index=lexical_index,
        recovery=recovery,
        cache=kwargs.pop("cache", None) or CacheLayer(config.cache),
        **kwargs,
    )


@pytest.fixture
def service(config, tokenizer, embedder, recovery, stores, lexical):
    return make_service(
        config, tokenizer, embedder, recovery, vector_store=stores[0], lexical_index=lexical
    )


class TestRetrieveContext:
    @pytest.mark.asyncio
    async def test_simple_query_assembles_target_chunks(self, service):
        window = await service.retrieve_context(QUERY)

        assert window.query == QUERY
        assert window.target_chunk_count == 3
        assert 0 < len(window.chunks) <= 3
        assert not window.degraded
        assert window.token_total <= window.token_budget
        assert all(c.origin != SourceOrigin.WEB for c in window.chunks)
        assert window.expansion_applied is False

    @pytest.mark.asyncio
    async def test_max_chunks_option_bounds_window(self, service):
        window = await service.retrieve_context(
            "Explain how neural networks learn representations with backpropagation "
            "and why regularization such as dropout reduces overfitting",
            RetrievalOptions(max_chunks=4),
        )
        assert len(window.chunks) <= 4

    @pytest.mark.asyncio
    async def test_document_cap_does_not_override_target(self, service):
        window = await service.retrieve_context(QUERY, RetrievalOptions(max_document_chunks=20))
        assert window.target_chunk_count == 3
        assert 0 < len(window.chunks) <= 3

    @pytest.mark.asyncio
    async def test_inverted_chunk_bounds_rejected(self, service, config):
        config.query_analysis.min_chunks = 3
        with pytest.raises(ValueError, match="min_chunks"):
            await service.retrieve_context(QUERY, RetrievalOptions(max_chunks=2))

    @pytest.mark.asyncio
    async def test_prompt_formatting(self, service):
        window = await service.retrieve_context(QUERY)
        prompt = service.format_context_for_prompt(window)
        assert prompt.startswith("[Document 1]")
        assert window.chunks[0].text in prompt


class TestCaching:
    @pytest.mark.asyncio
    async def test_repeat_query_served_from_cache(self, service, lexical):
        first = await service.retrieve_context(QUERY)
        second = await service.retrieve_context(QUERY)

        assert second.to_dict() == first.to_dict()
        assert lexical.calls == 1
        assert service.get_cache_stats()["l1"]["hits"] >= 1

    @pytest.mark.asyncio
    async def test_normalized_query_shares_entry(self, service, lexical):
        await service.retrieve_context(QUERY)
        window = await service.retrieve_context("  what   IS ai?  ")
        assert lexical.calls == 1
        assert window.query == "  what   IS ai?  "

    @pytest.mark.asyncio
    async def test_different_options_miss(self, service, lexical):
        await service.retrieve_context(QUERY)
        await service.retrieve_context(QUERY, RetrievalOptions(max_chunks=5))
        assert lexical.calls == 2

    @pytest.mark.asyncio
    async def test_deadline_does_not_change_key(self, service, lexical):
        await service.retrieve_context(QUERY)
        await service.retrieve_context(QUERY, RetrievalOptions(deadline_ms=30000))
        assert lexical.calls == 1

    @pytest.mark.asyncio
    async def test_document_invalidation_forces_recompute(self, service, lexical):
        window = await service.retrieve_context(QUERY)
        document_id = window.chunks[0].document_id

        result = service.invalidate_cache(
            InvalidationTrigger(type="document", document_ids=[document_id])
        )
        assert result.l1_count == 1

        await service.retrieve_context(QUERY)
        assert lexical.calls == 2

    @pytest.mark.asyncio
    async def test_clear_bumps_version(self, service, lexical):
        await service.retrieve_context(QUERY)
        result = service.clear_cache("reindex")

        assert result.version_after == result.version_before + 1
        assert service.get_cache_version() == result.version_after
        await service.retrieve_context(QUERY)
        assert lexical.calls == 2
        assert service.get_invalidation_history()[-1]["reason"] == "reindex"

    @pytest.mark.asyncio
    async def test_cache_disabled(self, config, tokenizer, embedder, recovery, stores, lexical):
        config.cache.enabled = False
        service = make_service(
            config, tokenizer, embedder, recovery, vector_store=stores[0], lexical_index=lexical
        )
        await service.retrieve_context(QUERY)
        await service.retrieve_context(QUERY)
        assert lexical.calls == 2


class TestDegradation:
    @pytest.mark.asyncio
    async def test_rate_limited_vector_store_degrades_to_lexical(
        self, config, tokenizer, embedder, recovery, lexical
    ):
        vector_store = FailingProvider(
            ProviderError("vector_search", "rate limited", status_code=429, retry_after=0)
        )
        service = make_service(
            config, tokenizer, embedder, recovery, vector_store=vector_store, lexical_index=lexical
        )
        window = await service.retrieve_context(QUERY)

        assert window.degraded
        assert "vector_search_failed: ProviderError" in window.degradation_reasons
        assert window.chunks
        assert all(c.lexical_rank is not None for c in window.chunks)

        # Degraded windows are never cached
        await service.retrieve_context(QUERY)
        assert lexical.calls == 2
        assert vector_store.calls == 4

        assert "vector_search" in service.get_degradation_status()["degraded_services"]
        assert service.health()["status"] == "degraded"
        history = service.get_recovery_history(service="vector_search")
        assert [h["strategy"] for h in history[:2]] == ["wait", "degrade"]

    @pytest.mark.asyncio
    async def test_slow_vector_store_times_out(
        self, config, tokenizer, embedder, recovery, lexical, sleeps
    ):
        config.hybrid.per_call_timeout_ms = 50
        service = make_service(
            config,
            tokenizer,
            embedder,
            recovery,
            vector_store=FailingProvider(delay=0.3),
            lexical_index=lexical,
        )
        window = await service.retrieve_context(QUERY)

        assert window.degraded
        assert "vector_search_failed: TimeoutError" in window.degradation_reasons
        assert sleeps[:3] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_all_sources_failed_without_web(self, config, tokenizer, embedder, recovery):
        forbidden = ProviderError("search", "forbidden", status_code=403)
        service = make_service(
            config,
            tokenizer,
            embedder,
            recovery,
            vector_store=FailingProvider(forbidden),
            lexical_index=FailingProvider(forbidden),
        )
        with pytest.raises(RetrievalUnavailableError):
            await service.retrieve_context(QUERY)


class TestWebResults:
    @pytest.fixture
    def web_config(self, config):
        config.web_search.enabled = True
        return config

    @pytest.mark.asyncio
    async def test_web_only_window(self, web_config, tokenizer, embedder, recovery, stores):
        web = StaticWebSearch(WEB_RESULTS)
        service = make_service(
            web_config,
            tokenizer,
            embedder,
            recovery,
            vector_store=stores[0],
            lexical_index=stores[1],
            web_provider=web,
        )
        window = await service.retrieve_context(
            QUERY, RetrievalOptions(enable_web_search=True, enable_document_search=False)
        )

        assert web.calls == 1
        assert len(window.web_chunks) == 2
        assert window.document_chunks == []
        assert window.web_chunks[0].metadata["url"] == "https://example.com/ai"

    @pytest.mark.asyncio
    async def test_web_not_requested(self, web_config, tokenizer, embedder, recovery, stores):
        web = StaticWebSearch(WEB_RESULTS)
        service = make_service(
            web_config,
            tokenizer,
            embedder,
            recovery,
            vector_store=stores[0],
            lexical_index=stores[1],
            web_provider=web,
        )
        window = await service.retrieve_context(QUERY)
        assert web.calls == 0
        assert window.web_chunks == []

    @pytest.mark.asyncio
    async def test_web_results_survive_document_outage(
        self, web_config, tokenizer, embedder, recovery
    ):
        forbidden = ProviderError("search", "forbidden", status_code=403)
        service = make_service(
            web_config,
            tokenizer,
            embedder,
            recovery,
            vector_store=FailingProvider(forbidden),
            lexical_index=FailingProvider(forbidden),
            web_provider=StaticWebSearch(WEB_RESULTS),
        )
        window = await service.retrieve_context(QUERY, RetrievalOptions(enable_web_search=True))

        assert window.degraded
        assert any(r.startswith("document_search_failed") for r in window.degradation_reasons)
        assert len(window.web_chunks) == 2


class TestJobs:
    @pytest.mark.asyncio
    async def test_run_job_returns_window_dict(self, service):
        result = await service.run_job({"query": QUERY, "options": {"max_chunks": 5}})
        assert result["query"] == QUERY
        assert len(result["chunks"]) <= 5
        assert "token_usage" in result

    @pytest.mark.asyncio
    async def test_job_through_worker_pool(self, service):
        await service.worker_pool.start()
        try:
            job_id = await service.worker_pool.submit({"query": QUERY})
            job = await service.worker_pool.wait_for(job_id, timeout=10)
        finally:
            await service.close()

        assert job.state == JobState.COMPLETED
        assert job.result["query"] == QUERY
        assert service.health()["workers"]["completed"] == 1


class TestObservability:
    @pytest.mark.asyncio
    async def test_health_after_clean_request(self, service):
        await service.retrieve_context(QUERY)
        health = service.health()

        assert health["status"] == "healthy"
        assert health["degraded_services"] == []
        assert health["cache_version"] == 0
        assert "version" in health

    def test_recovery_stats_reset(self, service):
        service.recovery.record_degradation("web_search", RuntimeError("down"), reason="test")
        assert service.get_recovery_stats()["total_attempts"] == 1

        service.reset_recovery_stats()
        assert service.get_recovery_stats()["total_attempts"] == 0
        assert service.get_recovery_history() == []


class TestBuildFromConfiguration:
    @pytest.mark.asyncio
    async def test_build_with_local_stores(self, config, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.delenv("TOKENIZER_BACKEND", raising=False)
        monkeypatch.setattr(tokenizer_module.tiktoken, "get_encoding", lambda name: object())

        service = build_retrieval_service(config, Settings())
        try:
            assert isinstance(service.embedder, OpenAIEmbeddingProvider)
            assert isinstance(service.retriever.vector_store, InMemoryVectorStore)
            assert isinstance(service.retriever.lexical_index, BM25Index)
            assert service.expander.llm is None
            assert service.reranker.provider is None
            assert service.web.available is False
            assert service.cache.l2 is None
        finally:
            await service.close()
