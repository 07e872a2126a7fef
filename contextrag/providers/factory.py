"""
Provider factory: builds the concrete providers named in configuration.

Supported providers:
- Embedding: openai
- LLM: openai
- Rerank: jina-ai (only for the cross_encoder reranker strategy)
- Web search: tavily
- Vector store: qdrant, memory
- Lexical index: bm25

Credentials come from Settings (OPENAI_API_KEY, JINA_API_KEY, TAVILY_API_KEY);
a missing credential raises ConfigurationError at startup.
"""

import logging
from typing import Callable, Dict, Optional

from contextrag.providers.base import (
    EmbeddingProvider,
    LanguageModelProvider,
    LexicalIndex,
    RerankProvider,
    VectorStore,
    WebSearchProvider,
)
from contextrag.providers.embeddings.openai import OpenAIEmbeddingProvider
from contextrag.providers.lexical.bm25 import BM25Index
from contextrag.providers.llm.openai import OpenAIChatProvider
from contextrag.providers.rerank.jina import JinaRerankProvider
from contextrag.providers.vector.memory import InMemoryVectorStore
from contextrag.providers.vector.qdrant import QdrantVectorStore
from contextrag.providers.websearch.tavily import TavilySearchProvider
from contextrag.shared.config import Config, Settings
from contextrag.shared.connections import ConnectionManager
from contextrag.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Factory for creating providers from Config + Settings."""

    _RERANK_PROVIDER_ALIASES = {"jina": "jina-ai", "jina_ai": "jina-ai"}

    @classmethod
    def create_embedding_provider(cls, config: Config, settings: Settings) -> EmbeddingProvider:
        provider = config.providers.embedding_provider.lower()
        if provider != "openai":
            raise ConfigurationError(f"Unknown embedding provider: {provider}")
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=config.providers.embedding_model,
            base_url=settings.openai_base_url,
            timeout=config.providers.timeout_seconds,
        )

    @classmethod
    def create_llm_provider(cls, config: Config, settings: Settings) -> LanguageModelProvider:
        provider = config.providers.llm_provider.lower()
        if provider != "openai":
            raise ConfigurationError(f"Unknown llm provider: {provider}")
        return OpenAIChatProvider(
            api_key=settings.openai_api_key,
            model=config.providers.llm_model,
            base_url=settings.openai_base_url,
            timeout=config.providers.timeout_seconds,
        )

    @classmethod
    def create_rerank_provider(
        cls, config: Config, settings: Settings
    ) -> Optional[RerankProvider]:
        """Returns None unless the reranker strategy needs an external scorer."""
        if config.reranker.strategy != "cross_encoder":
            return None
        provider = (config.reranker.provider or "").lower()
        provider = cls._RERANK_PROVIDER_ALIASES.get(provider, provider)
        if provider != "jina-ai":
            raise ConfigurationError(f"Unknown rerank provider: {config.reranker.provider}")
        kwargs = {"api_key": settings.jina_api_key, "timeout": config.providers.timeout_seconds}
        if config.reranker.model:
            kwargs["model"] = config.reranker.model
        return JinaRerankProvider(**kwargs)

    @classmethod
    def create_web_search_provider(
        cls, config: Config, settings: Settings
    ) -> Optional[WebSearchProvider]:
        if not config.web_search.enabled:
            return None
        provider = config.web_search.provider.lower()
        if provider != "tavily":
            raise ConfigurationError(f"Unknown web search provider: {provider}")
        return TavilySearchProvider(
            api_key=settings.tavily_api_key,
            max_results=config.web_search.max_results,
            search_depth=config.web_search.search_depth,
            timeout=config.providers.timeout_seconds,
        )

    @classmethod
    def create_vector_store(
        cls, config: Config, connections: Optional[ConnectionManager] = None
    ) -> VectorStore:
        creators: Dict[str, Callable[[], VectorStore]] = {
            "memory": InMemoryVectorStore,
            "qdrant": lambda: QdrantVectorStore(
                (connections or ConnectionManager()).get_qdrant_client(),
                collection_name=config.providers.qdrant_collection,
            ),
        }
        store = config.providers.vector_store.lower()
        if store not in creators:
            raise ConfigurationError(f"Unknown vector store: {store}")
        return creators[store]()

    @classmethod
    def create_lexical_index(cls, config: Config) -> LexicalIndex:
        index = config.providers.lexical_index.lower()
        if index != "bm25":
            raise ConfigurationError(f"Unknown lexical index: {index}")
        return BM25Index()

    @staticmethod
    def log_provider_config(config: Config) -> None:
        logger.info(
            "Provider configuration",
            extra={
                "embedding": f"{config.providers.embedding_provider}:{config.providers.embedding_model}",
                "llm": f"{config.providers.llm_provider}:{config.providers.llm_model}",
                "vector_store": config.providers.vector_store,
                "lexical_index": config.providers.lexical_index,
                "reranker": config.reranker.strategy,
                "web_search": config.web_search.provider if config.web_search.enabled else None,
            },
        )
