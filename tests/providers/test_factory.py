"""Provider factory and tokenizer service construction."""

import pytest

from conftest import WordTokenizerBackend
from contextrag.providers import tokenizer_service as tokenizer_module
from contextrag.providers.embeddings.openai import OpenAIEmbeddingProvider
from contextrag.providers.factory import ProviderFactory
from contextrag.providers.lexical.bm25 import BM25Index
from contextrag.providers.rerank.jina import JinaRerankProvider
from contextrag.providers.tokenizer_service import (
    TiktokenBackend,
    TokenizerService,
    create_tokenizer_service,
)
from contextrag.providers.vector.memory import InMemoryVectorStore
from contextrag.providers.websearch.tavily import TavilySearchProvider
from contextrag.shared.config import Config, ContextConfig, Settings
from contextrag.shared.errors import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "JINA_API_KEY", "TAVILY_API_KEY", "TOKENIZER_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestProviderFactory:
    def test_embedding_provider(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "sk-test")
        provider = ProviderFactory.create_embedding_provider(Config(), Settings())
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.model_id == "text-embedding-3-small"
        provider.close()

    def test_embedding_provider_without_key(self, clean_env):
        with pytest.raises(ConfigurationError):
            ProviderFactory.create_embedding_provider(Config(), Settings())

    def test_unknown_embedding_provider(self, clean_env):
        config = Config(providers={"embedding_provider": "nope"})
        with pytest.raises(ConfigurationError, match="nope"):
            ProviderFactory.create_embedding_provider(config, Settings())

    def test_rerank_provider_only_for_cross_encoder(self, clean_env):
        assert ProviderFactory.create_rerank_provider(Config(), Settings()) is None

    def test_rerank_provider_alias(self, clean_env):
        clean_env.setenv("JINA_API_KEY", "jina-test")
        config = Config(reranker={"strategy": "cross_encoder", "provider": "jina", "model": "m1"})
        provider = ProviderFactory.create_rerank_provider(config, Settings())
        assert isinstance(provider, JinaRerankProvider)
        assert provider.model_id == "m1"
        provider.close()

    def test_unknown_rerank_provider(self, clean_env):
        config = Config(reranker={"strategy": "cross_encoder", "provider": "other"})
        with pytest.raises(ConfigurationError):
            ProviderFactory.create_rerank_provider(config, Settings())

    def test_web_search_disabled(self, clean_env):
        assert ProviderFactory.create_web_search_provider(Config(), Settings()) is None

    def test_web_search_needs_key(self, clean_env):
        config = Config(web_search={"enabled": True})
        with pytest.raises(ConfigurationError, match="TAVILY_API_KEY"):
            ProviderFactory.create_web_search_provider(config, Settings())

        clean_env.setenv("TAVILY_API_KEY", "tvly-test")
        provider = ProviderFactory.create_web_search_provider(config, Settings())
        assert isinstance(provider, TavilySearchProvider)
        provider.close()

    def test_local_stores(self):
        config = Config(providers={"vector_store": "memory"})
        assert isinstance(ProviderFactory.create_vector_store(config), InMemoryVectorStore)
        assert isinstance(ProviderFactory.create_lexical_index(config), BM25Index)

    def test_unknown_stores(self):
        with pytest.raises(ConfigurationError):
            ProviderFactory.create_vector_store(Config(providers={"vector_store": "faiss"}))
        with pytest.raises(ConfigurationError):
            ProviderFactory.create_lexical_index(Config(providers={"lexical_index": "splade"}))


class FakeEncoding:
    def __init__(self, name):
        self.name = name

    def encode(self, text, disallowed_special=()):
        return [len(word) for word in text.split()]

    def decode(self, token_ids):
        return " ".join("x" * n for n in token_ids)


class TestTokenizerService:
    def test_count_and_truncate(self):
        service = TokenizerService(WordTokenizerBackend())
        assert service.count_tokens("") == 0
        assert service.count_tokens("one two three") == 3
        assert service.count_tokens_batch(["a b", "c"]) == 3
        assert service.truncate_to_token_limit("one two three four", 2) == "one two"
        assert service.truncate_to_token_limit("one two", 5) == "one two"
        assert service.truncate_to_token_limit("one two", 0) == ""

    def test_tiktoken_backend_from_config(self, clean_env):
        clean_env.setattr(tokenizer_module.tiktoken, "get_encoding", FakeEncoding)
        service = create_tokenizer_service(ContextConfig(tokenizer_encoding="o200k_base"))

        assert isinstance(service.backend, TiktokenBackend)
        assert service.backend_name == "tiktoken"
        assert service.backend._encoding.name == "o200k_base"
        assert service.count_tokens("ab cde") == 2

    def test_backend_override_from_environment(self, clean_env):
        clean_env.setenv("TOKENIZER_BACKEND", "sentencepiece")
        with pytest.raises(ValueError, match="Invalid tokenizer backend"):
            create_tokenizer_service(ContextConfig())

    def test_hf_backend_needs_model_id(self, clean_env):
        with pytest.raises(ValueError, match="tokenizer_model_id"):
            create_tokenizer_service(ContextConfig(tokenizer_backend="hf"))
