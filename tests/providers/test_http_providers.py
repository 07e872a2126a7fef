"""
HTTP providers against httpx.MockTransport.

Checks request payloads, response mapping and error translation; no network.
"""

import json

import httpx
import pytest

from contextrag.providers.base import post_json, raise_for_status, translate_transport_error
from contextrag.providers.embeddings.openai import OpenAIEmbeddingProvider
from contextrag.providers.llm.openai import OpenAIChatProvider
from contextrag.providers.rerank.jina import JinaRerankProvider
from contextrag.providers.websearch.tavily import TavilySearchProvider
from contextrag.services.error_recovery import ErrorCategory, categorize_error
from contextrag.shared.errors import ConfigurationError, ProviderError


class Recorder:
    """MockTransport handler returning a canned JSON body and keeping requests."""

    def __init__(self, body=None, status_code=200, headers=None):
        self.body = body or {}
        self.status_code = status_code
        self.headers = headers or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body, headers=self.headers)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def mock_client(handler, base_url="https://api.test/v1"):
    return httpx.Client(base_url=base_url, transport=httpx.MockTransport(handler))


class TestStatusTranslation:
    def test_success_passes(self):
        raise_for_status("llm", httpx.Response(200, json={}))

    def test_rate_limit_carries_retry_after(self):
        response = httpx.Response(429, headers={"Retry-After": "3"}, text="slow down")
        with pytest.raises(ProviderError) as exc_info:
            raise_for_status("embedding", response)

        error = exc_info.value
        assert error.status_code == 429
        assert error.retry_after == 3.0
        assert "slow down" in str(error)
        assert categorize_error(error) == ErrorCategory.RATE_LIMIT

    def test_http_date_retry_after_ignored(self):
        response = httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        with pytest.raises(ProviderError) as exc_info:
            raise_for_status("embedding", response)
        assert exc_info.value.retry_after is None

    def test_server_error(self):
        with pytest.raises(ProviderError) as exc_info:
            raise_for_status("rerank", httpx.Response(503, text="unavailable"))
        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after is None
        assert categorize_error(exc_info.value) == ErrorCategory.SERVER_ERROR

    @pytest.mark.parametrize(
        "error,code",
        [
            (httpx.ConnectTimeout("slow"), "ETIMEDOUT"),
            (httpx.ReadTimeout("slow"), "ETIMEDOUT"),
            (httpx.ConnectError("refused"), "ECONNREFUSED"),
            (httpx.ReadError("reset"), "ECONNRESET"),
        ],
    )
    def test_transport_errors(self, error, code):
        translated = translate_transport_error("web_search", error)
        assert translated.code == code
        assert translated.service == "web_search"

    def test_post_json_translates_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError) as exc_info:
            post_json(mock_client(refuse), "llm", "/chat/completions", {})
        assert exc_info.value.code == "ECONNREFUSED"
        assert categorize_error(exc_info.value) == ErrorCategory.NETWORK


class TestOpenAIEmbeddingProvider:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            OpenAIEmbeddingProvider(api_key=None)

    def test_embed_batch_orders_by_index(self):
        handler = Recorder(
            {
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ]
            }
        )
        provider = OpenAIEmbeddingProvider(model="embed-test", client=mock_client(handler))
        vectors = provider.embed_batch(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        request = handler.requests[0]
        assert request.url.path == "/v1/embeddings"
        assert handler.last_json == {
            "model": "embed-test",
            "input": ["first", "second"],
            "encoding_format": "float",
        }
        assert provider.model_id == "embed-test"

    def test_embed_single(self):
        handler = Recorder({"data": [{"index": 0, "embedding": [0.5, 0.5]}]})
        provider = OpenAIEmbeddingProvider(client=mock_client(handler))
        assert provider.embed("query") == [0.5, 0.5]

    def test_empty_batch_skips_request(self):
        handler = Recorder()
        provider = OpenAIEmbeddingProvider(client=mock_client(handler))
        assert provider.embed_batch([]) == []
        assert handler.requests == []

    def test_count_mismatch(self):
        handler = Recorder({"data": [{"index": 0, "embedding": [1.0]}]})
        provider = OpenAIEmbeddingProvider(client=mock_client(handler))
        with pytest.raises(ValueError, match="mismatch"):
            provider.embed_batch(["a", "b"])

    def test_auth_failure(self):
        handler = Recorder({"error": "bad key"}, status_code=401)
        provider = OpenAIEmbeddingProvider(client=mock_client(handler))
        with pytest.raises(ProviderError) as exc_info:
            provider.embed("query")
        assert categorize_error(exc_info.value) == ErrorCategory.AUTH


class TestOpenAIChatProvider:
    def test_complete(self):
        handler = Recorder(
            {
                "choices": [{"message": {"content": "deep learning, neural networks"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 4},
            }
        )
        provider = OpenAIChatProvider(model="chat-test", client=mock_client(handler))
        result = provider.complete(
            "Expand: what is ai", {"system": "You expand queries", "temperature": 0.2}
        )

        assert result == {
            "text": "deep learning, neural networks",
            "token_usage": {"prompt_tokens": 12, "completion_tokens": 4},
        }
        assert handler.requests[0].url.path == "/v1/chat/completions"
        payload = handler.last_json
        assert payload["model"] == "chat-test"
        assert payload["messages"][0] == {"role": "system", "content": "You expand queries"}
        assert payload["messages"][1]["role"] == "user"
        assert payload["temperature"] == 0.2
        assert "max_tokens" not in payload

    def test_no_choices(self):
        provider = OpenAIChatProvider(client=mock_client(Recorder({"choices": []})))
        result = provider.complete("prompt", {})
        assert result["text"] == ""
        assert result["token_usage"] == {"prompt_tokens": 0, "completion_tokens": 0}


class TestJinaRerankProvider:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError, match="JINA_API_KEY"):
            JinaRerankProvider(api_key=None)

    def test_scores_map_back_to_ids(self):
        handler = Recorder(
            {
                "results": [
                    {"index": 1, "relevance_score": 0.9},
                    {"document_index": 0, "relevance_score": 0.2},
                    {"index": 7, "relevance_score": 0.5},
                ]
            }
        )
        provider = JinaRerankProvider(client=mock_client(handler, base_url=""))
        scores = provider.score(
            "what is ai", [{"id": "c1", "text": "first"}, {"id": "c2", "text": "second"}]
        )

        assert scores == [{"id": "c2", "score": 0.9}, {"id": "c1", "score": 0.2}]
        assert str(handler.requests[0].url) == JinaRerankProvider.API_URL
        payload = handler.last_json
        assert payload["documents"] == ["first", "second"]
        assert payload["top_n"] == 2
        assert payload["return_documents"] is False

    def test_candidate_shape_validated(self):
        provider = JinaRerankProvider(client=mock_client(Recorder(), base_url=""))
        with pytest.raises(ValueError, match="Candidate 0"):
            provider.score("q", [{"id": "c1"}])

    def test_rate_limited(self):
        handler = Recorder(status_code=429, headers={"Retry-After": "2"})
        provider = JinaRerankProvider(client=mock_client(handler, base_url=""))
        with pytest.raises(ProviderError) as exc_info:
            provider.score("q", [{"id": "c1", "text": "t"}])
        assert exc_info.value.retry_after == 2.0


class TestTavilySearchProvider:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError, match="TAVILY_API_KEY"):
            TavilySearchProvider(api_key="")

    def test_search(self):
        handler = Recorder(
            {
                "results": [
                    {"url": "https://a", "title": "A", "content": "alpha", "score": 0.7},
                    {"url": "https://b", "title": "B", "content": ""},
                    {"url": "https://c", "content": "gamma", "score": None},
                ]
            }
        )
        provider = TavilySearchProvider(
            api_key="tvly-test", client=mock_client(handler, base_url="")
        )
        response = provider.search(
            "what is ai", {"max_results": 3, "include_domains": ("example.com",)}
        )

        assert response["total_results"] == 2
        assert response["results"] == [
            {"url": "https://a", "title": "A", "content": "alpha", "score": 0.7},
            {"url": "https://c", "title": "", "content": "gamma", "score": 0.0},
        ]
        payload = handler.last_json
        assert payload["api_key"] == "tvly-test"
        assert payload["max_results"] == 3
        assert payload["search_depth"] == "basic"
        assert payload["include_domains"] == ["example.com"]
        assert "exclude_domains" not in payload
