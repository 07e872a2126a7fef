"""
Provider protocols consumed by the retrieval pipeline.

Every method is synchronous; the pipeline runs them off the event loop with
asyncio.to_thread and wraps each call with the ErrorRecoveryCoordinator.
Implementations report failures as ProviderError (see raise_for_status and
translate_transport_error) so that recovery can categorize them uniformly.
"""

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

import httpx

from contextrag.shared.errors import ProviderError
from contextrag.shared.observability.metrics import (
    provider_latency_ms,
    provider_requests_total,
)


@runtime_checkable
class EmbeddingProvider(Protocol):
    @property
    def model_id(self) -> str: ...

    def embed(self, text: str) -> List[float]:
        """Embed one text (used for the query)."""
        ...

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts in one call, preserving order."""
        ...


@runtime_checkable
class VectorStore(Protocol):
    def search(
        self, vector: List[float], filters: Dict[str, Any], top_k: int
    ) -> List[Dict[str, Any]]:
        """
        Nearest neighbours of ``vector``.

        Returns:
            List of ``{"id", "score", "metadata"}`` ordered by score desc.
            ``metadata`` carries at least ``text`` and usually ``document_id``.
        """
        ...

    def upsert(self, points: List[Dict[str, Any]]) -> None: ...

    def delete(self, ids: List[str]) -> None: ...


@runtime_checkable
class LexicalIndex(Protocol):
    def search(
        self, query: str, filters: Dict[str, Any], top_k: int
    ) -> List[Dict[str, Any]]:
        """Keyword search; same result shape as VectorStore.search."""
        ...


@runtime_checkable
class WebSearchProvider(Protocol):
    def search(self, query: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns:
            ``{"results": [{"url", "title", "content", "score"}], "total_results": int}``
        """
        ...


@runtime_checkable
class RerankProvider(Protocol):
    @property
    def model_id(self) -> str: ...

    def score(self, query: str, candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Pairwise relevance of each candidate to the query.

        Args:
            candidates: ``[{"id", "text"}]``

        Returns:
            ``[{"id", "score"}]`` (order not significant)
        """
        ...


@runtime_checkable
class LanguageModelProvider(Protocol):
    @property
    def model_id(self) -> str: ...

    def complete(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns:
            ``{"text": str, "token_usage": {"prompt_tokens", "completion_tokens"}}``
        """
        ...


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by the providers we call
        return None


def raise_for_status(service: str, response: httpx.Response) -> None:
    """Raise ProviderError for any non-2xx response."""
    if response.is_success:
        return
    try:
        body = response.text[:500]
    except httpx.ResponseNotRead:
        body = "<unavailable>"
    raise ProviderError(
        service,
        f"{service} HTTP {response.status_code}: {body}",
        status_code=response.status_code,
        retry_after=_retry_after_seconds(response)
        if response.status_code == 429
        else None,
    )


def translate_transport_error(service: str, error: httpx.TransportError) -> ProviderError:
    """Map an httpx transport failure to a ProviderError with an OS-style code."""
    if isinstance(error, httpx.TimeoutException):
        code = "ETIMEDOUT"
    elif isinstance(error, httpx.ConnectError):
        code = "ECONNREFUSED"
    else:
        code = "ECONNRESET"
    return ProviderError(service, f"{service} transport error: {error}", code=code)


def post_json(
    client: httpx.Client, service: str, url: str, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """POST ``payload`` and return the decoded JSON body, raising ProviderError on failure."""
    try:
        response = client.post(url, json=payload)
    except httpx.TransportError as e:
        raise translate_transport_error(service, e) from e
    raise_for_status(service, response)
    return response.json()


@contextmanager
def record_provider_call(provider: str, operation: str) -> Iterator[None]:
    """Time a provider call into provider_latency_ms / provider_requests_total."""
    start_time = time.time()
    try:
        yield
    except Exception:
        provider_requests_total.labels(
            provider=provider, operation=operation, status="error"
        ).inc()
        raise
    finally:
        provider_latency_ms.labels(provider=provider, operation=operation).observe(
            (time.time() - start_time) * 1000
        )
    provider_requests_total.labels(
        provider=provider, operation=operation, status="success"
    ).inc()


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def matches_filters(payload: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """
    Evaluate request filters against a point payload (in-memory stores).

    Payload keys: ``document_id``, ``topic_id``, ``user_id``, ``geography``,
    ``timestamp`` (ISO 8601). A filter on a key the payload lacks excludes the point.
    """
    document_ids = filters.get("document_ids")
    if document_ids and payload.get("document_id") not in document_ids:
        return False
    for key in ("topic_id", "user_id", "geography"):
        if filters.get(key) is not None and payload.get(key) != filters[key]:
            return False

    start = _as_datetime(filters.get("time_range_start"))
    end = _as_datetime(filters.get("time_range_end"))
    if start or end:
        timestamp = _as_datetime(payload.get("timestamp"))
        if timestamp is None:
            return False
        if start and timestamp < start:
            return False
        if end and timestamp > end:
            return False
    return True
