"""Tavily web search provider."""

import logging
from typing import Any, Dict, Optional

import httpx

from contextrag.providers.base import post_json, record_provider_call
from contextrag.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)


class TavilySearchProvider:
    API_URL = "https://api.tavily.com/search"
    service = "web_search"

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_results: int = 5,
        search_depth: str = "basic",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            raise ConfigurationError("TAVILY_API_KEY required for tavily web search")
        self._api_key = api_key
        self.max_results = max_results
        self.search_depth = search_depth
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def search(self, query: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recognized options: ``max_results``, ``search_depth``,
        ``include_domains``, ``exclude_domains``.
        """
        payload: Dict[str, Any] = {
            "api_key": self._api_key,
            "query": query,
            "max_results": options.get("max_results", self.max_results),
            "search_depth": options.get("search_depth", self.search_depth),
        }
        for key in ("include_domains", "exclude_domains"):
            if options.get(key):
                payload[key] = list(options[key])

        with record_provider_call("tavily", "search"):
            data = post_json(self._client, self.service, self.API_URL, payload)

        results = [
            {
                "url": item.get("url", ""),
                "title": item.get("title", ""),
                "content": item.get("content", ""),
                "score": float(item.get("score") or 0.0),
            }
            for item in data.get("results", [])
            if item.get("content")
        ]
        return {"results": results, "total_results": len(results)}
