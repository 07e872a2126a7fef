"""OpenAI-compatible chat completions provider (``POST /chat/completions``)."""

import logging
from typing import Any, Dict, Optional

import httpx

from contextrag.providers.base import post_json, record_provider_call
from contextrag.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)


class OpenAIChatProvider:
    service = "llm"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError("OPENAI_API_KEY required for the openai llm provider")
        self._model_id = model
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )
        logger.info("OpenAIChatProvider initialized: model=%s", model)

    @property
    def model_id(self) -> str:
        return self._model_id

    def close(self) -> None:
        self._client.close()

    def complete(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Single-turn completion.

        Recognized options: ``system`` (system message), ``temperature``,
        ``max_tokens``.
        """
        messages = []
        if options.get("system"):
            messages.append({"role": "system", "content": options["system"]})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {"model": self._model_id, "messages": messages}
        for key in ("temperature", "max_tokens"):
            if options.get(key) is not None:
                payload[key] = options[key]

        with record_provider_call("openai", "complete"):
            data = post_json(self._client, self.service, "/chat/completions", payload)

        choices = data.get("choices") or []
        text = choices[0]["message"]["content"] if choices else ""
        usage = data.get("usage") or {}
        return {
            "text": text or "",
            "token_usage": {
                "prompt_tokens": int(usage.get("prompt_tokens", 0)),
                "completion_tokens": int(usage.get("completion_tokens", 0)),
            },
        }
