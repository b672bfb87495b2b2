from __future__ import annotations

from typing import Any

import httpx

from reviewline.providers.http import HttpProviderClient
from reviewline.providers.openai_compat import DEFAULT_SYSTEM_PROMPT

ANTHROPIC_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(HttpProviderClient):
    """Provider for the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        provider_id: str = "anthropic",
        model: str = "claude-sonnet-4-20250514",
        base_url: str = ANTHROPIC_URL,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider_id, model, base_url, api_key, transport=transport)
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["x-api-key"] = self._api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    async def generate(self, request: str, timeout: float) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens,
            "system": self._system_prompt,
            "messages": [{"role": "user", "content": request}],
            "temperature": self._temperature,
        }
        body = await self._post_json("/messages", payload, timeout)
        try:
            blocks = body["content"]
            text = "".join(
                block.get("text", "") for block in blocks if block.get("type", "text") == "text"
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise self._malformed("missing content blocks") from exc
        return text
