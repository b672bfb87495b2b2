from __future__ import annotations

from typing import Any

import httpx

from reviewline.providers.http import HttpProviderClient

# Known OpenAI-compatible chat-completion endpoints and their default models.
OPENAI_COMPAT_ENDPOINTS: dict[str, tuple[str, str]] = {
    "openai": ("https://api.openai.com/v1", "gpt-4o-mini"),
    "groq": ("https://api.groq.com/openai/v1", "llama-3.3-70b-versatile"),
    "openrouter": ("https://openrouter.ai/api/v1", "meta-llama/llama-3.3-70b-instruct"),
    "together": ("https://api.together.xyz/v1", "meta-llama/Llama-3.3-70B-Instruct-Turbo"),
    "local": ("http://127.0.0.1:8080/v1", "local-model"),
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class OpenAICompatProvider(HttpProviderClient):
    """Provider for any OpenAI-compatible ``/chat/completions`` API.

    Covers OpenAI itself as well as Groq, OpenRouter, Together and local
    servers that speak the same protocol.

    Args:
        provider_id: Routing identity; when it names a known endpoint in
            :data:`OPENAI_COMPAT_ENDPOINTS`, *base_url* and *model* default
            to that endpoint's values.
        api_key: Bearer token. Local endpoints may omit it.
        model: Model name.
        base_url: API root, e.g. ``"https://api.groq.com/openai/v1"``.
        temperature: Sampling temperature.
        max_tokens: Completion token limit.
        system_prompt: System message prepended to every request.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        provider_id: str,
        api_key: str | None = None,
        *,
        model: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        default_url, default_model = OPENAI_COMPAT_ENDPOINTS.get(
            provider_id, ("https://api.openai.com/v1", "gpt-4o-mini")
        )
        super().__init__(
            provider_id,
            model or default_model,
            base_url or default_url,
            api_key,
            transport=transport,
        )
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt

    def is_configured(self) -> bool:
        return bool(self._api_key) or self.provider_id == "local"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def generate(self, request: str, timeout: float) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": request},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        body = await self._post_json("/chat/completions", payload, timeout)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("missing choices[0].message.content") from exc
        if not isinstance(content, str):
            raise self._malformed("content is not text")
        return content
