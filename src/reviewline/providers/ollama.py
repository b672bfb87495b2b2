from __future__ import annotations

from typing import Any

import httpx

from reviewline.providers.http import HttpProviderClient


class OllamaProvider(HttpProviderClient):
    """Provider for a local Ollama server (``/api/generate``).

    Needs no API key, so it is always considered configured.
    """

    def __init__(
        self,
        *,
        provider_id: str = "ollama",
        model: str = "llama3.1",
        base_url: str = "http://localhost:11434",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        system_prompt: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider_id, model, base_url, None, transport=transport)
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt

    def is_configured(self) -> bool:
        return True

    async def generate(self, request: str, timeout: float) -> str:
        prompt = request
        if self._system_prompt:
            prompt = f"{self._system_prompt}\n\nUser: {request}\n\nAssistant:"
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self._temperature,
                "num_predict": self._max_tokens,
            },
        }
        body = await self._post_json("/api/generate", payload, timeout)
        text = body.get("response")
        if not isinstance(text, str):
            raise self._malformed("missing 'response' field")
        return text
