"""Shared httpx plumbing for HTTP-based provider adapters."""

from __future__ import annotations

from typing import Any

import httpx

from reviewline.core.exceptions import FatalProviderError, TransientProviderError
from reviewline.providers.base import ProviderClient

MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class HttpProviderClient(ProviderClient):
    """Base for providers reached over HTTP with a JSON body.

    The underlying :class:`httpx.AsyncClient` is created lazily on first
    use. Pass *transport* (e.g. :class:`httpx.MockTransport`) to stub the
    network in tests.

    Args:
        provider_id: Routing identity of this backend.
        model: Model name sent with each request.
        base_url: Root URL of the provider API.
        api_key: Credential, if the provider needs one.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        provider_id: str,
        model: str,
        base_url: str,
        api_key: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider_id, model)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post_json(self, path: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body.

        Raises:
            TransientProviderError: Timeouts, transport errors, HTTP 429 and
                5xx, and bodies that are not JSON objects.
            FatalProviderError: Missing credentials and other HTTP 4xx.
        """
        if not self.is_configured():
            raise FatalProviderError(
                f"{self.provider_id} API key not configured",
                code="NOT_CONFIGURED",
                provider_id=self.provider_id,
            )

        client = self._get_client()
        try:
            resp = await client.post(path, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"{self.provider_id} request timed out",
                code="TIMEOUT",
                provider_id=self.provider_id,
            ) from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(
                f"{self.provider_id} request failed: {exc}",
                code="CONNECTION",
                provider_id=self.provider_id,
            ) from exc

        if resp.status_code >= 400:
            message = f"{self.provider_id} returned HTTP {resp.status_code}: {_error_message(resp)}"
            if resp.status_code == 429 or resp.status_code >= 500:
                raise TransientProviderError(
                    message,
                    code=str(resp.status_code),
                    provider_id=self.provider_id,
                    status_code=resp.status_code,
                )
            raise FatalProviderError(
                message,
                code=str(resp.status_code),
                provider_id=self.provider_id,
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientProviderError(
                f"Non-JSON response from {self.provider_id}: {resp.text[:200]}",
                code=MALFORMED_RESPONSE,
                provider_id=self.provider_id,
            ) from exc
        if not isinstance(body, dict):
            raise TransientProviderError(
                f"Unexpected response shape from {self.provider_id}",
                code=MALFORMED_RESPONSE,
                provider_id=self.provider_id,
            )
        return body

    def _malformed(self, detail: str) -> TransientProviderError:
        return TransientProviderError(
            f"Malformed response from {self.provider_id}: {detail}",
            code=MALFORMED_RESPONSE,
            provider_id=self.provider_id,
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return resp.reason_phrase
