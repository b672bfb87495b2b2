from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable


@runtime_checkable
class ProviderProtocol(Protocol):
    """Structural type for anything the router can call.

    The router only needs an id and a blocking-with-timeout ``generate``;
    tests and embedders can pass any object with this shape.
    """

    @property
    def provider_id(self) -> str: ...

    async def generate(self, request: str, timeout: float) -> str: ...


class ProviderClient(ABC):
    """Abstract base for one external generation backend.

    Implementations must raise
    :class:`~reviewline.core.exceptions.TransientProviderError` for
    network, timeout, rate-limit and server failures, and
    :class:`~reviewline.core.exceptions.FatalProviderError` for
    credential or request errors that retrying will not fix.

    Args:
        provider_id: Routing identity of this backend (e.g. ``"groq"``).
        model: Model name sent with each request.
    """

    def __init__(self, provider_id: str, model: str) -> None:
        self._provider_id = provider_id
        self._model = model

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider_id={self._provider_id!r}, model={self._model!r})"

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def model(self) -> str:
        return self._model

    def is_configured(self) -> bool:
        """Whether the client has what it needs (e.g. an API key) to be called."""
        return True

    @abstractmethod
    async def generate(self, request: str, timeout: float) -> str:
        """Send *request* and return the generated text.

        Args:
            request: Fully built prompt text.
            timeout: Seconds this single call may take.
        """

    async def aclose(self) -> None:
        """Release transport resources held by the client."""
