from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Union

from reviewline.providers.base import ProviderClient

MockResponse = Union[str, BaseException, Callable[[str], str]]


class MockProvider(ProviderClient):
    """In-memory provider for testing and offline runs.

    Usage::

        ok = MockProvider("a", response="KEY_FINDINGS:\\n- fine\\nSCORE: 7")
        down = MockProvider("b", response=TransientProviderError("503"))
        slow = MockProvider("c", response="late", delay=0.5)

        ok.queue("first answer", RuntimeError("boom"))   # consumed in order
        text = await ok.generate("prompt", timeout=5.0)

    Queued responses are consumed first; afterwards the default *response*
    is used for every call. A response may be a string, an exception
    instance (raised), or a callable receiving the request text.
    """

    def __init__(
        self,
        provider_id: str,
        response: MockResponse = "",
        *,
        delay: float = 0.0,
        model: str = "mock",
        configured: bool = True,
    ) -> None:
        super().__init__(provider_id, model)
        self._default = response
        self._delay = delay
        self._configured = configured
        self._queue: deque[MockResponse] = deque()
        self.requests: list[str] = []
        self.completed: int = 0

    def is_configured(self) -> bool:
        return self._configured

    def queue(self, *responses: MockResponse) -> MockProvider:
        """Queue one-shot responses; returns ``self`` for chaining."""
        self._queue.extend(responses)
        return self

    def set_response(self, response: MockResponse) -> None:
        self._default = response

    async def generate(self, request: str, timeout: float) -> str:
        self.requests.append(request)
        response = self._queue.popleft() if self._queue else self._default
        if self._delay:
            await asyncio.sleep(self._delay)
        if isinstance(response, BaseException):
            raise response
        text = response(request) if callable(response) else response
        self.completed += 1
        return text

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def reset(self) -> None:
        self.requests.clear()
        self._queue.clear()
        self.completed = 0
