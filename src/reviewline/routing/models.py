"""Routing data models: provider health records, attempts, and results."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from reviewline.core.constants import FailureKind, HealthStatus


class ProviderHealth(BaseModel):
    """Live health record for one provider.

    Records are frozen; the :class:`~reviewline.routing.health.HealthTracker`
    replaces the whole record on every update so readers never observe a
    half-applied change.

    ``score`` (0 to 1) and ``status`` summarize the recent request window.
    They are informational; availability follows ``consecutive_failures``.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    last_latency_ms: int | None = None
    available: bool = True
    score: float = 1.0
    status: HealthStatus = HealthStatus.HEALTHY
    success_rate: float = 1.0
    avg_latency_ms: int = 0
    window_requests: int = 0


class ProviderAttempt(BaseModel):
    """Outcome of trying one candidate inside a single router call."""

    provider_id: str
    success: bool
    kind: FailureKind | None = None
    reason: str | None = None
    latency_ms: int = 0


class RoutingResult(BaseModel):
    """Successful routing outcome.

    Attributes:
        value: Text returned by the provider.
        provider_used: Id of the provider that produced ``value``.
        latency_ms: Latency of the winning call.
        attempts: Every attempt made during the call, failures first.
    """

    value: str
    provider_used: str
    latency_ms: int
    attempts: list[ProviderAttempt] = Field(default_factory=list)

    @property
    def failed_attempts(self) -> list[ProviderAttempt]:
        return [a for a in self.attempts if not a.success]


class StructuredResult(RoutingResult):
    """Routing outcome whose text was read as JSON.

    ``data`` holds the decoded value (validated into the requested model
    when one was given). It is ``None`` when the text held no usable
    JSON, in which case ``parse_error`` says why.
    """

    data: Any = None
    parse_error: str | None = None
