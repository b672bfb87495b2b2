"""Per-provider health tracking that drives routing decisions."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, NamedTuple

import structlog

from reviewline.core.constants import HealthStatus
from reviewline.routing.models import ProviderHealth

logger = structlog.get_logger(__name__)

# Lowest score for each status label, checked in order.
STATUS_THRESHOLDS: dict[HealthStatus, float] = {
    HealthStatus.HEALTHY: 0.8,
    HealthStatus.DEGRADED: 0.5,
    HealthStatus.UNHEALTHY: 0.2,
}

DEFAULT_WEIGHTS: dict[str, float] = {
    "success_rate": 0.4,
    "latency": 0.3,
    "availability": 0.3,
}

# Score lost per consecutive failure in the availability component.
STREAK_PENALTY = 0.2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def status_for(score: float) -> HealthStatus:
    """Map a 0..1 health score to its status label."""
    for status, floor in STATUS_THRESHOLDS.items():
        if score >= floor:
            return status
    return HealthStatus.CRITICAL


class _Sample(NamedTuple):
    at: datetime
    success: bool
    latency_ms: int | None


class HealthTracker:
    """Track whether each provider is currently usable.

    The tracker never makes network calls; it only folds observed call
    outcomes into a :class:`ProviderHealth` record per provider. State is
    process-scoped and starts empty; unknown providers are assumed
    available until they fail.

    Besides the failure streak that decides availability, the tracker
    keeps a bounded window of recent requests per provider and derives a
    weighted 0..1 ``score`` and a ``status`` label from it.

    Each provider has its own lock, so concurrent pipelines reporting on
    unrelated providers never wait on each other. Every write replaces the
    provider's frozen record in a single assignment.

    Args:
        failure_threshold: Consecutive failures after which a provider is
            marked unavailable.
        recovery_timeout: Seconds after the last failure at which an
            unavailable provider becomes eligible for one trial call.
            ``None`` disables automatic recovery.
        window_size: Number of recent requests kept per provider.
        window_max_age: Seconds after which a request leaves the window.
            ``None`` keeps requests until they are pushed out by size.
        latency_threshold_ms: Average latency at which the latency part of
            the score drops to zero.
        weights: Overrides for :data:`DEFAULT_WEIGHTS`.
        clock: Source of the current time (overridable in tests).
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float | None = 60.0,
        *,
        window_size: int = 100,
        window_max_age: float | None = 3600.0,
        latency_threshold_ms: float = 5000.0,
        weights: dict[str, float] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        if latency_threshold_ms <= 0:
            raise ValueError("latency_threshold_ms must be > 0")
        unknown = set(weights or {}) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown health weights: {', '.join(sorted(unknown))}")
        self._weights = {**DEFAULT_WEIGHTS, **(weights or {})}
        if sum(self._weights.values()) <= 0:
            raise ValueError("health weights must sum to more than zero")

        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._window_size = window_size
        self._window_max_age = window_max_age
        self._latency_threshold_ms = latency_threshold_ms
        self._clock = clock
        self._records: dict[str, ProviderHealth] = {}
        self._windows: dict[str, deque[_Sample]] = {}
        self._locks: dict[str, threading.Lock] = {}

    def __repr__(self) -> str:
        return (
            f"HealthTracker(providers={len(self._records)}, "
            f"failure_threshold={self._failure_threshold})"
        )

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_success(self, provider_id: str, latency_ms: int | None = None) -> ProviderHealth:
        """Clear the failure streak and mark *provider_id* available."""
        with self._lock_for(provider_id):
            current = self._current(provider_id)
            now = self._clock()
            stats = self._push(provider_id, _Sample(now, True, latency_ms), now, failures=0)
            updated = current.model_copy(
                update={
                    "consecutive_failures": 0,
                    "total_successes": current.total_successes + 1,
                    "last_success_at": now,
                    "last_latency_ms": latency_ms,
                    "available": True,
                    **stats,
                }
            )
            self._records[provider_id] = updated

        if not current.available:
            logger.info("provider_recovered", provider=provider_id, score=updated.score)
        return updated

    def record_failure(self, provider_id: str, reason: str) -> ProviderHealth:
        """Count a failure; mark unavailable once the threshold is reached."""
        with self._lock_for(provider_id):
            current = self._current(provider_id)
            now = self._clock()
            failures = current.consecutive_failures + 1
            stats = self._push(provider_id, _Sample(now, False, None), now, failures=failures)
            updated = current.model_copy(
                update={
                    "consecutive_failures": failures,
                    "total_failures": current.total_failures + 1,
                    "last_failure_at": now,
                    "last_error": reason,
                    "available": current.available and failures < self._failure_threshold,
                    **stats,
                }
            )
            self._records[provider_id] = updated

        if current.available and not updated.available:
            logger.warning(
                "provider_marked_unavailable",
                provider=provider_id,
                consecutive_failures=failures,
                score=updated.score,
                reason=reason,
            )
        else:
            logger.debug(
                "provider_failure_recorded",
                provider=provider_id,
                consecutive_failures=failures,
                score=updated.score,
                reason=reason,
            )
        return updated

    def reset(self, provider_id: str) -> None:
        """Forget everything known about *provider_id*."""
        with self._lock_for(provider_id):
            self._records.pop(provider_id, None)
            self._windows.pop(provider_id, None)
        logger.info("provider_health_reset", provider=provider_id)

    def mark_recovered(self, provider_id: str) -> None:
        """Make *provider_id* available again after a manual check.

        The score is lifted to at least the ``degraded`` floor; the request
        window itself is kept.
        """
        with self._lock_for(provider_id):
            current = self._records.get(provider_id)
            if current is None:
                return
            score = max(current.score, STATUS_THRESHOLDS[HealthStatus.DEGRADED])
            self._records[provider_id] = current.model_copy(
                update={
                    "consecutive_failures": 0,
                    "available": True,
                    "score": score,
                    "status": status_for(score),
                }
            )
        logger.info("provider_marked_recovered", provider=provider_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, provider_id: str) -> ProviderHealth:
        """Return the current record (a fresh default for unknown providers)."""
        return self._current(provider_id)

    def score(self, provider_id: str) -> float:
        return self._current(provider_id).score

    def status(self, provider_id: str) -> HealthStatus:
        return self._current(provider_id).status

    def is_available(self, provider_id: str) -> bool:
        record = self._records.get(provider_id)
        if record is None or record.available:
            return True
        if self._recovery_timeout is None or record.last_failure_at is None:
            return False
        elapsed = (self._clock() - record.last_failure_at).total_seconds()
        return elapsed >= self._recovery_timeout

    def rank_available(self, provider_ids: Iterable[str]) -> list[str]:
        """Return available providers, healthiest first.

        Ordered by fewest consecutive failures, then most recent success.
        Providers that never succeeded sort after those that did; ties keep
        their input order.
        """
        available = [pid for pid in provider_ids if self.is_available(pid)]

        def _key(pid: str) -> tuple[int, int, float]:
            record = self._current(pid)
            if record.last_success_at is None:
                return (record.consecutive_failures, 1, 0.0)
            return (record.consecutive_failures, 0, -record.last_success_at.timestamp())

        return sorted(available, key=_key)

    def snapshot(self) -> dict[str, ProviderHealth]:
        """Return a copy of every known record keyed by provider id."""
        return dict(self._records)

    def describe(self) -> list[dict[str, Any]]:
        """Return JSON-friendly health rows, eligible first, then by score."""
        ranked = sorted(
            self._records.values(),
            key=lambda r: (not self.is_available(r.provider_id), -r.score),
        )
        return [
            {**r.model_dump(mode="json"), "eligible": self.is_available(r.provider_id)}
            for r in ranked
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, provider_id: str) -> threading.Lock:
        # dict.setdefault is atomic, so two writers always share one lock.
        return self._locks.setdefault(provider_id, threading.Lock())

    def _current(self, provider_id: str) -> ProviderHealth:
        return self._records.get(provider_id) or ProviderHealth(provider_id=provider_id)

    def _push(self, provider_id: str, sample: _Sample, now: datetime, *, failures: int) -> dict[str, Any]:
        """Append *sample* to the provider's window and return the derived fields.

        Caller holds the provider lock.
        """
        window = self._windows.get(provider_id)
        if window is None:
            window = self._windows[provider_id] = deque(maxlen=self._window_size)
        window.append(sample)
        if self._window_max_age is not None:
            while window and (now - window[0].at).total_seconds() > self._window_max_age:
                window.popleft()

        successes = [s for s in window if s.success]
        success_rate = len(successes) / len(window) if window else 1.0
        latencies = [s.latency_ms for s in successes if s.latency_ms]
        avg_latency = round(sum(latencies) / len(latencies)) if latencies else 0

        weights = self._weights
        latency_part = max(0.0, 1 - avg_latency / self._latency_threshold_ms)
        streak_part = max(0.0, 1 - failures * STREAK_PENALTY)
        weighted = (
            success_rate * weights["success_rate"]
            + latency_part * weights["latency"]
            + streak_part * weights["availability"]
        )
        score = round(weighted / sum(weights.values()), 4)
        return {
            "score": score,
            "status": status_for(score),
            "success_rate": round(success_rate, 4),
            "avg_latency_ms": avg_latency,
            "window_requests": len(window),
        }
