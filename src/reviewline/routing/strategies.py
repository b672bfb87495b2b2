"""Candidate ordering strategies used by the router."""

from __future__ import annotations

import itertools
from typing import Protocol, runtime_checkable

from reviewline.core.constants import RoutingStrategy, TaskType
from reviewline.core.exceptions import ConfigurationError
from reviewline.routing.health import HealthTracker

# Approximate blended USD per 1M tokens; lower sorts first.
# Override via Router(cost_table=...).
DEFAULT_COST_TABLE: dict[str, float] = {
    "ollama": 0.0,
    "local": 0.0,
    "groq": 0.6,
    "openrouter": 1.0,
    "openai": 5.0,
    "anthropic": 9.0,
}

TASK_PREFERENCES: dict[TaskType, list[str]] = {
    TaskType.OPTION_GENERATION: ["openai", "anthropic", "groq", "ollama"],
    TaskType.ANALYSIS: ["anthropic", "openai", "groq", "ollama"],
    TaskType.SUMMARIZATION: ["anthropic", "openai", "groq", "ollama"],
    TaskType.CLASSIFICATION: ["openai", "groq", "ollama", "anthropic"],
    TaskType.EXTRACTION: ["openai", "anthropic", "groq", "ollama"],
}


@runtime_checkable
class OrderingStrategy(Protocol):
    """Orders the available candidates for one request."""

    def order(
        self,
        candidates: list[str],
        health: HealthTracker,
        *,
        task_type: TaskType | None = None,
    ) -> list[str]: ...


class BestAvailableStrategy:
    """Healthiest provider first (health rank)."""

    def order(
        self,
        candidates: list[str],
        health: HealthTracker,
        *,
        task_type: TaskType | None = None,
    ) -> list[str]:
        return health.rank_available(candidates)


class CostOptimizedStrategy:
    """Cheapest provider first according to a static cost table.

    Providers missing from the table sort last, in health-rank order.
    """

    def __init__(self, cost_table: dict[str, float] | None = None) -> None:
        self._costs = dict(DEFAULT_COST_TABLE if cost_table is None else cost_table)

    def order(
        self,
        candidates: list[str],
        health: HealthTracker,
        *,
        task_type: TaskType | None = None,
    ) -> list[str]:
        ranked = health.rank_available(candidates)
        rank = {pid: i for i, pid in enumerate(ranked)}
        return sorted(
            ranked,
            key=lambda pid: (pid not in self._costs, self._costs.get(pid, 0.0), rank[pid]),
        )


class RoundRobinStrategy:
    """Rotate the starting provider on every call."""

    def __init__(self) -> None:
        self._counter = itertools.count()

    def order(
        self,
        candidates: list[str],
        health: HealthTracker,
        *,
        task_type: TaskType | None = None,
    ) -> list[str]:
        available = [pid for pid in candidates if health.is_available(pid)]
        if not available:
            return []
        offset = next(self._counter) % len(available)
        return available[offset:] + available[:offset]


class TaskOptimizedStrategy:
    """Follow a per-task preference list, then fall back to health rank."""

    def __init__(self, preferences: dict[TaskType, list[str]] | None = None) -> None:
        self._preferences = preferences or TASK_PREFERENCES

    def order(
        self,
        candidates: list[str],
        health: HealthTracker,
        *,
        task_type: TaskType | None = None,
    ) -> list[str]:
        ranked = health.rank_available(candidates)
        preferred = self._preferences.get(task_type or TaskType.ANALYSIS, [])
        rank = {pid: i for i, pid in enumerate(ranked)}

        def _key(pid: str) -> tuple[int, int]:
            if pid in preferred:
                return (0, preferred.index(pid))
            return (1, rank[pid])

        return sorted(ranked, key=_key)


def resolve_strategy(
    strategy: RoutingStrategy | str | OrderingStrategy,
    *,
    cost_table: dict[str, float] | None = None,
) -> OrderingStrategy:
    """Turn a strategy name (or an object) into an :class:`OrderingStrategy`.

    Raises:
        ConfigurationError: If *strategy* names no known strategy.
    """
    if isinstance(strategy, OrderingStrategy):
        return strategy
    try:
        name = RoutingStrategy(strategy)
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown routing strategy: {strategy!r}. "
            f"Available: {', '.join(s.value for s in RoutingStrategy)}"
        ) from exc

    if name == RoutingStrategy.COST_OPTIMIZED:
        return CostOptimizedStrategy(cost_table)
    if name == RoutingStrategy.ROUND_ROBIN:
        return RoundRobinStrategy()
    if name == RoutingStrategy.TASK_OPTIMIZED:
        return TaskOptimizedStrategy()
    return BestAvailableStrategy()
