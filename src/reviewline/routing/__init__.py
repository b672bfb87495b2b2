from reviewline.routing.health import HealthTracker
from reviewline.routing.models import ProviderAttempt, ProviderHealth, RoutingResult, StructuredResult
from reviewline.routing.router import Router
from reviewline.routing.strategies import (
    DEFAULT_COST_TABLE,
    TASK_PREFERENCES,
    BestAvailableStrategy,
    CostOptimizedStrategy,
    OrderingStrategy,
    RoundRobinStrategy,
    TaskOptimizedStrategy,
    resolve_strategy,
)
from reviewline.routing.structured import extract_json, schema_prompt

__all__ = [
    "DEFAULT_COST_TABLE",
    "TASK_PREFERENCES",
    "BestAvailableStrategy",
    "CostOptimizedStrategy",
    "HealthTracker",
    "OrderingStrategy",
    "ProviderAttempt",
    "ProviderHealth",
    "RoundRobinStrategy",
    "Router",
    "RoutingResult",
    "StructuredResult",
    "TaskOptimizedStrategy",
    "extract_json",
    "resolve_strategy",
    "schema_prompt",
]
