from __future__ import annotations

from enum import StrEnum


class PipelineStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"  # transient, always resolves back to PENDING


class ReviewAction(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class RoutingStrategy(StrEnum):
    BEST_AVAILABLE = "best_available"
    COST_OPTIMIZED = "cost_optimized"
    ROUND_ROBIN = "round_robin"
    TASK_OPTIMIZED = "task_optimized"


class TaskType(StrEnum):
    OPTION_GENERATION = "option_generation"
    ANALYSIS = "analysis"
    SUMMARIZATION = "summarization"
    CLASSIFICATION = "classification"
    EXTRACTION = "extraction"


class FailureKind(StrEnum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    DEADLINE = "deadline"  # candidate never tried, overall deadline elapsed
    UNAVAILABLE = "unavailable"  # skipped, marked unhealthy


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"


class ProviderKind(StrEnum):
    OPENAI_COMPAT = "openai_compat"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    MOCK = "mock"


# Inclusive score range for step results.
SCORE_MIN = 1
SCORE_MAX = 10
SCORE_MIDPOINT = 5
