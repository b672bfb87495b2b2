from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, Field

from reviewline.core.constants import ProviderKind, RoutingStrategy

# Provider id -> (kind, API key env var, model env var).
_ENV_PROVIDERS: dict[str, tuple[ProviderKind, str | None, str]] = {
    "groq": (ProviderKind.OPENAI_COMPAT, "GROQ_API_KEY", "GROQ_MODEL"),
    "openrouter": (ProviderKind.OPENAI_COMPAT, "OPENROUTER_API_KEY", "OPENROUTER_MODEL"),
    "openai": (ProviderKind.OPENAI_COMPAT, "OPENAI_API_KEY", "OPENAI_MODEL"),
    "anthropic": (ProviderKind.ANTHROPIC, "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL"),
}


class ProviderConfig(BaseModel):
    provider_id: str = Field(..., pattern=r"^[a-zA-Z0-9_.-]+$")
    kind: ProviderKind = ProviderKind.OPENAI_COMPAT
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, ge=1)
    cost_per_million: float | None = Field(default=None, ge=0.0)
    """Optional blended cost override used by the cost-optimized strategy."""


class RouterConfig(BaseModel):
    strategy: RoutingStrategy = RoutingStrategy.BEST_AVAILABLE
    timeout: float = Field(default=60.0, gt=0.0, le=3600.0)
    """Overall deadline for one routed request, in seconds."""
    per_call_timeout: float | None = Field(default=30.0, gt=0.0)
    """Upper bound for a single provider call; ``None`` means the deadline only."""
    failure_threshold: int = Field(default=3, ge=1, le=100)
    recovery_timeout: float | None = Field(default=60.0, ge=0.0)
    health_window_size: int = Field(default=100, ge=1)
    latency_threshold_ms: float = Field(default=5000.0, gt=0.0)
    """Average latency at which a provider's health score loses its latency share."""
    cost_table: dict[str, float] | None = None


class ReviewlineConfig(BaseModel):
    router: RouterConfig = Field(default_factory=RouterConfig)
    providers: list[ProviderConfig] = Field(default_factory=list)
    preferred_provider: str | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    def cost_table(self) -> dict[str, float] | None:
        """Merge per-provider cost overrides into the router cost table."""
        overrides = {
            p.provider_id: p.cost_per_million
            for p in self.providers
            if p.cost_per_million is not None
        }
        if not overrides and self.router.cost_table is None:
            return None
        from reviewline.routing.strategies import DEFAULT_COST_TABLE

        table = dict(self.router.cost_table or DEFAULT_COST_TABLE)
        table.update(overrides)
        return table

    @classmethod
    def from_env(cls) -> ReviewlineConfig:
        """Create a :class:`ReviewlineConfig` from environment variables.

        Router settings (all optional):

        * ``REVIEWLINE_STRATEGY`` → ``router.strategy``
        * ``REVIEWLINE_TIMEOUT`` → ``router.timeout`` (seconds)
        * ``REVIEWLINE_PER_CALL_TIMEOUT`` → ``router.per_call_timeout``
        * ``REVIEWLINE_FAILURE_THRESHOLD`` → ``router.failure_threshold``
        * ``REVIEWLINE_RECOVERY_TIMEOUT`` → ``router.recovery_timeout``
        * ``REVIEWLINE_PREFERRED_PROVIDER`` → ``preferred_provider``
        * ``REVIEWLINE_LOG_LEVEL`` → ``log_level``

        Providers are enabled by their credentials: ``GROQ_API_KEY``,
        ``OPENROUTER_API_KEY``, ``OPENAI_API_KEY`` and ``ANTHROPIC_API_KEY``
        (each with an optional ``*_MODEL``), and ``OLLAMA_BASE_URL`` /
        ``OLLAMA_MODEL`` for a local Ollama server.

        Any variable that is not set or is empty is left at its default value.
        """
        router: dict[str, Any] = {}

        strategy = os.environ.get("REVIEWLINE_STRATEGY")
        if strategy:
            router["strategy"] = strategy

        timeout = os.environ.get("REVIEWLINE_TIMEOUT")
        if timeout:
            router["timeout"] = float(timeout)

        per_call = os.environ.get("REVIEWLINE_PER_CALL_TIMEOUT")
        if per_call:
            router["per_call_timeout"] = float(per_call)

        threshold = os.environ.get("REVIEWLINE_FAILURE_THRESHOLD")
        if threshold:
            router["failure_threshold"] = int(threshold)

        recovery = os.environ.get("REVIEWLINE_RECOVERY_TIMEOUT")
        if recovery:
            router["recovery_timeout"] = float(recovery)

        providers: list[ProviderConfig] = []
        for provider_id, (kind, key_var, model_var) in _ENV_PROVIDERS.items():
            api_key = os.environ.get(key_var) if key_var else None
            if not api_key:
                continue
            providers.append(
                ProviderConfig(
                    provider_id=provider_id,
                    kind=kind,
                    api_key=api_key,
                    model=os.environ.get(model_var) or None,
                )
            )

        ollama_url = os.environ.get("OLLAMA_BASE_URL")
        if ollama_url:
            providers.append(
                ProviderConfig(
                    provider_id="ollama",
                    kind=ProviderKind.OLLAMA,
                    base_url=ollama_url,
                    model=os.environ.get("OLLAMA_MODEL") or None,
                )
            )

        kwargs: dict[str, Any] = {"router": RouterConfig(**router), "providers": providers}

        preferred = os.environ.get("REVIEWLINE_PREFERRED_PROVIDER")
        if preferred:
            kwargs["preferred_provider"] = preferred

        log_level = os.environ.get("REVIEWLINE_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level.upper()

        return cls(**kwargs)
