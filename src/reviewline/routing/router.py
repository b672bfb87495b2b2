"""Health-aware request router with sequential failover and one deadline."""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import BaseModel, ValidationError
import structlog

from reviewline.core.constants import FailureKind, RoutingStrategy, TaskType
from reviewline.core.exceptions import (
    AllProvidersFailedError,
    FatalProviderError,
    OutputParsingError,
    TransientProviderError,
)
from reviewline.providers.base import ProviderProtocol
from reviewline.providers.http import MALFORMED_RESPONSE
from reviewline.routing.health import HealthTracker
from reviewline.routing.models import ProviderAttempt, RoutingResult, StructuredResult
from reviewline.routing.strategies import OrderingStrategy, resolve_strategy
from reviewline.routing.structured import extract_json, schema_prompt

logger = structlog.get_logger(__name__)

# Remaining budget (seconds) below which no new candidate is started.
_MIN_CALL_BUDGET = 0.001


class Router:
    """Route one generation request across providers.

    Candidates are tried strictly one after another in the order produced
    by the strategy (or with a healthy *preferred_provider* first). The
    first success wins. Every outcome is reported to the
    :class:`HealthTracker`. One wall-clock deadline bounds the whole call:
    each provider call gets at most the time left, and no new candidate is
    started once it has elapsed.

    The router never substitutes a default answer; when nothing succeeds
    it raises :class:`AllProvidersFailedError` listing every attempt.

    Args:
        providers: Provider clients keyed by provider id, or a list of them.
        health: Shared health tracker. A new one is created when omitted.
        strategy: Default ordering strategy (name or object).
        default_timeout: Overall deadline in seconds when a call passes none.
        per_call_timeout: Optional cap for any single provider call.
        cost_table: Cost table for the cost-optimized strategy.

    Example::

        router = Router([groq, openrouter, ollama], strategy="best_available")
        result = await router.generate(prompt, timeout=20.0)
        print(result.provider_used, result.value)
    """

    def __init__(
        self,
        providers: dict[str, ProviderProtocol] | list[ProviderProtocol] | None = None,
        health: HealthTracker | None = None,
        *,
        strategy: RoutingStrategy | str | OrderingStrategy = RoutingStrategy.BEST_AVAILABLE,
        default_timeout: float = 60.0,
        per_call_timeout: float | None = None,
        cost_table: dict[str, float] | None = None,
    ) -> None:
        if isinstance(providers, list):
            providers = {p.provider_id: p for p in providers}
        self._providers: dict[str, ProviderProtocol] = dict(providers or {})
        self._health = health if health is not None else HealthTracker()
        self._cost_table = cost_table
        self._strategies: dict[RoutingStrategy, OrderingStrategy] = {}
        self._strategy_name = strategy
        self._strategy = self._resolve(strategy)
        self._default_timeout = default_timeout
        self._per_call_timeout = per_call_timeout

    def __repr__(self) -> str:
        return f"Router(providers={list(self._providers)!r}, strategy={self._strategy_name!r})"

    @property
    def health(self) -> HealthTracker:
        return self._health

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    # ------------------------------------------------------------------
    # Provider pool
    # ------------------------------------------------------------------

    def add_provider(self, provider: ProviderProtocol) -> Router:
        """Register *provider*. Returns ``self`` for chaining."""
        self._providers[provider.provider_id] = provider
        logger.info("provider_added", provider=provider.provider_id)
        return self

    def remove_provider(self, provider_id: str) -> None:
        """Unregister *provider_id* and forget its health record."""
        self._providers.pop(provider_id, None)
        self._health.reset(provider_id)
        logger.info("provider_removed", provider=provider_id)

    def set_strategy(self, strategy: RoutingStrategy | str | OrderingStrategy) -> None:
        self._strategy = self._resolve(strategy)
        self._strategy_name = strategy
        logger.info("routing_strategy_changed", strategy=str(strategy))

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def candidates(
        self,
        preferred_provider: str | None = None,
        strategy: RoutingStrategy | str | OrderingStrategy | None = None,
        task_type: TaskType | None = None,
    ) -> list[str]:
        """Return the ordered provider ids one call would try."""
        usable = [pid for pid, p in self._providers.items() if _is_configured(p)]
        orderer = self._strategy if strategy is None else self._resolve(strategy)

        if preferred_provider in usable and self._health.is_available(preferred_provider):
            rest = [pid for pid in usable if pid != preferred_provider]
            return [preferred_provider, *orderer.order(rest, self._health, task_type=task_type)]
        return orderer.order(usable, self._health, task_type=task_type)

    def _resolve(self, strategy: RoutingStrategy | str | OrderingStrategy) -> OrderingStrategy:
        # One instance per name, so stateful strategies such as round robin
        # keep their position across per-call overrides.
        if isinstance(strategy, OrderingStrategy):
            return strategy
        cached = self._strategies.get(strategy)
        if cached is None:
            cached = resolve_strategy(strategy, cost_table=self._cost_table)
            self._strategies[RoutingStrategy(strategy)] = cached
        return cached

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        request: str,
        *,
        preferred_provider: str | None = None,
        timeout: float | None = None,
        strategy: RoutingStrategy | str | OrderingStrategy | None = None,
        task_type: TaskType | None = None,
    ) -> RoutingResult:
        """Generate text for *request* using the best available provider.

        Args:
            request: Prompt text.
            preferred_provider: Provider to try first when it is healthy.
            timeout: Overall deadline in seconds (defaults to the router's).
            strategy: Per-call strategy override.
            task_type: Hint for the task-optimized strategy.

        Returns:
            A :class:`RoutingResult` from the first provider that succeeded.

        Raises:
            AllProvidersFailedError: No candidate succeeded before the deadline.
        """
        loop = asyncio.get_running_loop()
        budget = self._default_timeout if timeout is None else timeout
        deadline = loop.time() + budget
        order = self.candidates(preferred_provider, strategy, task_type)

        if not order:
            skipped = [
                ProviderAttempt(
                    provider_id=pid,
                    success=False,
                    kind=FailureKind.UNAVAILABLE,
                    reason="provider marked unavailable"
                    if _is_configured(p)
                    else "provider not configured",
                )
                for pid, p in self._providers.items()
            ]
            logger.error("no_providers_available", providers=list(self._providers))
            raise AllProvidersFailedError("No providers available", skipped)

        attempts: list[ProviderAttempt] = []
        for provider_id in order:
            remaining = deadline - loop.time()
            if remaining <= _MIN_CALL_BUDGET:
                attempts.append(
                    ProviderAttempt(
                        provider_id=provider_id,
                        success=False,
                        kind=FailureKind.DEADLINE,
                        reason="deadline elapsed before attempt",
                    )
                )
                continue

            call_timeout = remaining
            if self._per_call_timeout is not None:
                call_timeout = min(call_timeout, self._per_call_timeout)

            attempt, value = await self._attempt(provider_id, request, call_timeout)
            attempts.append(attempt)
            if value is not None:
                return RoutingResult(
                    value=value,
                    provider_used=provider_id,
                    latency_ms=attempt.latency_ms,
                    attempts=attempts,
                )

        logger.error(
            "all_providers_failed",
            attempts=[(a.provider_id, str(a.kind), a.reason) for a in attempts],
        )
        tried = ", ".join(f"{a.provider_id} ({a.reason})" for a in attempts)
        raise AllProvidersFailedError(f"All providers failed: {tried}", attempts)

    async def generate_structured(
        self,
        request: str,
        output_model: type[BaseModel] | None = None,
        *,
        preferred_provider: str | None = None,
        timeout: float | None = None,
        strategy: RoutingStrategy | str | OrderingStrategy | None = None,
        task_type: TaskType | None = None,
    ) -> StructuredResult:
        """Generate text for *request* and read it as JSON.

        When *output_model* is given, its JSON schema is appended to the
        prompt and the decoded value is validated into it. A response that
        holds no usable JSON still returns, with ``data=None`` and
        ``parse_error`` set; the provider call itself succeeded.

        Raises:
            AllProvidersFailedError: No candidate succeeded before the deadline.
        """
        prompt = request + schema_prompt(output_model) if output_model is not None else request
        result = await self.generate(
            prompt,
            preferred_provider=preferred_provider,
            timeout=timeout,
            strategy=strategy,
            task_type=task_type,
        )
        fields = result.model_dump()
        try:
            data = extract_json(result.value)
            if output_model is not None:
                data = output_model.model_validate(data)
        except (OutputParsingError, ValidationError) as exc:
            logger.warning(
                "structured_response_unparsed",
                provider=result.provider_used,
                error=str(exc),
            )
            return StructuredResult(**fields, parse_error=str(exc))
        return StructuredResult(**fields, data=data)

    async def _attempt(
        self, provider_id: str, request: str, call_timeout: float
    ) -> tuple[ProviderAttempt, str | None]:
        """Call one provider and fold the outcome into health state.

        Returns the attempt record and the generated text (``None`` on failure).
        """
        provider = self._providers[provider_id]
        loop = asyncio.get_running_loop()
        started = loop.time()

        def _elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        kind: FailureKind
        try:
            # wait_for cancels the call on timeout, so a late answer can
            # never be applied to health or pipeline state.
            value: Any = await asyncio.wait_for(
                provider.generate(request, call_timeout), timeout=call_timeout
            )
        except asyncio.TimeoutError:
            kind, reason = FailureKind.TIMEOUT, f"timed out after {call_timeout:.3f}s"
        except FatalProviderError as exc:
            kind, reason = FailureKind.FATAL, str(exc)
            logger.error("provider_fatal_error", provider=provider_id, error=reason, code=exc.code)
        except TransientProviderError as exc:
            kind = FailureKind.MALFORMED if exc.code == MALFORMED_RESPONSE else FailureKind.TRANSIENT
            reason = str(exc)
        except Exception as exc:  # noqa: BLE001
            kind, reason = FailureKind.TRANSIENT, f"{type(exc).__name__}: {exc}"
        else:
            if isinstance(value, str) and value.strip():
                latency_ms = _elapsed_ms()
                self._health.record_success(provider_id, latency_ms)
                logger.info("provider_request_completed", provider=provider_id, latency_ms=latency_ms)
                return ProviderAttempt(provider_id=provider_id, success=True, latency_ms=latency_ms), value
            kind, reason = FailureKind.MALFORMED, "empty or non-text response"

        self._health.record_failure(provider_id, reason)
        logger.warning(
            "provider_failed_trying_next",
            provider=provider_id,
            kind=str(kind),
            error=reason,
        )
        failed = ProviderAttempt(
            provider_id=provider_id,
            success=False,
            kind=kind,
            reason=reason,
            latency_ms=_elapsed_ms(),
        )
        return failed, None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return strategy, per-provider configuration and health."""
        providers: dict[str, Any] = {}
        for pid, provider in self._providers.items():
            record = self._health.get(pid)
            providers[pid] = {
                "configured": _is_configured(provider),
                "model": getattr(provider, "model", None),
                "available": self._health.is_available(pid),
                "consecutive_failures": record.consecutive_failures,
                "score": record.score,
                "status": str(record.status),
            }
        return {
            "strategy": str(self._strategy_name),
            "provider_count": len(providers),
            "available_count": sum(1 for p in providers.values() if p["available"]),
            "providers": providers,
            "health": self._health.describe(),
        }

    async def aclose(self) -> None:
        """Close every provider that holds transport resources."""
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


def _is_configured(provider: ProviderProtocol) -> bool:
    check = getattr(provider, "is_configured", None)
    return bool(check()) if callable(check) else True
