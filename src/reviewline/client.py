"""Wire configuration into a ready-to-use :class:`PipelineEngine`."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from reviewline.audit.logger import AuditLogger
from reviewline.audit.sinks import StructlogAuditSink
from reviewline.callbacks.handler import PipelineCallbackHandler
from reviewline.core.config import ReviewlineConfig
from reviewline.pipeline.engine import PipelineEngine
from reviewline.pipeline.executor import StepExecutor
from reviewline.pipeline.stages import DEFAULT_STAGES, PromptBuilder, StageDefinition
from reviewline.providers.base import ProviderProtocol
from reviewline.providers.factory import build_providers
from reviewline.routing.health import HealthTracker
from reviewline.routing.router import Router
from reviewline.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


def create_router(
    config: ReviewlineConfig,
    providers: Sequence[ProviderProtocol] | None = None,
) -> Router:
    """Build the health tracker and router described by *config*.

    *providers* replaces the clients that would be built from
    ``config.providers``.
    """
    health = HealthTracker(
        failure_threshold=config.router.failure_threshold,
        recovery_timeout=config.router.recovery_timeout,
        window_size=config.router.health_window_size,
        latency_threshold_ms=config.router.latency_threshold_ms,
    )
    pool = list(providers) if providers is not None else list(build_providers(config.providers).values())
    if not pool:
        logger.warning("no_providers_configured", hint="every step will use a placeholder result")
    return Router(
        pool,
        health,
        strategy=config.router.strategy,
        default_timeout=config.router.timeout,
        per_call_timeout=config.router.per_call_timeout,
        cost_table=config.cost_table(),
    )


def create_engine(
    config: ReviewlineConfig | None = None,
    *,
    providers: Sequence[ProviderProtocol] | None = None,
    stages: Sequence[StageDefinition] = DEFAULT_STAGES,
    prompt_builder: PromptBuilder | None = None,
    audit: AuditLogger | None = None,
    callbacks: list[PipelineCallbackHandler] | None = None,
    setup_logging: bool = False,
) -> PipelineEngine:
    """Create a :class:`PipelineEngine` with router, health tracker and executor.

    Args:
        config: Settings; read from the environment when omitted.
        providers: Provider clients to use instead of ``config.providers``.
        stages: Stage definitions for new pipelines.
        prompt_builder: Custom request builder.
        audit: Audit logger; defaults to one writing to structlog.
        callbacks: Review notification handlers.
        setup_logging: Also call :func:`configure_logging` from *config*.

    Example::

        engine = create_engine(ReviewlineConfig.from_env())
        view = await engine.start("expand to EU?")
    """
    config = config if config is not None else ReviewlineConfig.from_env()
    if setup_logging:
        configure_logging(config.log_level, json=config.log_json)

    router = create_router(config, providers)
    executor = StepExecutor(
        router,
        prompt_builder,
        timeout=config.router.timeout,
        stages=stages,
    )
    engine = PipelineEngine(
        executor,
        stages=stages,
        audit=audit if audit is not None else AuditLogger([StructlogAuditSink()]),
        callbacks=callbacks,
    )
    logger.info(
        "engine_created",
        providers=router.provider_ids,
        strategy=str(config.router.strategy),
        stages=[s.id for s in stages],
    )
    return engine
