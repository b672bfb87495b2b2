"""Shared test fixtures."""
from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from reviewline.audit.logger import AuditLogger
from reviewline.audit.sinks import InMemoryAuditSink
from reviewline.pipeline.engine import PipelineEngine
from reviewline.pipeline.executor import StepExecutor
from reviewline.pipeline.stages import DEFAULT_STAGES
from reviewline.providers.mock import MockProvider
from reviewline.routing.health import HealthTracker
from reviewline.routing.router import Router

GOOD_RESPONSE = """KEY_FINDINGS:
- EU demand for the product is growing quickly
- Two incumbents hold most of the market

RISKS:
- GDPR compliance adds launch cost

RECOMMENDATIONS:
- Start with a single pilot country
- Partner with a local distributor

SCORE: 7"""


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider("primary", response=GOOD_RESPONSE)


@pytest.fixture
def health() -> HealthTracker:
    return HealthTracker(failure_threshold=3)


@pytest.fixture
def router(provider: MockProvider, health: HealthTracker) -> Router:
    return Router([provider], health, default_timeout=2.0)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def engine(router: Router, audit_sink: InMemoryAuditSink) -> PipelineEngine:
    stages = DEFAULT_STAGES[:3]
    executor = StepExecutor(router, timeout=2.0, stages=stages)
    return PipelineEngine(executor, stages=stages, audit=AuditLogger([audit_sink]))


@pytest.fixture
async def closing_router(router: Router) -> AsyncGenerator[Router, None]:
    yield router
    await router.aclose()


@pytest.fixture
def good_response() -> str:
    return GOOD_RESPONSE
