"""Tests for routing/router.py — Router failover, deadline and health reporting."""
from __future__ import annotations

import asyncio
import time

import pytest
from pydantic import BaseModel

from reviewline.core.constants import FailureKind
from reviewline.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    FatalProviderError,
    TransientProviderError,
)
from reviewline.providers.http import MALFORMED_RESPONSE
from reviewline.providers.mock import MockProvider
from reviewline.routing.health import HealthTracker
from reviewline.routing.router import Router


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------


async def test_falls_back_to_first_success() -> None:
    a = MockProvider("a", response=TransientProviderError("503"))
    b = MockProvider("b", response=FatalProviderError("401"))
    c = MockProvider("c", response="answer from c")
    health = HealthTracker()
    router = Router([a, b, c], health)

    result = await router.generate("prompt")

    assert result.provider_used == "c"
    assert result.value == "answer from c"
    assert [x.provider_id for x in result.attempts] == ["a", "b", "c"]
    assert [x.provider_id for x in result.failed_attempts] == ["a", "b"]
    assert health.get("a").consecutive_failures == 1
    assert health.get("b").consecutive_failures == 1
    assert health.get("c").total_successes == 1
    assert health.get("c").consecutive_failures == 0


async def test_first_success_stops_iteration() -> None:
    a = MockProvider("a", response="first")
    b = MockProvider("b", response="second")
    result = await Router([a, b]).generate("prompt")
    assert result.provider_used == "a"
    assert b.call_count == 0


async def test_all_failed_lists_every_reason() -> None:
    a = MockProvider("a", response=TransientProviderError("a is down"))
    b = MockProvider("b", response=RuntimeError("b exploded"))
    c = MockProvider("c", response=FatalProviderError("c rejected key"))
    router = Router([a, b, c])

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await router.generate("prompt")

    reasons = exc_info.value.reasons
    assert set(reasons) == {"a", "b", "c"}
    assert "a is down" in reasons["a"]
    assert "b exploded" in reasons["b"]
    assert "c rejected key" in reasons["c"]
    kinds = [x.kind for x in exc_info.value.attempts]
    assert kinds == [FailureKind.TRANSIENT, FailureKind.TRANSIENT, FailureKind.FATAL]


async def test_empty_response_is_malformed() -> None:
    a = MockProvider("a", response="   ")
    b = MockProvider("b", response="ok")
    health = HealthTracker()
    result = await Router([a, b], health).generate("prompt")
    assert result.provider_used == "b"
    assert result.attempts[0].kind == FailureKind.MALFORMED
    assert health.get("a").last_error == "empty or non-text response"


async def test_malformed_transport_error_is_classified() -> None:
    a = MockProvider("a", response=TransientProviderError("bad json", code=MALFORMED_RESPONSE))
    b = MockProvider("b", response="ok")
    result = await Router([a, b]).generate("prompt")
    assert result.attempts[0].kind == FailureKind.MALFORMED


async def test_no_providers() -> None:
    with pytest.raises(AllProvidersFailedError, match="No providers available"):
        await Router([]).generate("prompt")


async def test_unavailable_providers_are_not_tried() -> None:
    dead = MockProvider("dead", response="never")
    live = MockProvider("live", response="ok")
    health = HealthTracker(failure_threshold=1, recovery_timeout=None)
    health.record_failure("dead", "down")

    result = await Router([dead, live], health).generate("prompt")

    assert result.provider_used == "live"
    assert dead.call_count == 0


async def test_all_unavailable_reports_skipped() -> None:
    dead = MockProvider("dead", response="never")
    unconfigured = MockProvider("off", response="never", configured=False)
    health = HealthTracker(failure_threshold=1, recovery_timeout=None)
    health.record_failure("dead", "down")

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await Router([dead, unconfigured], health).generate("prompt")

    assert {a.kind for a in exc_info.value.attempts} == {FailureKind.UNAVAILABLE}
    assert exc_info.value.reasons["off"] == "provider not configured"


async def test_repeated_failures_take_provider_out_of_rotation() -> None:
    flaky = MockProvider("flaky", response=TransientProviderError("503"))
    backup = MockProvider("backup", response="ok")
    health = HealthTracker(failure_threshold=2, recovery_timeout=None)
    router = Router([flaky, backup], health, strategy="round_robin")

    for _ in range(4):
        await router.generate("prompt")

    assert health.is_available("flaky") is False
    assert flaky.call_count == 2


# ---------------------------------------------------------------------------
# Preferred provider and strategies
# ---------------------------------------------------------------------------


async def test_preferred_provider_goes_first_when_healthy() -> None:
    a = MockProvider("a", response="from a")
    b = MockProvider("b", response="from b")
    result = await Router([a, b]).generate("prompt", preferred_provider="b")
    assert result.provider_used == "b"
    assert a.call_count == 0


async def test_unhealthy_preferred_provider_is_skipped() -> None:
    a = MockProvider("a", response="from a")
    b = MockProvider("b", response="from b")
    health = HealthTracker(failure_threshold=1, recovery_timeout=None)
    health.record_failure("b", "down")
    result = await Router([a, b], health).generate("prompt", preferred_provider="b")
    assert result.provider_used == "a"


async def test_unknown_preferred_provider_is_ignored() -> None:
    a = MockProvider("a", response="from a")
    result = await Router([a]).generate("prompt", preferred_provider="missing")
    assert result.provider_used == "a"


async def test_per_call_strategy_override() -> None:
    expensive = MockProvider("anthropic", response="pricey")
    cheap = MockProvider("ollama", response="cheap")
    router = Router([expensive, cheap])
    result = await router.generate("prompt", strategy="cost_optimized")
    assert result.provider_used == "ollama"


async def test_per_call_round_robin_keeps_rotating() -> None:
    router = Router([MockProvider("a", response="from a"), MockProvider("b", response="from b")])
    used = [(await router.generate("x", strategy="round_robin")).provider_used for _ in range(4)]
    assert used == ["a", "b", "a", "b"]
    assert router.status()["strategy"] == "best_available"


def test_unknown_strategy_rejected() -> None:
    with pytest.raises(ConfigurationError):
        Router([], strategy="nope")


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------


async def test_deadline_cuts_slow_provider_short() -> None:
    slow = MockProvider("slow", response="too late", delay=0.5)
    health = HealthTracker()
    router = Router([slow], health)

    started = time.monotonic()
    with pytest.raises(AllProvidersFailedError) as exc_info:
        await router.generate("prompt", timeout=0.05)
    elapsed = time.monotonic() - started

    assert elapsed < 0.3
    assert exc_info.value.attempts[0].kind == FailureKind.TIMEOUT
    assert slow.completed == 0
    assert health.get("slow").consecutive_failures == 1
    assert health.get("slow").total_successes == 0


async def test_no_candidate_started_after_deadline() -> None:
    slow = MockProvider("slow", response="too late", delay=0.5)
    fast = MockProvider("fast", response="quick")
    health = HealthTracker()
    router = Router([slow, fast], health)

    started = time.monotonic()
    with pytest.raises(AllProvidersFailedError) as exc_info:
        await router.generate("prompt", timeout=0.05)

    assert time.monotonic() - started < 0.3
    assert fast.call_count == 0
    assert exc_info.value.attempts[1].kind == FailureKind.DEADLINE
    # Skipped candidates are not reported to health.
    assert "fast" not in health.snapshot()


async def test_per_call_timeout_leaves_room_for_fallback() -> None:
    slow = MockProvider("slow", response="too late", delay=0.5)
    fast = MockProvider("fast", response="quick")
    router = Router([slow, fast], per_call_timeout=0.05)

    result = await router.generate("prompt", timeout=1.0)

    assert result.provider_used == "fast"
    assert result.attempts[0].kind == FailureKind.TIMEOUT


async def test_late_answer_never_reaches_health() -> None:
    slow = MockProvider("slow", response="too late", delay=0.2)
    health = HealthTracker()
    router = Router([slow], health)
    with pytest.raises(AllProvidersFailedError):
        await router.generate("prompt", timeout=0.05)
    await asyncio.sleep(0.3)
    assert health.get("slow").total_successes == 0
    assert slow.completed == 0


# ---------------------------------------------------------------------------
# Pool management and status
# ---------------------------------------------------------------------------


async def test_add_and_remove_provider() -> None:
    router = Router()
    router.add_provider(MockProvider("a", response="ok"))
    assert router.provider_ids == ["a"]
    result = await router.generate("prompt")
    assert result.provider_used == "a"

    router.remove_provider("a")
    assert router.provider_ids == []
    assert "a" not in router.health.snapshot()


def test_status_reports_providers_and_health() -> None:
    health = HealthTracker(failure_threshold=1, recovery_timeout=None)
    health.record_failure("b", "down")
    router = Router(
        [MockProvider("a"), MockProvider("b"), MockProvider("c", configured=False)],
        health,
        strategy="round_robin",
    )
    status = router.status()
    assert status["strategy"] == "round_robin"
    assert status["provider_count"] == 3
    assert status["available_count"] == 2
    assert status["providers"]["b"]["available"] is False
    assert status["providers"]["c"]["configured"] is False
    assert status["providers"]["a"]["model"] == "mock"
    assert status["providers"]["a"]["status"] == "healthy"
    assert status["providers"]["b"]["score"] < status["providers"]["a"]["score"]


def test_candidates_exclude_unconfigured() -> None:
    router = Router([MockProvider("a"), MockProvider("b", configured=False)])
    assert router.candidates() == ["a"]


# ---------------------------------------------------------------------------
# Structured generation
# ---------------------------------------------------------------------------


class _Verdict(BaseModel):
    decision: str
    confidence: float


async def test_generate_structured_reads_fenced_json() -> None:
    reply = 'Here you go:\n```json\n{"decision": "expand", "confidence": 0.8}\n```'
    router = Router([MockProvider("a", response=reply)])
    result = await router.generate_structured("decide")
    assert result.data == {"decision": "expand", "confidence": 0.8}
    assert result.parse_error is None
    assert result.provider_used == "a"


async def test_generate_structured_validates_into_model() -> None:
    provider = MockProvider("a", response='Verdict: {"decision": "wait", "confidence": 0.4} done')
    result = await Router([provider]).generate_structured("decide", _Verdict)
    assert isinstance(result.data, _Verdict)
    assert result.data.decision == "wait"
    assert '"confidence"' in provider.requests[-1]


async def test_generate_structured_reports_unparsed_text() -> None:
    router = Router([MockProvider("a", response="no json in here at all")])
    result = await router.generate_structured("decide")
    assert result.data is None
    assert "No JSON found" in (result.parse_error or "")
    assert result.value == "no json in here at all"


async def test_generate_structured_reports_schema_mismatch() -> None:
    router = Router([MockProvider("a", response='{"decision": "expand"}')])
    result = await router.generate_structured("decide", _Verdict)
    assert result.data is None
    assert "confidence" in (result.parse_error or "")


async def test_generate_structured_still_raises_when_all_fail() -> None:
    router = Router([MockProvider("a", response=TransientProviderError("down"))])
    with pytest.raises(AllProvidersFailedError):
        await router.generate_structured("decide")
