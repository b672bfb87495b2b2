"""Tests for pipeline/engine.py — the review-gated step state machine."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from reviewline.audit.logger import AuditLogger
from reviewline.audit.sinks import InMemoryAuditSink
from reviewline.callbacks.handler import PipelineCallbackHandler
from reviewline.core.constants import PipelineStatus, ReviewAction, StepStatus
from reviewline.core.exceptions import (
    ConfigurationError,
    InvalidStateError,
    NoArtifactError,
    NotFoundError,
    OutOfOrderError,
    OutOfRangeError,
    PipelineNotFoundError,
    StepNotFoundError,
    TransientProviderError,
    UnexpectedFaultError,
)
from reviewline.pipeline.engine import PipelineEngine
from reviewline.pipeline.executor import StepExecutor
from reviewline.pipeline.stages import DEFAULT_STAGES, StageDefinition
from reviewline.providers.mock import MockProvider
from reviewline.routing.health import HealthTracker
from reviewline.routing.router import Router

STAGES = DEFAULT_STAGES[:3]

SECOND_RESPONSE = """KEY_FINDINGS:
- Regulatory approval takes six months

RECOMMENDATIONS:
- Hire a compliance lead first

SCORE: 4"""


def _engine(
    provider: MockProvider,
    *,
    sink: InMemoryAuditSink | None = None,
    callbacks: list[PipelineCallbackHandler] | None = None,
    prompt_builder: Any = None,
) -> PipelineEngine:
    router = Router([provider], HealthTracker(), default_timeout=5.0)
    executor = StepExecutor(router, prompt_builder, timeout=5.0, stages=STAGES)
    audit = AuditLogger([sink]) if sink is not None else None
    return PipelineEngine(executor, stages=STAGES, audit=audit, callbacks=callbacks)


class RecordingHandler(PipelineCallbackHandler):
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def on_pipeline_started(self, pipeline):
        self.events.append(("pipeline_started", pipeline.id))

    async def on_step_started(self, pipeline_id, step_id):
        self.events.append(("step_started", step_id))

    async def on_step_completed(self, pipeline_id, step):
        self.events.append(("step_completed", step.id))

    async def on_step_approved(self, pipeline_id, step):
        self.events.append(("step_approved", step.id))

    async def on_step_rejected(self, pipeline_id, step_id, feedback):
        self.events.append(("step_rejected", feedback))

    async def on_artifact_edited(self, pipeline_id, step_id, edit):
        self.events.append(("artifact_edited", edit.new_content))

    async def on_comment_added(self, pipeline_id, step_id, comment):
        self.events.append(("comment_added", comment.text))

    async def on_pipeline_completed(self, pipeline):
        self.events.append(("pipeline_completed", pipeline.status))

    async def on_pipeline_cancelled(self, pipeline):
        self.events.append(("pipeline_cancelled", pipeline.status))

    async def on_error(self, pipeline_id, step_id, error):
        self.events.append(("error", type(error).__name__))


class ExplodingHandler(PipelineCallbackHandler):
    async def on_pipeline_started(self, pipeline):
        raise RuntimeError("handler bug")

    async def on_step_completed(self, pipeline_id, step):
        raise RuntimeError("handler bug")

    async def on_step_approved(self, pipeline_id, step):
        raise RuntimeError("handler bug")


# ---------------------------------------------------------------------------
# Construction and start
# ---------------------------------------------------------------------------


def test_engine_requires_stages(router: Router) -> None:
    with pytest.raises(ConfigurationError):
        PipelineEngine(StepExecutor(router), stages=[])


def test_engine_rejects_duplicate_stage_ids(router: Router) -> None:
    stage = StageDefinition(id="dup", name="Dup")
    with pytest.raises(ConfigurationError, match="Duplicate"):
        PipelineEngine(StepExecutor(router), stages=[stage, stage])


async def test_start_creates_pending_steps(
    engine: PipelineEngine, provider: MockProvider, audit_sink: InMemoryAuditSink
) -> None:
    view = await engine.start("Should we expand to the EU?", {"budget": "2M"}, "primary")

    assert view.status == PipelineStatus.ACTIVE
    assert view.query == "Should we expand to the EU?"
    assert view.constraints == {"budget": "2M"}
    assert view.preferred_provider == "primary"
    assert [s.id for s in view.steps] == [s.id for s in STAGES]
    assert all(s.status == StepStatus.PENDING for s in view.steps)
    assert view.current_step_index == 0
    assert view.aggregate_score is None
    assert provider.call_count == 0
    assert audit_sink.event_types() == ["pipeline.started"]


# ---------------------------------------------------------------------------
# Sequential gate
# ---------------------------------------------------------------------------


async def test_execute_completes_first_step(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    view = await engine.execute_next_step(pid)

    step = view.steps[0]
    assert step.status == StepStatus.COMPLETED
    assert step.result is not None and step.result.score == 7
    assert step.artifact is not None and step.artifact.lines
    assert step.attempts == 1
    assert step.started_at is not None and step.completed_at is not None
    assert view.steps[1].status == StepStatus.PENDING


async def test_next_step_blocked_until_approved(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)

    with pytest.raises(OutOfOrderError) as exc_info:
        await engine.execute_next_step(pid)
    assert exc_info.value.details["blocking_step"] == "ideation"
    assert exc_info.value.code == "OUT_OF_ORDER"

    view = await engine.get_pipeline(pid)
    assert view.steps[1].status == StepStatus.PENDING


async def test_approve_requires_completed_step(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    with pytest.raises(InvalidStateError):
        await engine.approve_step(pid, "ideation")
    with pytest.raises(InvalidStateError):
        await engine.reject_step(pid, "ideation")


async def test_approved_results_feed_next_prompt(
    engine: PipelineEngine, provider: MockProvider
) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.approve_step(pid, "ideation")
    await engine.execute_next_step(pid)

    assert "### Ideation (Score: 7/10)" in provider.requests[1]
    assert "No previous analysis steps completed yet." in provider.requests[0]


async def test_expand_to_eu_scenario(provider: MockProvider) -> None:
    sink = InMemoryAuditSink()
    engine = _engine(provider, sink=sink)
    provider.queue(
        "KEY_FINDINGS:\n- Three viable entry options\nSCORE: 8",
        "KEY_FINDINGS:\n- Subscription pricing fits the EU\nSCORE: 6",
        "KEY_FINDINGS:\n- Strong local competition\nSCORE: 5",
    )
    pid = (await engine.start("Should we expand to the EU?")).id

    for stage in STAGES:
        view = await engine.execute_next_step(pid)
        assert view.step(stage.id).status == StepStatus.COMPLETED
        view = await engine.approve_step(pid, stage.id, notes="ok")

    assert view.status == PipelineStatus.COMPLETED
    assert view.is_complete is True
    assert view.approved_count == 3
    assert view.aggregate_score == 6.3
    assert all(s.review_feedback.action == ReviewAction.APPROVED for s in view.steps)
    assert sink.event_types() == [
        "pipeline.started",
        "step.completed",
        "step.approved",
        "step.completed",
        "step.approved",
        "step.completed",
        "step.approved",
        "pipeline.completed",
    ]

    with pytest.raises(InvalidStateError):
        await engine.execute_next_step(pid)
    with pytest.raises(InvalidStateError):
        await engine.cancel(pid)


async def test_no_pending_step_completes_pipeline(provider: MockProvider) -> None:
    sink = InMemoryAuditSink()
    handler = RecordingHandler()
    router = Router([provider], HealthTracker(), default_timeout=5.0)
    single = STAGES[:1]
    executor = StepExecutor(router, timeout=5.0, stages=single)
    engine = PipelineEngine(executor, stages=single, audit=AuditLogger([sink]), callbacks=[handler])
    pid = (await engine.start("q")).id

    first = await engine.execute_next_step(pid)
    assert first.steps[0].status == StepStatus.COMPLETED
    assert first.status == PipelineStatus.ACTIVE

    view = await engine.execute_next_step(pid)
    assert view.status == PipelineStatus.COMPLETED
    assert view.is_complete
    assert view.steps[0].status == StepStatus.COMPLETED
    assert sink.event_types()[-1] == "pipeline.completed"
    assert handler.events[-1] == ("pipeline_completed", PipelineStatus.COMPLETED)

    with pytest.raises(InvalidStateError, match="not active"):
        await engine.approve_step(pid, 0)
    with pytest.raises(InvalidStateError, match="not active"):
        await engine.execute_next_step(pid)


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------


async def test_reject_discards_and_regenerates(
    engine: PipelineEngine, provider: MockProvider, audit_sink: InMemoryAuditSink
) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.add_comment(pid, "ideation", 0, "too vague")

    view = await engine.reject_step(pid, "ideation", feedback="Consider APAC too")
    step = view.steps[0]
    assert step.status == StepStatus.PENDING
    assert step.result is None
    assert step.artifact is None
    assert step.completed_at is None
    assert step.review_feedback is not None
    assert step.review_feedback.action == ReviewAction.REJECTED
    assert step.review_feedback.notes == "Consider APAC too"

    rejected = (await audit_sink.query(event_type="step.rejected"))[0]
    assert rejected.details["rejected_score"] == 7
    assert rejected.details["comment_count"] == 1
    assert "KEY_FINDINGS" in rejected.details["rejected_content"]

    provider.set_response(SECOND_RESPONSE)
    view = await engine.execute_next_step(pid)
    step = view.steps[0]
    assert step.status == StepStatus.COMPLETED
    assert step.attempts == 2
    assert step.result.score == 4
    assert step.artifact.comments == []
    assert provider.call_count == 2


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


async def test_only_one_step_runs_at_a_time() -> None:
    provider = MockProvider("slow", response="KEY_FINDINGS:\n- fine finding\nSCORE: 6", delay=0.2)
    engine = _engine(provider)
    pid = (await engine.start("q")).id

    results = await asyncio.gather(
        engine.execute_next_step(pid),
        engine.execute_next_step(pid),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidStateError)
    assert provider.call_count == 1
    view = await engine.get_pipeline(pid)
    assert view.steps[0].status == StepStatus.COMPLETED
    assert view.steps[0].attempts == 1


async def test_running_step_is_visible_and_reads_do_not_block() -> None:
    provider = MockProvider("slow", response="SCORE: 6", delay=0.2)
    engine = _engine(provider)
    pid = (await engine.start("q")).id

    task = asyncio.create_task(engine.execute_next_step(pid))
    await asyncio.sleep(0.05)
    view = await asyncio.wait_for(engine.get_pipeline(pid), timeout=0.1)
    assert view.steps[0].status == StepStatus.RUNNING
    await task


async def test_cancel_mid_run_discards_result(audit_sink: InMemoryAuditSink) -> None:
    provider = MockProvider("slow", response="SCORE: 9", delay=0.2)
    engine = _engine(provider, sink=audit_sink)
    pid = (await engine.start("q")).id

    task = asyncio.create_task(engine.execute_next_step(pid))
    await asyncio.sleep(0.05)
    cancelled = await engine.cancel(pid)
    assert cancelled.status == PipelineStatus.CANCELLED

    view = await task
    assert view.status == PipelineStatus.CANCELLED
    assert view.steps[0].status == StepStatus.PENDING
    assert view.steps[0].result is None
    assert "step.completed" not in audit_sink.event_types()

    with pytest.raises(InvalidStateError):
        await engine.execute_next_step(pid)
    # Cancelling again is a no-op.
    again = await engine.cancel(pid)
    assert again.status == PipelineStatus.CANCELLED
    assert audit_sink.event_types().count("pipeline.cancelled") == 1


async def test_task_cancellation_rolls_step_back() -> None:
    provider = MockProvider("slow", response="SCORE: 9", delay=0.5)
    engine = _engine(provider)
    pid = (await engine.start("q")).id

    task = asyncio.create_task(engine.execute_next_step(pid))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    view = await engine.get_pipeline(pid)
    assert view.steps[0].status == StepStatus.PENDING
    assert view.status == PipelineStatus.ACTIVE

    provider.queue("SCORE: 3")
    view = await engine.execute_next_step(pid)
    assert view.steps[0].result.score == 3


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_provider_outage_completes_with_placeholder(audit_sink: InMemoryAuditSink) -> None:
    provider = MockProvider("primary", response=TransientProviderError("503"))
    engine = _engine(provider, sink=audit_sink)
    pid = (await engine.start("q")).id

    view = await engine.execute_next_step(pid)
    step = view.steps[0]
    assert step.status == StepStatus.COMPLETED
    assert step.result.placeholder is True
    assert step.result.score == 5

    completed = (await audit_sink.query(event_type="step.completed"))[0]
    assert completed.details["placeholder"] is True
    assert completed.details["failed_providers"] == ["primary"]


async def test_unexpected_fault_rolls_back(provider: MockProvider) -> None:
    class BrokenBuilder:
        def build(self, stage, query, constraints, previous_context):
            raise ValueError("bad template")

    handler = RecordingHandler()
    engine = _engine(provider, callbacks=[handler], prompt_builder=BrokenBuilder())
    pid = (await engine.start("q")).id

    with pytest.raises(UnexpectedFaultError) as exc_info:
        await engine.execute_next_step(pid)
    assert isinstance(exc_info.value.__cause__, ValueError)
    assert exc_info.value.details["step_id"] == "ideation"

    view = await engine.get_pipeline(pid)
    assert view.steps[0].status == StepStatus.PENDING
    assert view.steps[0].attempts == 1
    assert ("error", "ValueError") in handler.events
    assert provider.call_count == 0


# ---------------------------------------------------------------------------
# Editing and comments
# ---------------------------------------------------------------------------


async def test_edit_artifact_updates_line_and_result(
    engine: PipelineEngine, audit_sink: InMemoryAuditSink
) -> None:
    pid = (await engine.start("q")).id
    view = await engine.execute_next_step(pid)
    original = view.steps[0].artifact.lines[1]

    await engine.edit_artifact(pid, "ideation", 1, "- EU demand is flat")
    view = await engine.edit_artifact(pid, "ideation", 1, "- EU demand is shrinking")

    artifact = view.steps[0].artifact
    assert artifact.lines[1] == "- EU demand is shrinking"
    assert [e.original_content for e in artifact.edits] == [original, "- EU demand is flat"]
    assert view.steps[0].result.key_findings[0] == "EU demand is shrinking"
    assert audit_sink.event_types().count("artifact.edited") == 2


async def test_edit_score_line_changes_aggregate(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    view = await engine.execute_next_step(pid)
    score_line = len(view.steps[0].artifact.lines) - 1
    assert view.steps[0].artifact.lines[score_line] == "SCORE: 7"

    view = await engine.edit_artifact(pid, 0, score_line, "SCORE: 9")
    assert view.steps[0].result.score == 9
    assert view.aggregate_score == 9.0


async def test_edit_errors(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    with pytest.raises(NoArtifactError):
        await engine.edit_artifact(pid, "ideation", 0, "x")

    view = await engine.execute_next_step(pid)
    line_count = len(view.steps[0].artifact.lines)
    with pytest.raises(OutOfRangeError):
        await engine.edit_artifact(pid, "ideation", line_count, "x")
    with pytest.raises(OutOfRangeError):
        await engine.edit_artifact(pid, "ideation", -1, "x")


async def test_edit_allowed_after_approval(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.approve_step(pid, "ideation")
    view = await engine.edit_artifact(pid, "ideation", 0, "KEY_FINDINGS:")
    assert view.steps[0].status == StepStatus.APPROVED
    assert len(view.steps[0].artifact.edits) == 1


async def test_edit_blocked_on_cancelled_pipeline(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.cancel(pid)
    with pytest.raises(InvalidStateError):
        await engine.edit_artifact(pid, "ideation", 0, "x")
    with pytest.raises(InvalidStateError):
        await engine.add_comment(pid, "ideation", 0, "x")


async def test_comments_do_not_touch_result(
    engine: PipelineEngine, audit_sink: InMemoryAuditSink
) -> None:
    pid = (await engine.start("q")).id
    before = await engine.execute_next_step(pid)

    comment, view = await engine.add_comment(pid, "ideation", 2, "Which incumbents?")
    assert comment.author == "User"
    assert comment.resolved is False
    assert view.steps[0].artifact.comments_for(2)[0].id == comment.id
    assert view.steps[0].result.content == before.steps[0].result.content

    view = await engine.resolve_comment(pid, "ideation", comment.id)
    assert view.steps[0].artifact.comments[0].resolved is True
    assert view.steps[0].artifact.open_comments == []
    await engine.resolve_comment(pid, "ideation", comment.id)
    assert audit_sink.event_types().count("comment.resolved") == 1

    with pytest.raises(NotFoundError):
        await engine.resolve_comment(pid, "ideation", "cmt_missing")
    with pytest.raises(OutOfRangeError):
        await engine.add_comment(pid, "ideation", 99, "nope")


async def test_comment_author_is_recorded(engine: PipelineEngine, audit_sink: InMemoryAuditSink) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.add_comment(pid, 0, 0, "check this", author="cfo")
    event = (await audit_sink.query(event_type="comment.added"))[0]
    assert event.actor == "cfo"
    assert event.step_id == "ideation"


# ---------------------------------------------------------------------------
# Addressing, snapshots and listing
# ---------------------------------------------------------------------------


async def test_step_addressing(engine: PipelineEngine) -> None:
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)

    by_index = await engine.approve_step(pid, 0)
    assert by_index.steps[0].status == StepStatus.APPROVED

    with pytest.raises(StepNotFoundError):
        await engine.approve_step(pid, "nonexistent")
    with pytest.raises(StepNotFoundError):
        await engine.approve_step(pid, 17)
    with pytest.raises(StepNotFoundError):
        await engine.approve_step(pid, -1)
    with pytest.raises(StepNotFoundError):
        await engine.reject_step(pid, -3)
    with pytest.raises(PipelineNotFoundError):
        await engine.get_pipeline("pipe_missing")
    with pytest.raises(PipelineNotFoundError):
        await engine.execute_next_step("pipe_missing")


async def test_views_are_isolated_from_engine_state(engine: PipelineEngine) -> None:
    pid = (await engine.start("q", {"markets": ["DE"]})).id
    view = await engine.execute_next_step(pid)

    view.steps[0].artifact.lines[0] = "tampered"
    view.steps[0].status = StepStatus.APPROVED
    view.constraints["markets"].append("FR")

    fresh = await engine.get_pipeline(pid)
    assert fresh.steps[0].artifact.lines[0] != "tampered"
    assert fresh.steps[0].status == StepStatus.COMPLETED
    assert fresh.constraints == {"markets": ["DE"]}


async def test_list_pipelines_filters_by_status(engine: PipelineEngine) -> None:
    first = await engine.start("first")
    second = await engine.start("second")
    await engine.cancel(second.id)

    all_rows = await engine.list_pipelines()
    assert [r.id for r in all_rows] == [first.id, second.id]
    active = await engine.list_pipelines(PipelineStatus.ACTIVE)
    assert [r.query for r in active] == ["first"]
    assert active[0].total_steps == len(STAGES)


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


async def test_callbacks_receive_lifecycle(provider: MockProvider) -> None:
    handler = RecordingHandler()
    engine = _engine(provider, callbacks=[handler])
    pid = (await engine.start("q")).id
    await engine.execute_next_step(pid)
    await engine.reject_step(pid, "ideation", "redo")
    await engine.execute_next_step(pid)
    await engine.edit_artifact(pid, "ideation", 0, "KEY_FINDINGS:")
    await engine.add_comment(pid, "ideation", 0, "hm")
    await engine.approve_step(pid, "ideation")
    await engine.cancel(pid)

    assert [name for name, _ in handler.events] == [
        "pipeline_started",
        "step_started",
        "step_completed",
        "step_rejected",
        "step_started",
        "step_completed",
        "artifact_edited",
        "comment_added",
        "step_approved",
        "pipeline_cancelled",
    ]


async def test_callback_errors_are_swallowed(provider: MockProvider) -> None:
    recorder = RecordingHandler()
    engine = _engine(provider, callbacks=[ExplodingHandler(), recorder])
    pid = (await engine.start("q")).id
    view = await engine.execute_next_step(pid)
    view = await engine.approve_step(pid, "ideation")

    assert view.steps[0].status == StepStatus.APPROVED
    assert ("step_approved", "ideation") in recorder.events
