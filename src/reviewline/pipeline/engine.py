"""Pipeline engine: step state machine with a human review gate.

Each step moves ``pending -> running -> completed -> approved``, or back
from ``completed`` to ``pending`` when a reviewer rejects it. A step may
only start once every step before it is approved, and at most one step of
a pipeline runs at a time.

Steps are addressed either by stage id or by their zero-based position
in the pipeline. Negative positions are not accepted and raise
:class:`StepNotFoundError` like any other unknown step.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog

from reviewline.audit.logger import AuditLogger
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
    UnexpectedFaultError,
)
from reviewline.pipeline.executor import StepExecutor
from reviewline.pipeline.models import (
    Artifact,
    Comment,
    Edit,
    Pipeline,
    PipelineSummary,
    PipelineView,
    ReviewFeedback,
    Step,
    StepOutcome,
    utcnow,
)
from reviewline.pipeline.parsing import reparse_result
from reviewline.pipeline.stages import DEFAULT_STAGES, StageDefinition
from reviewline.utils.logging import bind_pipeline, unbind_pipeline

logger = structlog.get_logger(__name__)

StepRef = str | int


class PipelineEngine:
    """Own pipeline instances and drive their steps.

    Every public operation returns a :class:`PipelineView` snapshot;
    internal state is never handed out by reference.

    All mutations of one pipeline are serialized by a per-pipeline
    :class:`asyncio.Lock`. Generation itself runs outside the lock, so
    reviewers can keep approving, editing or commenting on other steps
    while a step is being generated; the ``running`` marker keeps the
    sequential gate intact meanwhile.

    Args:
        executor: Produces step results.
        stages: Ordered stage definitions every new pipeline is built from.
        audit: Receives an event for every state change.
        callbacks: Review notification handlers.

    Example::

        engine = PipelineEngine(StepExecutor(router))
        view = await engine.start("expand to EU?")
        view = await engine.execute_next_step(view.id)
        view = await engine.approve_step(view.id, "ideation", notes="looks right")
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        stages: Sequence[StageDefinition] = DEFAULT_STAGES,
        audit: AuditLogger | None = None,
        callbacks: list[PipelineCallbackHandler] | None = None,
    ) -> None:
        stages = tuple(stages)
        if not stages:
            raise ConfigurationError("A pipeline needs at least one stage")
        ids = [s.id for s in stages]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Duplicate stage ids: {ids!r}")

        self._executor = executor
        self._stages = stages
        self._audit = audit
        self._callbacks: list[PipelineCallbackHandler] = list(callbacks or [])
        self._pipelines: dict[str, Pipeline] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __repr__(self) -> str:
        return f"PipelineEngine(stages={[s.id for s in self._stages]!r}, pipelines={len(self._pipelines)})"

    @property
    def stages(self) -> tuple[StageDefinition, ...]:
        return self._stages

    @property
    def executor(self) -> StepExecutor:
        return self._executor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        query: str,
        constraints: dict[str, Any] | None = None,
        preferred_provider: str | None = None,
    ) -> PipelineView:
        """Create a pipeline with every step pending. Nothing runs yet."""
        pipeline = Pipeline(
            query=query,
            constraints=dict(constraints or {}),
            preferred_provider=preferred_provider,
            steps=[
                Step(id=stage.id, index=i, name=stage.name, description=stage.description)
                for i, stage in enumerate(self._stages)
            ],
        )
        self._pipelines[pipeline.id] = pipeline
        self._locks[pipeline.id] = asyncio.Lock()
        view = PipelineView.from_pipeline(pipeline)

        logger.info("pipeline_created", pipeline_id=pipeline.id, steps=len(pipeline.steps))
        await self._record("pipeline.started", pipeline.id, query=query, total_steps=len(pipeline.steps))
        await self._notify("on_pipeline_started", view)
        return view

    async def cancel(self, pipeline_id: str) -> PipelineView:
        """Mark an active pipeline cancelled.

        A step that is generating when this is called has its result
        discarded and returns to ``pending``. Cancelling twice is a no-op.

        Raises:
            PipelineNotFoundError: Unknown pipeline.
            InvalidStateError: The pipeline already completed.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            if pipeline.status == PipelineStatus.CANCELLED:
                return PipelineView.from_pipeline(pipeline)
            if pipeline.status == PipelineStatus.COMPLETED:
                raise InvalidStateError(f"Pipeline {pipeline_id} is already completed")
            pipeline.status = PipelineStatus.CANCELLED
            pipeline.touch()
            view = PipelineView.from_pipeline(pipeline)

        logger.info("pipeline_cancelled", pipeline_id=pipeline_id)
        await self._record("pipeline.cancelled", pipeline_id, approved_steps=view.approved_count)
        await self._notify("on_pipeline_cancelled", view)
        return view

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_pipeline(self, pipeline_id: str) -> PipelineView:
        async with self._lock_for(pipeline_id):
            return PipelineView.from_pipeline(self._get(pipeline_id))

    async def list_pipelines(self, status: PipelineStatus | None = None) -> list[PipelineSummary]:
        """Summaries of all pipelines, oldest first, optionally by status."""
        return [
            PipelineSummary.from_pipeline(p)
            for p in sorted(self._pipelines.values(), key=lambda p: p.created_at)
            if status is None or p.status == status
        ]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_next_step(self, pipeline_id: str) -> PipelineView:
        """Generate the first pending step, or complete the pipeline if none is left.

        Finding that step and marking it ``running`` happen atomically
        under the pipeline lock; generation runs outside it.

        Raises:
            PipelineNotFoundError: Unknown pipeline.
            InvalidStateError: The pipeline is not active or a step is already
                running.
            OutOfOrderError: An earlier step has not been approved.
            UnexpectedFaultError: Generation failed for a reason other than
                provider outage. The step is back to ``pending``.
        """
        lock = self._lock_for(pipeline_id)
        async with lock:
            pipeline = self._get(pipeline_id)
            if pipeline.status != PipelineStatus.ACTIVE:
                raise InvalidStateError(
                    f"Pipeline {pipeline_id} is {pipeline.status}, not active",
                    details={"status": str(pipeline.status)},
                )
            running = pipeline.running_step()
            if running is not None:
                raise InvalidStateError(
                    f"Step {running.id!r} is already running",
                    details={"step_id": running.id},
                )

            step = pipeline.next_pending()
            if step is None:
                pipeline.status = PipelineStatus.COMPLETED
                pipeline.touch()
                finished = PipelineView.from_pipeline(pipeline)
            else:
                finished = None
                blocking = [s for s in pipeline.steps[: step.index] if s.status != StepStatus.APPROVED]
                if blocking:
                    first = blocking[0]
                    raise OutOfOrderError(
                        f"Step {first.id!r} must be approved before {step.id!r} can run",
                        details={"blocking_step": first.id, "blocking_status": str(first.status)},
                    )

                step.status = StepStatus.RUNNING
                step.started_at = utcnow()
                step.attempts += 1
                pipeline.current_step_index = step.index
                pipeline.touch()
                step_id, step_index, attempt = step.id, step.index, step.attempts
                snapshot = pipeline.model_copy(deep=True)

        if finished is not None:
            logger.info("pipeline_completed", pipeline_id=pipeline_id, trigger="no_pending_step")
            await self._record("pipeline.completed", pipeline_id, aggregate_score=finished.aggregate_score)
            await self._notify("on_pipeline_completed", finished)
            return finished

        bind_pipeline(pipeline_id, step=step_id)
        try:
            logger.info("step_started", attempt=attempt)
            await self._notify("on_step_started", pipeline_id, step_id)
            try:
                outcome = await self._executor.execute(snapshot, step_index)
            except asyncio.CancelledError:
                # No await happens here, so nothing can interleave with the rollback.
                self._rollback(self._pipelines[pipeline_id], step_index)
                raise
            except Exception as exc:
                async with lock:
                    self._rollback(self._pipelines[pipeline_id], step_index)
                logger.error("step_execution_failed", error=str(exc), exc_info=True)
                await self._notify("on_error", pipeline_id, step_id, exc)
                raise UnexpectedFaultError(
                    f"Step {step_id!r} failed: {exc}",
                    details={"pipeline_id": pipeline_id, "step_id": step_id},
                ) from exc

            return await self._store_outcome(pipeline_id, step_index, outcome)
        finally:
            unbind_pipeline("step")

    async def _store_outcome(
        self, pipeline_id: str, step_index: int, outcome: StepOutcome
    ) -> PipelineView:
        async with self._lock_for(pipeline_id):
            pipeline = self._pipelines[pipeline_id]
            step = pipeline.steps[step_index]
            if pipeline.status != PipelineStatus.ACTIVE or step.status != StepStatus.RUNNING:
                logger.warning("step_result_discarded", pipeline_status=str(pipeline.status))
                self._rollback(pipeline, step_index)
                return PipelineView.from_pipeline(pipeline)

            step.result = outcome.result
            step.artifact = outcome.artifact
            step.status = StepStatus.COMPLETED
            step.completed_at = utcnow()
            pipeline.touch()
            stored = step.model_copy(deep=True)
            view = PipelineView.from_pipeline(pipeline)

        logger.info(
            "step_completed",
            score=stored.result.score if stored.result else None,
            provider=outcome.provider_used,
            placeholder=outcome.result.placeholder,
        )
        await self._record(
            "step.completed",
            pipeline_id,
            step_id=stored.id,
            provider=outcome.result.provider,
            placeholder=outcome.result.placeholder,
            score=outcome.result.score,
            attempt=stored.attempts,
            failed_providers=[a.provider_id for a in outcome.attempts if not a.success],
        )
        await self._notify("on_step_completed", pipeline_id, stored)
        return view

    @staticmethod
    def _rollback(pipeline: Pipeline, step_index: int) -> None:
        step = pipeline.steps[step_index]
        if step.status == StepStatus.RUNNING:
            step.reset()
            pipeline.touch()

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def approve_step(self, pipeline_id: str, step_id: StepRef, notes: str = "") -> PipelineView:
        """Approve a completed step. Approving the last one completes the pipeline.

        Raises:
            InvalidStateError: The step is not ``completed`` or the pipeline
                is not active.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            self._require_active(pipeline)
            step = self._resolve_step(pipeline, step_id)
            self._require_status(step, StepStatus.COMPLETED, "approved")

            now = utcnow()
            step.status = StepStatus.APPROVED
            step.approved_at = now
            step.review_feedback = ReviewFeedback(action=ReviewAction.APPROVED, notes=notes, decided_at=now)
            if step.index + 1 < len(pipeline.steps):
                pipeline.current_step_index = step.index + 1
            finished = pipeline.all_approved
            if finished:
                pipeline.status = PipelineStatus.COMPLETED
            pipeline.touch()
            approved = step.model_copy(deep=True)
            view = PipelineView.from_pipeline(pipeline)

        logger.info("step_approved", pipeline_id=pipeline_id, step=approved.id, pipeline_completed=finished)
        await self._record("step.approved", pipeline_id, step_id=approved.id, notes=notes)
        await self._notify("on_step_approved", pipeline_id, approved)
        if finished:
            await self._record("pipeline.completed", pipeline_id, aggregate_score=view.aggregate_score)
            await self._notify("on_pipeline_completed", view)
        return view

    async def reject_step(self, pipeline_id: str, step_id: StepRef, feedback: str = "") -> PipelineView:
        """Reject a completed step so it is regenerated on the next run.

        The result, artifact (with its edits and comments) and timestamps
        are discarded. The audit event keeps the discarded content and the
        edit and comment counts.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            self._require_active(pipeline)
            step = self._resolve_step(pipeline, step_id)
            self._require_status(step, StepStatus.COMPLETED, "rejected")

            discarded: dict[str, Any] = {
                "rejected_content": step.result.content if step.result else "",
                "rejected_score": step.result.score if step.result else None,
                "edit_count": len(step.artifact.edits) if step.artifact else 0,
                "comment_count": len(step.artifact.comments) if step.artifact else 0,
            }
            step.status = StepStatus.REJECTED
            step.review_feedback = ReviewFeedback(action=ReviewAction.REJECTED, notes=feedback)
            step.reset()
            pipeline.current_step_index = step.index
            pipeline.touch()
            resolved_id = step.id
            view = PipelineView.from_pipeline(pipeline)

        logger.info("step_rejected", pipeline_id=pipeline_id, step=resolved_id, feedback=feedback)
        await self._record("step.rejected", pipeline_id, step_id=resolved_id, feedback=feedback, **discarded)
        await self._notify("on_step_rejected", pipeline_id, resolved_id, feedback)
        return view

    # ------------------------------------------------------------------
    # Artifact editing
    # ------------------------------------------------------------------

    async def edit_artifact(
        self,
        pipeline_id: str,
        step_id: StepRef,
        line_index: int,
        new_content: str,
    ) -> PipelineView:
        """Overwrite one artifact line and record the edit.

        ``result.content`` is rebuilt from the edited lines and its lists
        and score are re-derived, so later steps and exports see the edit.

        Raises:
            NoArtifactError: The step has no artifact.
            OutOfRangeError: *line_index* is not inside ``artifact.lines``.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            self._require_not_cancelled(pipeline)
            step = self._resolve_step(pipeline, step_id)
            artifact = self._require_line(step, line_index)

            edit = Edit(
                line_index=line_index,
                original_content=artifact.lines[line_index],
                new_content=new_content,
            )
            artifact.lines[line_index] = new_content
            artifact.edits.append(edit)
            if step.result is not None:
                step.result = reparse_result(step.result, "\n".join(artifact.lines))
            pipeline.touch()
            view = PipelineView.from_pipeline(pipeline)

        logger.info("artifact_edited", pipeline_id=pipeline_id, step=step.id, line_index=line_index)
        await self._record(
            "artifact.edited",
            pipeline_id,
            step_id=step.id,
            edit_id=edit.id,
            line_index=line_index,
            original_content=edit.original_content,
            new_content=new_content,
        )
        await self._notify("on_artifact_edited", pipeline_id, step.id, edit.model_copy())
        return view

    async def add_comment(
        self,
        pipeline_id: str,
        step_id: StepRef,
        line_index: int,
        text: str,
        author: str = "User",
    ) -> tuple[Comment, PipelineView]:
        """Attach a comment to one artifact line. ``result`` is untouched.

        Raises:
            NoArtifactError: The step has no artifact.
            OutOfRangeError: *line_index* is not inside ``artifact.lines``.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            self._require_not_cancelled(pipeline)
            step = self._resolve_step(pipeline, step_id)
            artifact = self._require_line(step, line_index)

            comment = Comment(line_index=line_index, text=text, author=author)
            artifact.comments.append(comment)
            pipeline.touch()
            view = PipelineView.from_pipeline(pipeline)

        logger.info("comment_added", pipeline_id=pipeline_id, step=step.id, line_index=line_index)
        await self._record(
            "comment.added",
            pipeline_id,
            step_id=step.id,
            actor=author,
            comment_id=comment.id,
            line_index=line_index,
            text=text,
        )
        await self._notify("on_comment_added", pipeline_id, step.id, comment.model_copy())
        return comment.model_copy(), view

    async def resolve_comment(self, pipeline_id: str, step_id: StepRef, comment_id: str) -> PipelineView:
        """Mark a comment resolved. Resolving twice is a no-op.

        Raises:
            NoArtifactError: The step has no artifact.
            NotFoundError: No comment with *comment_id*.
        """
        async with self._lock_for(pipeline_id):
            pipeline = self._get(pipeline_id)
            step = self._resolve_step(pipeline, step_id)
            if step.artifact is None:
                raise NoArtifactError(f"Step {step.id!r} has no artifact")
            comment = next((c for c in step.artifact.comments if c.id == comment_id), None)
            if comment is None:
                raise NotFoundError(
                    f"Comment {comment_id!r} not found on step {step.id!r}",
                    details={"comment_id": comment_id},
                )
            changed = not comment.resolved
            comment.resolved = True
            if changed:
                pipeline.touch()
            view = PipelineView.from_pipeline(pipeline)

        if changed:
            await self._record("comment.resolved", pipeline_id, step_id=step.id, comment_id=comment_id)
        return view

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, pipeline_id: str) -> asyncio.Lock:
        lock = self._locks.get(pipeline_id)
        if lock is None:
            raise PipelineNotFoundError(
                f"Pipeline {pipeline_id!r} not found", details={"pipeline_id": pipeline_id}
            )
        return lock

    def _get(self, pipeline_id: str) -> Pipeline:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(
                f"Pipeline {pipeline_id!r} not found", details={"pipeline_id": pipeline_id}
            )
        return pipeline

    @staticmethod
    def _resolve_step(pipeline: Pipeline, step_ref: StepRef) -> Step:
        """Look a step up by id or by index in ``0..len(steps) - 1``; no negative indexing."""
        if isinstance(step_ref, int) and not isinstance(step_ref, bool):
            if 0 <= step_ref < len(pipeline.steps):
                return pipeline.steps[step_ref]
        else:
            for step in pipeline.steps:
                if step.id == step_ref:
                    return step
        raise StepNotFoundError(
            f"Step {step_ref!r} not found in pipeline {pipeline.id}",
            details={"pipeline_id": pipeline.id, "step_id": step_ref},
        )

    @staticmethod
    def _require_active(pipeline: Pipeline) -> None:
        if pipeline.status != PipelineStatus.ACTIVE:
            raise InvalidStateError(
                f"Pipeline {pipeline.id} is {pipeline.status}, not active",
                details={"status": str(pipeline.status)},
            )

    @staticmethod
    def _require_not_cancelled(pipeline: Pipeline) -> None:
        if pipeline.status == PipelineStatus.CANCELLED:
            raise InvalidStateError(f"Pipeline {pipeline.id} is cancelled")

    @staticmethod
    def _require_status(step: Step, expected: StepStatus, verb: str) -> None:
        if step.status != expected:
            raise InvalidStateError(
                f"Step {step.name!r} cannot be {verb} while {step.status}",
                details={"step_id": step.id, "status": str(step.status)},
            )

    @staticmethod
    def _require_line(step: Step, line_index: int) -> Artifact:
        artifact = step.artifact
        if artifact is None:
            raise NoArtifactError(f"Step {step.id!r} has no artifact", details={"step_id": step.id})
        if not 0 <= line_index < len(artifact.lines):
            raise OutOfRangeError(
                f"Line index {line_index} out of range for {len(artifact.lines)} lines",
                details={"line_index": line_index, "line_count": len(artifact.lines)},
            )
        return artifact

    async def _record(self, event_type: str, pipeline_id: str, **kwargs: Any) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(event_type, pipeline_id, **kwargs)
        except Exception:
            logger.warning("audit_record_failed", event_type=event_type, pipeline_id=pipeline_id, exc_info=True)

    async def _notify(self, method: str, *args: Any) -> None:
        for handler in self._callbacks:
            try:
                await getattr(handler, method)(*args)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "callback_handler_error",
                    callback_event=method,
                    handler=type(handler).__name__,
                    error=str(exc),
                )

    async def aclose(self) -> None:
        """Close the executor's router and the audit sinks."""
        await self._executor.aclose()
        if self._audit is not None:
            await self._audit.close()
