from __future__ import annotations

from abc import ABC
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from reviewline.pipeline.models import Comment, Edit, PipelineView, Step

logger = structlog.get_logger(__name__)


class PipelineCallbackHandler(ABC):
    """Review notifications from the engine.

    Override any method; all default to no-ops. The engine awaits each
    call after releasing the pipeline lock and logs any exception a
    handler raises, so a failing handler never fails the operation.
    """

    async def on_pipeline_started(self, pipeline: PipelineView) -> None:
        pass

    async def on_step_started(self, pipeline_id: str, step_id: str) -> None:
        pass

    async def on_step_completed(self, pipeline_id: str, step: Step) -> None:
        """The step produced a result and now awaits a human decision."""

    async def on_step_approved(self, pipeline_id: str, step: Step) -> None:
        pass

    async def on_step_rejected(self, pipeline_id: str, step_id: str, feedback: str) -> None:
        pass

    async def on_artifact_edited(self, pipeline_id: str, step_id: str, edit: Edit) -> None:
        pass

    async def on_comment_added(self, pipeline_id: str, step_id: str, comment: Comment) -> None:
        pass

    async def on_pipeline_completed(self, pipeline: PipelineView) -> None:
        pass

    async def on_pipeline_cancelled(self, pipeline: PipelineView) -> None:
        pass

    async def on_error(self, pipeline_id: str, step_id: str, error: Exception) -> None:
        pass


class LoggingPipelineCallbackHandler(PipelineCallbackHandler):
    """Logs every notification via structlog."""

    async def on_pipeline_started(self, pipeline: PipelineView) -> None:
        logger.info(
            "pipeline_started",
            pipeline_id=pipeline.id,
            query=pipeline.query,
            total_steps=pipeline.total_steps,
        )

    async def on_step_started(self, pipeline_id: str, step_id: str) -> None:
        logger.info("step_started", pipeline_id=pipeline_id, step=step_id)

    async def on_step_completed(self, pipeline_id: str, step: Step) -> None:
        logger.info(
            "step_awaiting_review",
            pipeline_id=pipeline_id,
            step=step.id,
            score=step.result.score if step.result else None,
            placeholder=step.result.placeholder if step.result else None,
        )

    async def on_step_approved(self, pipeline_id: str, step: Step) -> None:
        logger.info("step_approved", pipeline_id=pipeline_id, step=step.id)

    async def on_step_rejected(self, pipeline_id: str, step_id: str, feedback: str) -> None:
        logger.info("step_rejected", pipeline_id=pipeline_id, step=step_id, feedback=feedback)

    async def on_artifact_edited(self, pipeline_id: str, step_id: str, edit: Edit) -> None:
        logger.info(
            "artifact_edited",
            pipeline_id=pipeline_id,
            step=step_id,
            line_index=edit.line_index,
        )

    async def on_comment_added(self, pipeline_id: str, step_id: str, comment: Comment) -> None:
        logger.info(
            "comment_added",
            pipeline_id=pipeline_id,
            step=step_id,
            line_index=comment.line_index,
            author=comment.author,
        )

    async def on_pipeline_completed(self, pipeline: PipelineView) -> None:
        logger.info(
            "pipeline_completed",
            pipeline_id=pipeline.id,
            aggregate_score=pipeline.aggregate_score,
        )

    async def on_pipeline_cancelled(self, pipeline: PipelineView) -> None:
        logger.info("pipeline_cancelled", pipeline_id=pipeline.id)

    async def on_error(self, pipeline_id: str, step_id: str, error: Exception) -> None:
        logger.error("step_error", pipeline_id=pipeline_id, step=step_id, error=str(error), exc_info=error)
