"""Run one pipeline step: build the request, route it, normalize the answer."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import structlog

from reviewline.core.constants import TaskType
from reviewline.core.exceptions import AllProvidersFailedError
from reviewline.pipeline.models import Artifact, Pipeline, StepOutcome
from reviewline.pipeline.parsing import parse_step_result, placeholder_result, render_lines
from reviewline.pipeline.stages import (
    DEFAULT_STAGES,
    PromptBuilder,
    StageDefinition,
    StagePromptBuilder,
    build_previous_context,
    stage_for_step,
)
from reviewline.routing.models import RoutingResult

logger = structlog.get_logger(__name__)


class _RouterLike(Protocol):
    async def generate(
        self,
        request: str,
        *,
        preferred_provider: str | None = None,
        timeout: float | None = None,
        task_type: TaskType | None = None,
    ) -> RoutingResult: ...


class StepExecutor:
    """Materialize one step's result and artifact.

    A total routing failure is not an error here: the executor logs every
    attempt and returns a placeholder result so the pipeline can still
    reach review. Anything else the router or prompt builder raises
    propagates to the engine.

    Args:
        router: Router used for generation.
        prompt_builder: Builds request text per stage.
        timeout: Overall deadline for one generation, in seconds.
        stages: Stage definitions used to look up roles and task types.
    """

    def __init__(
        self,
        router: _RouterLike,
        prompt_builder: PromptBuilder | None = None,
        *,
        timeout: float = 60.0,
        stages: Sequence[StageDefinition] = DEFAULT_STAGES,
    ) -> None:
        self._router = router
        self._prompt_builder = prompt_builder if prompt_builder is not None else StagePromptBuilder()
        self._timeout = timeout
        self._stages = tuple(stages)

    @property
    def router(self) -> _RouterLike:
        return self._router

    async def execute(self, pipeline: Pipeline, step_index: int) -> StepOutcome:
        step = pipeline.steps[step_index]
        stage = stage_for_step(step, self._stages)
        previous_context = build_previous_context(pipeline.steps, step_index)
        request = self._prompt_builder.build(
            stage, pipeline.query, pipeline.constraints, previous_context
        )

        try:
            routed = await self._router.generate(
                request,
                preferred_provider=pipeline.preferred_provider,
                timeout=self._timeout,
                task_type=stage.task_type,
            )
        except AllProvidersFailedError as exc:
            for attempt in exc.attempts:
                logger.warning(
                    "step_provider_attempt_failed",
                    pipeline_id=pipeline.id,
                    step=step.id,
                    provider=attempt.provider_id,
                    kind=str(attempt.kind),
                    reason=attempt.reason,
                )
            logger.warning(
                "step_using_placeholder",
                pipeline_id=pipeline.id,
                step=step.id,
                attempts=len(exc.attempts),
            )
            result = placeholder_result(stage, pipeline.query)
            return StepOutcome(
                result=result,
                artifact=Artifact(lines=render_lines(result.content)),
                attempts=exc.attempts,
            )

        result = parse_step_result(routed.value, stage.id, provider=routed.provider_used)
        if not result.parsed:
            logger.info(
                "step_response_unstructured",
                pipeline_id=pipeline.id,
                step=step.id,
                provider=routed.provider_used,
            )
        return StepOutcome(
            result=result,
            artifact=Artifact(lines=render_lines(result.content)),
            provider_used=routed.provider_used,
            attempts=routed.attempts,
        )

    async def aclose(self) -> None:
        close = getattr(self._router, "aclose", None)
        if close is not None:
            await close()
