from reviewline.pipeline.engine import PipelineEngine
from reviewline.pipeline.executor import StepExecutor
from reviewline.pipeline.export import to_markdown
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
    StepResult,
)
from reviewline.pipeline.parsing import (
    clamp_score,
    extract_section,
    parse_step_result,
    placeholder_result,
    render_lines,
)
from reviewline.pipeline.stages import (
    DEFAULT_STAGES,
    PromptBuilder,
    StageDefinition,
    StagePromptBuilder,
    build_previous_context,
)

__all__ = [
    "Artifact",
    "Comment",
    "DEFAULT_STAGES",
    "Edit",
    "Pipeline",
    "PipelineEngine",
    "PipelineSummary",
    "PipelineView",
    "PromptBuilder",
    "ReviewFeedback",
    "StageDefinition",
    "StagePromptBuilder",
    "Step",
    "StepExecutor",
    "StepOutcome",
    "StepResult",
    "build_previous_context",
    "clamp_score",
    "extract_section",
    "parse_step_result",
    "placeholder_result",
    "render_lines",
    "to_markdown",
]
