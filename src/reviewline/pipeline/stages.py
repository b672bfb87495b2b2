"""Analysis stage definitions and the prompts built for them."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from reviewline.core.constants import SCORE_MAX, TaskType
from reviewline.pipeline.models import Step
from reviewline.prompts.template import PromptTemplate

NO_PREVIOUS_CONTEXT = "No previous analysis steps completed yet."


class StageDefinition(BaseModel):
    """Static description of one pipeline stage."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    role: str = "strategy analyst"
    task: str = ""
    task_type: TaskType = TaskType.ANALYSIS


DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="ideation",
        name="Ideation",
        description="Creative options, brainstorming, innovative approaches",
        role="creative strategist",
        task=(
            "Generate creative and innovative ideas to address this business question. "
            "Consider unconventional approaches, emerging technologies and "
            "cross-industry inspiration."
        ),
        task_type=TaskType.OPTION_GENERATION,
    ),
    StageDefinition(
        id="business_model",
        name="Business Model",
        description="Revenue model, unit economics, monetization strategy",
        role="business model strategist",
        task=(
            "Analyze the business model implications: revenue streams, cost "
            "structure, value proposition and unit economics."
        ),
    ),
    StageDefinition(
        id="market_risk",
        name="Market Risk",
        description="Market size, competitors, adoption barriers, timing",
        role="market risk analyst",
        task=(
            "Assess market risk: market size, competitive landscape, adoption "
            "barriers and timing."
        ),
    ),
    StageDefinition(
        id="technical_feasibility",
        name="Technical Feasibility",
        description="Tech stack, implementation complexity, resource requirements",
        role="technical architect",
        task=(
            "Assess technical feasibility: technology stack, implementation "
            "complexity, resource requirements and build-vs-buy options."
        ),
    ),
    StageDefinition(
        id="technical_risk",
        name="Technical Risk",
        description="Scalability, security, technical debt, integration risk",
        role="technical risk assessor",
        task=(
            "Identify technical risks: scalability, security, technical debt "
            "and integration risk."
        ),
    ),
    StageDefinition(
        id="user_experience",
        name="User Experience",
        description="User needs, usability, adoption friction, UX strategy",
        role="user experience strategist",
        task=(
            "Evaluate the user experience: user needs, usability, adoption "
            "friction and UX strategy."
        ),
    ),
)


STAGE_PROMPT = PromptTemplate(
    """You are a {role} advising a CEO.

## BUSINESS QUESTION
{query}

## CONSTRAINTS
{constraints}

## PREVIOUS CONTEXT
{previous_context}

## YOUR TASK
{task}

Provide your analysis in this exact format:

KEY_FINDINGS:
- [Finding]

RISKS:
- [Risk]

RECOMMENDATIONS:
- [Recommendation]

SCORE: [1-{score_max} rating for this area]""",
    score_max=SCORE_MAX,
)


@runtime_checkable
class PromptBuilder(Protocol):
    """Builds the request text sent to the router for one stage."""

    def build(
        self,
        stage: StageDefinition,
        query: str,
        constraints: dict[str, Any],
        previous_context: str,
    ) -> str: ...


class StagePromptBuilder:
    """Default :class:`PromptBuilder` backed by a :class:`PromptTemplate`.

    The template may use ``{role}``, ``{query}``, ``{constraints}``,
    ``{previous_context}``, ``{task}``, ``{stage_name}`` and
    ``{description}``.
    """

    def __init__(self, template: PromptTemplate | None = None) -> None:
        self._template = template if template is not None else STAGE_PROMPT

    def build(
        self,
        stage: StageDefinition,
        query: str,
        constraints: dict[str, Any],
        previous_context: str,
    ) -> str:
        return self._template.render(
            role=stage.role,
            query=query,
            constraints=format_constraints(constraints),
            previous_context=previous_context or NO_PREVIOUS_CONTEXT,
            task=stage.task or stage.description,
            stage_name=stage.name,
            description=stage.description,
        )


def format_constraints(constraints: dict[str, Any]) -> str:
    if not constraints:
        return "None specified."
    return "\n".join(
        f"- {key}: {value if isinstance(value, str) else json.dumps(value, default=str)}"
        for key, value in constraints.items()
    )


def build_previous_context(steps: Sequence[Step], before_index: int) -> str:
    """Summarize the results of the steps before *before_index*.

    Only the stage name, score, key findings and recommendations are
    included, never the raw generated text.
    """
    parts: list[str] = []
    for step in steps[:before_index]:
        result = step.result
        if result is None:
            continue
        parts.append(f"### {step.name} (Score: {result.score}/{SCORE_MAX})")
        if result.key_findings:
            parts.append("Key Findings:")
            parts.extend(f"- {finding}" for finding in result.key_findings)
        if result.recommendations:
            parts.append("Recommendations:")
            parts.extend(f"- {rec}" for rec in result.recommendations)
        parts.append("")
    return "\n".join(parts).strip()


def stage_for_step(step: Step, stages: Sequence[StageDefinition]) -> StageDefinition:
    """Return the definition matching *step*, or one derived from the step."""
    for stage in stages:
        if stage.id == step.id:
            return stage
    return StageDefinition(id=step.id, name=step.name, description=step.description)
