"""Pipeline data models: pipelines, steps, results, artifacts and snapshots."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from reviewline.core.constants import (
    SCORE_MAX,
    SCORE_MIDPOINT,
    SCORE_MIN,
    PipelineStatus,
    ReviewAction,
    StepStatus,
)
from reviewline.routing.models import ProviderAttempt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class StepResult(BaseModel):
    """Structured output of one analysis stage.

    Every field has a value even when the provider answer could not be
    parsed: lists default to empty and the score to the midpoint.
    """

    stage_id: str
    content: str = ""
    key_findings: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    score: int = Field(default=SCORE_MIDPOINT, ge=SCORE_MIN, le=SCORE_MAX)
    provider: str = "unknown"
    placeholder: bool = False
    """True when no provider answered and the result was synthesized."""
    parsed: bool = True
    """False when no known section or score was found in ``content``."""
    generated_at: datetime = Field(default_factory=utcnow)


class Edit(BaseModel):
    id: str = Field(default_factory=lambda: new_id("edit"))
    line_index: int
    original_content: str
    new_content: str
    edited_at: datetime = Field(default_factory=utcnow)


class Comment(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cmt"))
    line_index: int
    text: str
    author: str = "User"
    created_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False


class Artifact(BaseModel):
    """Line-indexed, human-editable rendering of a :class:`StepResult`.

    ``lines[i]`` always holds the latest edit of line *i*; ``edits`` and
    ``comments`` are append-only histories.
    """

    lines: list[str] = Field(default_factory=list)
    edits: list[Edit] = Field(default_factory=list)
    comments: list[Comment] = Field(default_factory=list)

    @property
    def open_comments(self) -> list[Comment]:
        return [c for c in self.comments if not c.resolved]

    def comments_for(self, line_index: int) -> list[Comment]:
        return [c for c in self.comments if c.line_index == line_index]


class ReviewFeedback(BaseModel):
    action: ReviewAction
    notes: str = ""
    decided_at: datetime = Field(default_factory=utcnow)


class Step(BaseModel):
    """One stage of a pipeline.

    ``attempts`` counts how many times the step has been generated, so a
    step that is ``pending`` after a rejection (``attempts > 0``) can be
    told apart from one that never ran.
    """

    id: str
    index: int
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    result: StepResult | None = None
    artifact: Artifact | None = None
    review_feedback: ReviewFeedback | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    approved_at: datetime | None = None
    attempts: int = 0

    def reset(self) -> None:
        """Return the step to ``pending`` and drop everything it produced."""
        self.status = StepStatus.PENDING
        self.result = None
        self.artifact = None
        self.started_at = None
        self.completed_at = None
        self.approved_at = None


class Pipeline(BaseModel):
    """Mutable pipeline state. Owned by the engine and never handed out."""

    id: str = Field(default_factory=lambda: new_id("pipe"))
    query: str
    constraints: dict[str, Any] = Field(default_factory=dict)
    preferred_provider: str | None = None
    status: PipelineStatus = PipelineStatus.ACTIVE
    current_step_index: int = 0
    steps: list[Step] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def running_step(self) -> Step | None:
        return next((s for s in self.steps if s.status == StepStatus.RUNNING), None)

    def next_pending(self) -> Step | None:
        return next((s for s in self.steps if s.status == StepStatus.PENDING), None)

    @property
    def approved_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.APPROVED)

    @property
    def all_approved(self) -> bool:
        return bool(self.steps) and self.approved_count == len(self.steps)


class PipelineView(BaseModel):
    """Read-only deep snapshot of a pipeline returned by every engine call.

    Mutating a view (or anything reachable from it) never affects engine
    state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    query: str
    constraints: dict[str, Any]
    preferred_provider: str | None
    status: PipelineStatus
    current_step_index: int
    steps: list[Step]
    created_at: datetime
    updated_at: datetime
    approved_count: int
    total_steps: int
    aggregate_score: float | None
    """Mean score of the steps that have a result, to one decimal."""
    is_complete: bool

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline) -> PipelineView:
        scores = [s.result.score for s in pipeline.steps if s.result is not None]
        aggregate = round(sum(scores) / len(scores), 1) if scores else None
        return cls(
            id=pipeline.id,
            query=pipeline.query,
            constraints=copy.deepcopy(pipeline.constraints),
            preferred_provider=pipeline.preferred_provider,
            status=pipeline.status,
            current_step_index=pipeline.current_step_index,
            steps=[s.model_copy(deep=True) for s in pipeline.steps],
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
            approved_count=pipeline.approved_count,
            total_steps=len(pipeline.steps),
            aggregate_score=aggregate,
            is_complete=pipeline.status == PipelineStatus.COMPLETED,
        )

    def step(self, step_ref: str | int) -> Step:
        """Look up a step by stage id or index.

        Raises:
            KeyError: If no step matches.
        """
        for s in self.steps:
            if s.id == step_ref or (isinstance(step_ref, int) and s.index == step_ref):
                return s
        raise KeyError(step_ref)


class PipelineSummary(BaseModel):
    """Compact row used when listing pipelines."""

    id: str
    query: str
    status: PipelineStatus
    current_step_index: int
    approved_count: int
    total_steps: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline) -> PipelineSummary:
        return cls(
            id=pipeline.id,
            query=pipeline.query,
            status=pipeline.status,
            current_step_index=pipeline.current_step_index,
            approved_count=pipeline.approved_count,
            total_steps=len(pipeline.steps),
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
        )


class StepOutcome(BaseModel):
    """What the executor hands back to the engine for one step."""

    result: StepResult
    artifact: Artifact
    provider_used: str | None = None
    attempts: list[ProviderAttempt] = Field(default_factory=list)
