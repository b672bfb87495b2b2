"""Render pipeline snapshots as Markdown reports."""

from __future__ import annotations

from reviewline.core.constants import SCORE_MAX, StepStatus
from reviewline.pipeline.models import PipelineView, Step

_STATUS_LABELS = {
    StepStatus.PENDING: "Pending",
    StepStatus.RUNNING: "Running",
    StepStatus.COMPLETED: "Awaiting review",
    StepStatus.APPROVED: "Approved",
    StepStatus.REJECTED: "Rejected",
}


def to_markdown(view: PipelineView, *, include_comments: bool = True) -> str:
    """Render *view* as a Markdown document.

    Artifact lines are written as they currently read, so edits are
    reflected. Unresolved comments are listed under the line they target.
    """
    out: list[str] = [
        "# Analysis Report",
        "",
        f"**Query:** {view.query}",
        f"**Status:** {view.status} ({view.approved_count}/{view.total_steps} steps approved)",
    ]
    if view.aggregate_score is not None:
        out.append(f"**Overall score:** {view.aggregate_score}/{SCORE_MAX}")
    if view.constraints:
        out.append("")
        out.append("**Constraints:**")
        out.extend(f"- {key}: {value}" for key, value in view.constraints.items())
    out.append("")

    for step in view.steps:
        out.extend(_render_step(step, include_comments))

    return "\n".join(out).rstrip() + "\n"


def _render_step(step: Step, include_comments: bool) -> list[str]:
    heading = f"## {step.index + 1}. {step.name}"
    if step.result is not None:
        heading += f" (Score: {step.result.score}/{SCORE_MAX})"
    lines = [heading, "", f"_Status: {_STATUS_LABELS.get(step.status, str(step.status))}_"]
    if step.result is not None and step.result.placeholder:
        lines.append("_Placeholder result: no provider was available._")
    if step.review_feedback is not None and step.review_feedback.notes:
        lines.append(f"_Reviewer notes ({step.review_feedback.action}): {step.review_feedback.notes}_")
    lines.append("")

    if step.artifact is None:
        return lines

    for index, text in enumerate(step.artifact.lines):
        lines.append(text)
        if include_comments:
            for comment in step.artifact.comments_for(index):
                if not comment.resolved:
                    lines.append(f"> **{comment.author}:** {comment.text}")
    if step.artifact.edits:
        lines.append("")
        lines.append(f"_{len(step.artifact.edits)} edit(s) by reviewers._")
    lines.append("")
    return lines
