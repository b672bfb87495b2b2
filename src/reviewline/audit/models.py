"""Audit event model."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class AuditEvent(BaseModel):
    """Record of one state change made by the pipeline engine.

    ``event_type`` is one of ``pipeline.started``, ``step.completed``,
    ``step.approved``, ``step.rejected``, ``artifact.edited``,
    ``comment.added``, ``comment.resolved``, ``pipeline.completed`` or
    ``pipeline.cancelled``.
    """

    event_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pipeline_id: str
    step_id: str | None = None
    actor: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
