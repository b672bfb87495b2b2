"""Fan-out audit logger used by the pipeline engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from reviewline.audit.models import AuditEvent
from reviewline.audit.sinks import AuditSink

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Dispatch each :class:`AuditEvent` to every registered sink.

    Sink failures are logged and never reach the caller, so a broken sink
    cannot fail a pipeline operation.

    Example::

        audit = AuditLogger([InMemoryAuditSink()])
        audit.add_sink(FileAuditSink("/var/log/reviewline-audit.jsonl"))
        engine = PipelineEngine(executor, audit=audit)
    """

    def __init__(self, sinks: list[AuditSink] | None = None) -> None:
        self._sinks: list[AuditSink] = list(sinks) if sinks else []

    @property
    def sinks(self) -> list[AuditSink]:
        return list(self._sinks)

    def add_sink(self, sink: AuditSink) -> AuditLogger:
        """Register *sink*. Returns ``self`` for chaining."""
        self._sinks.append(sink)
        return self

    async def log(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.write(event)
            except Exception:
                logger.warning(
                    "audit_sink_error",
                    sink=type(sink).__name__,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    exc_info=True,
                )

    async def record(
        self,
        event_type: str,
        pipeline_id: str,
        *,
        step_id: str | None = None,
        actor: str | None = None,
        **details: Any,
    ) -> AuditEvent:
        """Build an event from keyword arguments and dispatch it."""
        event = AuditEvent(
            event_type=event_type,
            pipeline_id=pipeline_id,
            step_id=step_id,
            actor=actor,
            details=details,
        )
        await self.log(event)
        return event

    async def query(
        self,
        event_type: str | None = None,
        pipeline_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Merge matching events from every sink, newest first.

        Events seen in more than one sink are returned once.
        """
        seen_ids: set[str] = set()
        merged: list[AuditEvent] = []
        for sink in self._sinks:
            try:
                events = await sink.query(
                    event_type=event_type,
                    pipeline_id=pipeline_id,
                    since=since,
                    limit=limit,
                )
            except Exception:
                logger.warning("audit_query_error", sink=type(sink).__name__, exc_info=True)
                continue
            for ev in events:
                if ev.event_id not in seen_ids:
                    seen_ids.add(ev.event_id)
                    merged.append(ev)
        merged.sort(key=lambda e: e.timestamp, reverse=True)
        return merged[:limit]

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception:
                logger.warning("audit_sink_close_error", sink=type(sink).__name__, exc_info=True)
