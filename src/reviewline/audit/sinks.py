"""Audit sinks: in-memory ring buffer, JSONL file and structlog."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path

import structlog

from reviewline.audit.models import AuditEvent


def _matches(
    event: AuditEvent,
    event_type: str | None,
    pipeline_id: str | None,
    since: datetime | None,
) -> bool:
    if event_type is not None and event.event_type != event_type:
        return False
    if pipeline_id is not None and event.pipeline_id != pipeline_id:
        return False
    return since is None or event.timestamp >= since


class AuditSink(ABC):
    """Destination for audit events. Subclass to ship events elsewhere."""

    @abstractmethod
    async def write(self, event: AuditEvent) -> None: ...

    async def query(
        self,
        event_type: str | None = None,
        pipeline_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return matching events. Sinks that cannot be read return ``[]``."""
        return []

    async def close(self) -> None:
        """Release resources held by the sink."""


class InMemoryAuditSink(AuditSink):
    """Keeps the most recent *max_entries* events in memory."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._events: deque[AuditEvent] = deque(maxlen=max_entries)

    async def write(self, event: AuditEvent) -> None:
        self._events.append(event)

    async def query(
        self,
        event_type: str | None = None,
        pipeline_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        results: list[AuditEvent] = []
        for ev in reversed(self._events):
            if _matches(ev, event_type, pipeline_id, since):
                results.append(ev)
                if len(results) >= limit:
                    break
        return results

    @property
    def events(self) -> list[AuditEvent]:
        """All retained events, oldest first."""
        return list(self._events)

    def event_types(self) -> list[str]:
        return [ev.event_type for ev in self._events]


class FileAuditSink(AuditSink):
    """Appends one JSON object per line to *path*.

    File I/O runs in a worker thread via :func:`asyncio.to_thread`.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def write(self, event: AuditEvent) -> None:
        line = json.dumps(event.model_dump(mode="json"), default=str, sort_keys=True)
        await asyncio.to_thread(self._append, line)

    async def query(
        self,
        event_type: str | None = None,
        pipeline_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self._path.exists():
            return []

        def _read() -> list[AuditEvent]:
            with self._path.open("r", encoding="utf-8") as fh:
                events = [
                    AuditEvent.model_validate_json(raw)
                    for raw in (line.strip() for line in fh)
                    if raw
                ]
            matching = [ev for ev in events if _matches(ev, event_type, pipeline_id, since)]
            matching.reverse()
            return matching[:limit]

        return await asyncio.to_thread(_read)


class StructlogAuditSink(AuditSink):
    """Emits each event as a structlog entry."""

    def __init__(self, log_level: str = "info") -> None:
        self._log_level = log_level
        self._logger = structlog.get_logger("reviewline.audit")

    async def write(self, event: AuditEvent) -> None:
        log_fn = getattr(self._logger, self._log_level, self._logger.info)
        log_fn(
            "audit_event",
            event_id=event.event_id,
            event_type=event.event_type,
            pipeline_id=event.pipeline_id,
            step_id=event.step_id,
            actor=event.actor,
            **{f"detail_{k}": v for k, v in event.details.items() if not isinstance(v, (dict, list))},
        )
