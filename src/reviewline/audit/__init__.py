from reviewline.audit.logger import AuditLogger
from reviewline.audit.models import AuditEvent
from reviewline.audit.sinks import (
    AuditSink,
    FileAuditSink,
    InMemoryAuditSink,
    StructlogAuditSink,
)

__all__ = [
    "AuditEvent",
    "AuditLogger",
    "AuditSink",
    "FileAuditSink",
    "InMemoryAuditSink",
    "StructlogAuditSink",
]
