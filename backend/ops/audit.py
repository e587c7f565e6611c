"""
Audit sink boundary.

Audit persistence is owned by another service; this module defines the port and
a logging implementation. Callers record after a successful mutation and must
not let an audit failure undo it (see `record_safely`).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

_log = logging.getLogger("coursefiles.ops")

ASSIGNMENT_SUBMITTED = "ASSIGNMENT_SUBMITTED"
SUBMISSION_GRADED = "SUBMISSION_GRADED"
RESOURCE_UPLOADED = "RESOURCE_UPLOADED"
RESOURCE_DELETED = "RESOURCE_DELETED"
CONTENT_DELETED = "CONTENT_DELETED"


class AuditSink(Protocol):
    def record(self, *, actor: str, action: str, entity_type: str, entity_id: str, metadata: Dict[str, Any]) -> None: ...


class LoggingAuditSink:
    def record(self, *, actor: str, action: str, entity_type: str, entity_id: str, metadata: Dict[str, Any]) -> None:
        _log.info("audit action=%s actor=%s entity=%s:%s metadata=%s", action, actor, entity_type, entity_id, metadata)


def record_safely(
    sink: Optional[AuditSink],
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Record an audit entry; log and return False on failure instead of raising."""
    if sink is None:
        return False
    try:
        sink.record(actor=actor, action=action, entity_type=entity_type, entity_id=entity_id, metadata=dict(metadata or {}))
    except Exception as exc:
        _log.warning("audit failed action=%s entity=%s:%s error=%s", action, entity_type, entity_id, type(exc).__name__)
        return False
    return True


__all__ = [
    "AuditSink",
    "LoggingAuditSink",
    "record_safely",
    "ASSIGNMENT_SUBMITTED",
    "SUBMISSION_GRADED",
    "RESOURCE_UPLOADED",
    "RESOURCE_DELETED",
    "CONTENT_DELETED",
]
