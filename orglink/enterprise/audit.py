"""
Audit trail collaborator.

The core hands structured `AuditEvent`s to an `AuditLogger` and never
waits on, or fails because of, the result. `record_best_effort()` is
the single place that swallows audit failures.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from orglink.enterprise.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditLogger(Protocol):
    def log_event(self, event: AuditEvent) -> None: ...


class LoggingAuditLogger:
    """Writes audit events as structured log records on the `orglink.audit` logger."""

    def __init__(self, logger_name: str = "orglink.audit"):
        self._logger = logging.getLogger(logger_name)

    def log_event(self, event: AuditEvent) -> None:
        self._logger.info(
            "audit_event",
            extra={
                "actor_id": event.actor_id,
                "action": event.action.value,
                "entity": event.entity,
                "target_id": event.target_id,
                "details": event.details,
                "snapshot": event.snapshot,
                "audited_at": event.created_at.isoformat(),
            },
        )


class NullAuditLogger:
    """Discards every event. Used when auditing is disabled in settings."""

    def log_event(self, event: AuditEvent) -> None:
        return None


def record_best_effort(audit: Optional[AuditLogger], event: AuditEvent) -> None:
    """Hand an event to the audit logger; any failure is logged and dropped."""
    if audit is None:
        return
    try:
        audit.log_event(event)
    except Exception as e:
        logger.debug(
            "audit_write_failed",
            extra={"entity": event.entity, "target_id": event.target_id, "error": str(e)},
        )
