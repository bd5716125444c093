# underwriting_engine/services/audit.py

import logging
from typing import List, Optional, Protocol

from underwriting_engine.schemas.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Collaborator that persists structured engine events."""

    def record(self, event: AuditEvent) -> None:
        ...


class InMemoryAuditSink:
    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def event_types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


class LoggingAuditSink:
    """Writes each event to the log as JSON."""

    def record(self, event: AuditEvent) -> None:
        logger.info("📝 Audit: %s", event.model_dump_json())


def emit_audit_event(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Deliver an event synchronously. A failing sink is logged, never fatal to the run."""
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.warning(
            "⚠️ Audit sink failed for %s (%s): %s",
            event.event_type.value, event.task_id or event.transaction_id, e,
        )
