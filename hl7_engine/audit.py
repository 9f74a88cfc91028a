# hl7_engine/audit.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("hl7_engine.audit")

RESOURCE_TYPE = "hl7_message"

# Actions recorded for inbound traffic
PARSE_ERROR = "HL7_PARSE_ERROR"
VALIDATION_ERROR = "HL7_VALIDATION_ERROR"
MESSAGE_RECEIVED = "HL7_MESSAGE_RECEIVED"
MESSAGE_PROCESSED = "HL7_MESSAGE_PROCESSED"
MESSAGE_PROCESSED_SYNC = "HL7_MESSAGE_PROCESSED_SYNC"
PROCESSING_FAILED = "HL7_PROCESSING_FAILED"
MESSAGE_REPROCESS = "HL7_MESSAGE_REPROCESS"

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class AuditEvent:
    tenant_id: Optional[str]
    user_id: Optional[str]
    action: str
    resource_id: Optional[str]
    severity: str = "info"
    status: str = "success"
    metadata: Dict[str, Any] = field(default_factory=dict)
    resource_type: str = RESOURCE_TYPE


# Audit storage lives outside the engine; callers hand in any callable with this shape.
AuditSink = Callable[[AuditEvent], None]


def log_audit_event(event: AuditEvent) -> None:
    """Default sink: write the event to the audit logger."""
    logger.log(
        _LEVELS.get(event.severity, logging.INFO),
        "%s tenant=%s resource=%s/%s status=%s user=%s metadata=%s",
        event.action,
        event.tenant_id,
        event.resource_type,
        event.resource_id,
        event.status,
        event.user_id,
        event.metadata,
    )


class AuditTrail:
    """Collects events in memory; handy for dry runs and tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def __call__(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]
