from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Protocol

from keyward.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

APP_CREATED = "app_created"
APP_FROZEN = "app_frozen"
APP_UNFROZEN = "app_unfrozen"
APP_MARKED_FOR_DELETION = "app_marked_for_deletion"
APP_DELETED = "app_deleted"


@dataclass(frozen=True)
class AuditEvent:
    id: str
    action: str
    tenant_id: str
    created_at: datetime
    actor_id: Optional[str] = None
    request_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log."""

    def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit_event",
            audit_id=event.id,
            action=event.action,
            tenant_id=event.tenant_id,
            actor_id=event.actor_id,
            request_id=event.request_id,
            created_at=event.created_at.isoformat(),
            **dict(event.details),
        )


class MemoryAuditSink:
    """Keeps events in a list; handy for tests and local runs."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


class AuditEmitter:
    """Fire-and-forget fan-out to audit sinks.

    Persisting and flushing audit logs belongs to the sink; a failing sink is
    logged and never fails the operation that emitted the event.
    """

    def __init__(self, sinks: Optional[List[AuditSink]] = None) -> None:
        self.sinks: List[AuditSink] = list(sinks) if sinks is not None else [LoggingAuditSink()]

    def emit(
        self,
        action: str,
        tenant_id: str,
        at: datetime,
        *,
        actor_id: Optional[str] = None,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            tenant_id=tenant_id,
            created_at=at,
            actor_id=actor_id,
            request_id=get_correlation_id(),
            details=details,
        )
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as exc:
                logger.warning(
                    "audit_sink_failed",
                    action=action,
                    tenant_id=tenant_id,
                    sink=type(sink).__name__,
                    error=str(exc),
                )
        return event
