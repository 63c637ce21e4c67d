from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from pmoguard.logging import get_logger
from pmoguard.storage.models import utcnow


@dataclass
class AuditEvent:
    action: str
    user_id: Optional[str]
    tenant_id: Optional[str] = None
    resource: Optional[str] = None
    outcome: str = "allowed"
    details: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=lambda: utcnow().isoformat())


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Default sink: one structured log line per event."""

    def __init__(self, logger_name: str = "pmoguard.audit") -> None:
        self.logger = get_logger(logger_name)

    def record(self, event: AuditEvent) -> None:
        payload = asdict(event)
        action = payload.pop("action")
        self.logger.info(action, **payload)


class RecordingAuditSink:
    """Keeps events in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]
