from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.storage.models import SecurityEvent, new_id

logger = get_logger("authcore.security")


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SecurityEventStore(Protocol):
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]: ...

    def delete_security_events_before(
        self, cutoff: datetime, *, keep_critical: bool = True
    ) -> int: ...


_LOG_METHOD = {
    Severity.INFO: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
    Severity.CRITICAL: "critical",
}


class SecurityLogger:
    """Append-only security audit trail.

    Writing is best effort: a failing store is reported through structlog and
    the caller carries on.
    """

    def __init__(self, store: SecurityEventStore) -> None:
        self.store = store

    def log(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        severity: Severity | str = Severity.INFO,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        severity = Severity(severity)
        event = SecurityEvent(
            id=new_id(),
            action=action,
            severity=severity.value,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        getattr(logger, _LOG_METHOD[severity])(
            "security_event",
            action=action,
            severity=severity.value,
            user_id=user_id,
            ip_address=ip_address,
            details=event.details,
        )
        try:
            return self.store.append_security_event(event)
        except Exception as exc:
            logger.warning(
                "security_event_persist_failed", action=action, error=str(exc)
            )
            return None

    def user_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        return self.store.list_security_events(user_id=user_id, limit=limit)

    def events_by_action(self, action: str, limit: int = 100) -> List[SecurityEvent]:
        return self.store.list_security_events(action=action, limit=limit)

    def critical_events(self, limit: int = 100) -> List[SecurityEvent]:
        return self.store.list_security_events(
            severity=Severity.CRITICAL.value, limit=limit
        )

    def cleanup(self, retention_days: int = 90) -> int:
        """Drop events older than ``retention_days``; critical events are kept."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed = self.store.delete_security_events_before(cutoff, keep_critical=True)
        logger.info("security_events_pruned", removed=removed, retention_days=retention_days)
        return removed


__all__ = ["Severity", "SecurityLogger"]
