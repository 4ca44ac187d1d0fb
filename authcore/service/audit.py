from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol

from authcore.logging import get_logger, sanitize_detail_data
from authcore.storage.models import SecurityEvent

logger = get_logger(__name__)

SUCCESS = "SUCCESS"
FAILURE = "FAILURE"
UNKNOWN_ACTOR = "unknown"


class AuditAction:
    LOGIN = "LOGIN"
    LOGIN_MFA_REQUIRED = "LOGIN_MFA_REQUIRED"
    LOGIN_MFA_COMPLETE = "LOGIN_MFA_COMPLETE"
    REGISTER = "REGISTER"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    MFA_SETUP = "MFA_SETUP"
    MFA_ENABLE = "MFA_ENABLE"
    MFA_VERIFY = "MFA_VERIFY"
    MFA_DISABLE = "MFA_DISABLE"
    ACCOUNT_LINKING = "ACCOUNT_LINKING"
    PROVIDER_ID_UPDATE = "PROVIDER_ID_UPDATE"
    OAUTH_ACCOUNT_CREATION = "OAUTH_ACCOUNT_CREATION"
    OAUTH_LOGIN = "OAUTH_LOGIN"
    MANUAL_ACCOUNT_LINKING = "MANUAL_ACCOUNT_LINKING"
    PROVIDER_UNLINK = "PROVIDER_UNLINK"
    ACCOUNT_DELETE = "ACCOUNT_DELETE"


class AuditSink(Protocol):
    def record_security_event(self, event: SecurityEvent) -> None: ...


class LoggingAuditSink:
    """Writes security events to the structured log stream."""

    def __init__(self, name: str = "authcore.audit") -> None:
        self.logger = get_logger(name)

    def record_security_event(self, event: SecurityEvent) -> None:
        self.logger.info(
            "security_event",
            actor_id=event.actor_id,
            action=event.action,
            outcome=event.outcome,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
            created_at=event.created_at.isoformat(),
        )


class AuditRecorder:
    """Fans security events out to sinks; a failing sink never fails the caller."""

    def __init__(self, sinks: Iterable[AuditSink]) -> None:
        self.sinks = list(sinks)

    def emit(
        self,
        action: str,
        outcome: str,
        *,
        actor_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        **details: Any,
    ) -> None:
        event = SecurityEvent(
            actor_id=actor_id or UNKNOWN_ACTOR,
            action=action,
            outcome=outcome,
            ip_address=ip_addr,
            user_agent=user_agent,
            details=sanitize_detail_data(details),
        )
        for sink in self.sinks:
            try:
                sink.record_security_event(event)
            except Exception as exc:
                logger.warning(
                    "audit_record_failed",
                    action=action,
                    sink=type(sink).__name__,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
