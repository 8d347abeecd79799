# Overview: Security event sink; records authentication, token, fraud and integrity outcomes.

"""
Security Event Sink

WHY: Immutable audit trail for security monitoring. Every rejected
security-relevant operation (bad credentials, lockout, revoked token, CSRF
mismatch, risk block, integrity mismatch, decryption failure, rate limit)
records exactly one event; successful logins and checkouts record their own
success types.

Recording never raises: callers go through record_safely(), which logs and
swallows a sink failure so it can not change the outcome of the operation
being audited.

SqlSecurityEventSink commits through db.session. Callers emit only after
their own unit of work has committed or rolled back.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import SecurityEvent
from trustcore.time_utils import utcnow


logger = logging.getLogger(__name__)


# Failures
LOGIN_FAILED = "LOGIN_FAILED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
TOKEN_REVOKED = "TOKEN_REVOKED"
TOKEN_INVALID = "TOKEN_INVALID"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
DEVICE_MISMATCH = "DEVICE_MISMATCH"
INVALID_TOKEN_TYPE = "INVALID_TOKEN_TYPE"
REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
REFRESH_FAILED = "REFRESH_FAILED"
CSRF_VIOLATION = "CSRF_VIOLATION"
PERMISSION_DENIED = "PERMISSION_DENIED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
HIGH_RISK_TRANSACTION = "HIGH_RISK_TRANSACTION"
TRANSACTION_FAILED = "TRANSACTION_FAILED"
INTEGRITY_MISMATCH = "INTEGRITY_MISMATCH"
DECRYPTION_FAILED = "DECRYPTION_FAILED"

# Successes
AUTHENTICATION_SUCCESS = "AUTHENTICATION_SUCCESS"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
LOGOUT = "LOGOUT"
TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"


class SecurityEventSink:
    """Collaborator interface. Callers invoke it through record_safely()."""

    def record(
        self,
        event_type: str,
        *,
        success: bool,
        user_id: int | None = None,
        resource: str | None = None,
        reason: str | None = None,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        raise NotImplementedError


def _log(event_type: str, success: bool, user_id, resource, reason) -> None:
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        "security event %s success=%s user_id=%s resource=%s reason=%s",
        event_type, success, user_id, resource, reason,
    )


class LoggingSecurityEventSink(SecurityEventSink):
    """Log-only sink (no persistence)."""

    def record(self, event_type: str, *, success: bool, user_id=None, resource=None,
               reason=None, details=None, ip_address=None, user_agent=None) -> None:
        _log(event_type, success, user_id, resource, reason)


class SqlSecurityEventSink(SecurityEventSink):
    """Appends to the security_events table and logs the event."""

    def record(self, event_type: str, *, success: bool, user_id=None, resource=None,
               reason=None, details=None, ip_address=None, user_agent=None) -> None:
        _log(event_type, success, user_id, resource, reason)
        try:
            event = SecurityEvent(
                user_id=user_id,
                event_type=event_type,
                success=success,
                resource=resource,
                reason=reason,
                details=details,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
                occurred_at=utcnow(),
            )
            db.session.add(event)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Failed to persist security event %s", event_type)


def record_safely(sink: SecurityEventSink, event_type: str, **fields) -> None:
    """Record through any sink; a failing sink is logged, never propagated."""
    try:
        sink.record(event_type, **fields)
    except Exception:
        logger.exception("Security event sink failed to record %s", event_type)
