# Overview: Security health checks and security event reporting.

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import func, select, text

from ..extensions import db
from ..models import SecurityEvent


logger = logging.getLogger(__name__)


HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


def _check_database() -> dict:
    try:
        db.session.execute(text("SELECT 1"))
        return {"status": HEALTHY}
    except Exception as exc:
        logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": UNHEALTHY, "error": type(exc).__name__}


def _check_encryption(vault) -> dict:
    try:
        probe = "health-check-probe"
        blob = vault.encrypt(probe, "health-check")
        if vault.decrypt(blob, "health-check") != probe:
            return {"status": UNHEALTHY, "error": "round trip mismatch"}
        return {"status": HEALTHY}
    except Exception as exc:
        return {"status": UNHEALTHY, "error": type(exc).__name__}


def _check_tokens(tokens) -> dict:
    class _Probe:
        id = 0
        username = "health-check"
        role = "SYSTEM"
        store_id = None

    try:
        pair = tokens.issue(_Probe())
        claims = tokens.verify_access(pair.access_token)
        if claims.get("userId") != 0:
            return {"status": UNHEALTHY, "error": "claims mismatch"}
        return {"status": HEALTHY}
    except Exception as exc:
        return {"status": UNHEALTHY, "error": type(exc).__name__}


def _check_configuration(config, generated_secrets: list[str]) -> dict:
    if generated_secrets:
        return {
            "status": DEGRADED,
            "ephemeral_secrets": list(generated_secrets),
            "hardened": bool(config.get("SECURITY_HARDENED")),
        }
    return {"status": HEALTHY, "hardened": bool(config.get("SECURITY_HARDENED"))}


def security_health_check(context, config) -> dict:
    """
    Health of the security stack: database, encryption round trip, token
    round trip and secret configuration. Overall status is the worst of
    the individual checks.
    """
    checks = {
        "database": _check_database(),
        "encryption": _check_encryption(context.vault),
        "tokens": _check_tokens(context.tokens),
        "configuration": _check_configuration(config, context.generated_secrets),
    }
    statuses = {check["status"] for check in checks.values()}
    if UNHEALTHY in statuses:
        overall = UNHEALTHY
    elif DEGRADED in statuses:
        overall = DEGRADED
    else:
        overall = HEALTHY
    return {"status": overall, "checks": checks}


def security_report(now, period: timedelta = timedelta(hours=24)) -> dict:
    """Security event counts over the trailing period, grouped by type and outcome."""
    since = now - period
    rows = db.session.execute(
        select(SecurityEvent.event_type, SecurityEvent.success, func.count(SecurityEvent.id))
        .where(SecurityEvent.occurred_at >= since)
        .group_by(SecurityEvent.event_type, SecurityEvent.success)
    ).all()

    by_type: dict[str, dict] = {}
    failures = 0
    total = 0
    for event_type, success, count in rows:
        bucket = by_type.setdefault(event_type, {"success": 0, "failure": 0})
        bucket["success" if success else "failure"] += count
        total += count
        if not success:
            failures += count

    return {
        "period_hours": int(period.total_seconds() // 3600),
        "total_events": total,
        "failed_events": failures,
        "events_by_type": by_type,
    }
