# backend/trustcore/routes/system.py
"""
System health and security monitoring endpoints.
"""

from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from ..context import get_security_context
from ..decorators import require_auth, require_role
from ..errors import ValidationError
from ..models.auth import ROLE_ADMIN
from ..services import health_service
from trustcore.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


@system_bp.get("/health")
def health():
    """Liveness probe. No dependencies checked."""
    return jsonify({"status": "ok", "timestamp": to_utc_z(utcnow())})


@system_bp.get("/api/security/health")
@require_auth
@require_role(ROLE_ADMIN)
def security_health():
    """
    Security stack health: database, encryption, token round trip and
    secret configuration.

    Returns 503 when any check is unhealthy.
    """
    result = health_service.security_health_check(get_security_context(), current_app.config)
    status_code = 503 if result["status"] == health_service.UNHEALTHY else 200
    return jsonify(result), status_code


@system_bp.get("/api/security/report")
@require_auth
@require_role(ROLE_ADMIN)
def security_report():
    """Security event summary. Query param hours (default 24, max 720)."""
    hours = request.args.get("hours", default=24, type=int)
    if hours is None or hours <= 0 or hours > 720:
        raise ValidationError("hours must be between 1 and 720")
    report = health_service.security_report(utcnow(), timedelta(hours=hours))
    report["generated_at"] = to_utc_z(utcnow())
    return jsonify(report)
