# Overview: Flask API routes for authentication; parses input and returns JSON responses.

# backend/trustcore/routes/auth.py
"""
Authentication API routes

SECURITY FEATURES:
- Account lockout after repeated failed attempts (per username and origin)
- Short-lived access tokens with rotating refresh tokens
- Optional device binding through the X-Device-Info header
- Logout revokes both tokens and the whole session
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..context import get_security_context
from ..decorators import device_info_from_request, rate_limit_login, require_auth
from ..errors import TrustCoreError, ValidationError
from ..services.auth_service import lockout_identifier


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
@rate_limit_login
def login_route():
    """
    Authenticate user and issue an access/refresh token pair.

    Body: {"username": str, "password": str}
    Optional header X-Device-Info binds the access token to the device.
    """
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("JSON object body required")
        username = data.get("username")
        password = data.get("password")

        if not username or not password:
            raise ValidationError("username and password required")
        if not isinstance(username, str) or not isinstance(password, str):
            raise ValidationError("username and password must be strings")

        result = get_security_context().auth.authenticate(
            username,
            password,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
            device_info=device_info_from_request(),
        )
        payload = result.to_dict()
        payload["message"] = "Login successful"
        return jsonify(payload), 200

    except TrustCoreError:
        raise
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


@auth_bp.post("/refresh")
def refresh_route():
    """
    Exchange a refresh token for a new pair (rotation).

    Body: {"refresh_token": str}
    Reusing a rotated refresh token revokes the whole session.
    """
    try:
        data = request.get_json(silent=True) or {}
        refresh_token = data.get("refresh_token")
        if not refresh_token or not isinstance(refresh_token, str):
            raise ValidationError("refresh_token required")

        result = get_security_context().auth.refresh(
            refresh_token,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
            device_info=device_info_from_request(),
        )
        return jsonify(result.to_dict()), 200

    except TrustCoreError:
        raise
    except Exception:
        current_app.logger.exception("Failed to refresh token")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    """
    Revoke the access token, the optional refresh token and the session.

    Expects Authorization header: Bearer <access token>
    """
    try:
        data = request.get_json(silent=True) or {}
        get_security_context().auth.revoke(
            g.access_token,
            data.get("refresh_token"),
            user_id=g.current_user.id,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"message": "Logout successful"}), 200

    except TrustCoreError:
        raise
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current user and session (token claims without secrets)."""
    claims = g.token_claims
    return jsonify({
        "user": g.current_user.to_dict(),
        "session_id": claims.get("sessionId"),
        "device_bound": bool(claims.get("deviceFingerprintHash")),
    })


@auth_bp.get("/csrf-token")
@require_auth
def csrf_token_route():
    """Fresh CSRF token for the caller's session."""
    vault = get_security_context().vault
    return jsonify({"csrf_token": vault.generate_csrf_token(g.token_claims["sessionId"])})


@auth_bp.get("/lockout-status/<username>")
def lockout_status_route(username: str):
    """
    Lockout status for a username from the caller's origin.

    Public so a locked-out terminal can show when to retry.
    """
    guard = get_security_context().guard
    return jsonify(guard.lockout_status(lockout_identifier(username, request.remote_addr)))
