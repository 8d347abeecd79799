# Overview: Request decorators for authentication, roles, CSRF and rate limiting.

import json
from functools import wraps

from flask import current_app, g, request

from .context import get_security_context
from .errors import (
    AuthenticationError,
    CsrfTokenInvalid,
    CsrfTokenMissing,
    InsufficientRole,
    RateLimitError,
    ValidationError,
)
from .services import security_events as events


def _client() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def device_info_from_request() -> dict | None:
    """Optional X-Device-Info header: JSON object describing the terminal."""
    raw = request.headers.get("X-Device-Info")
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError("X-Device-Info must be a JSON object")
    if not isinstance(data, dict):
        raise ValidationError("X-Device-Info must be a JSON object")
    return data


def require_auth(f):
    """
    Require a valid access token.

    Sets on Flask g:
    - g.current_user: the authenticated User
    - g.token_claims: verified access token claims
    - g.access_token: the raw bearer token (for logout)
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise AuthenticationError("Authentication required", code="AUTHENTICATION_REQUIRED")

        context = get_security_context()
        user, claims = context.auth.verify_access(
            token,
            device_info=device_info_from_request(),
            resource=request.path,
            **_client(),
        )

        g.current_user = user
        g.token_claims = claims
        g.access_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require one of the given roles. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                raise AuthenticationError("Authentication required", code="AUTHENTICATION_REQUIRED")

            if user.role not in roles:
                events.record_safely(
                    get_security_context().events,
                    events.PERMISSION_DENIED,
                    success=False,
                    user_id=user.id,
                    resource=request.path,
                    reason=f"Role {user.role} not in {', '.join(roles)}",
                    **_client(),
                )
                raise InsufficientRole(
                    "Insufficient role",
                    details={"required_roles": list(roles)},
                )
            return f(*args, **kwargs)

        return decorated_function
    return decorator


def csrf_protect(f):
    """
    Require X-CSRF-Token bound to the caller's session.

    The session is the sessionId of the verified access token when present,
    otherwise the X-Session-Token header.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        context = get_security_context()
        claims = getattr(g, "token_claims", None) or {}
        session_token = claims.get("sessionId") or request.headers.get("X-Session-Token")
        csrf_token = request.headers.get("X-CSRF-Token")
        user = getattr(g, "current_user", None)

        error = None
        if not csrf_token:
            error = CsrfTokenMissing("CSRF token required")
        elif not context.vault.validate_csrf_token(
            csrf_token,
            session_token,
            max_age_seconds=current_app.config["CSRF_TOKEN_MAX_AGE_SECONDS"],
        ):
            error = CsrfTokenInvalid("Invalid CSRF token")

        if error is not None:
            events.record_safely(
                context.events,
                events.CSRF_VIOLATION,
                success=False,
                user_id=user.id if user else None,
                resource=request.path,
                reason=error.message,
                **_client(),
            )
            raise error
        return f(*args, **kwargs)

    return decorated_function


def _enforce_limit(limiter, key: str, user_id: int | None = None) -> None:
    try:
        limiter.check(key)
    except RateLimitError as exc:
        events.record_safely(
            get_security_context().events,
            events.RATE_LIMIT_EXCEEDED,
            success=False,
            user_id=user_id,
            resource=request.path,
            reason=exc.message,
            details=exc.details,
            **_client(),
        )
        raise


def rate_limit_checkout(f):
    """Per-employee checkout rate limit. Use after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = g.current_user
        _enforce_limit(get_security_context().checkout_limiter, str(user.id), user.id)
        return f(*args, **kwargs)

    return decorated_function


def rate_limit_login(f):
    """
    Per-IP login rate limit.

    Counts every attempt from the client address, so rotating usernames
    (which dodges the per-username lockout) is still throttled.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _enforce_limit(get_security_context().login_limiter, request.remote_addr or "unknown")
        return f(*args, **kwargs)

    return decorated_function
