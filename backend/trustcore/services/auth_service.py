# Overview: Service-layer authentication flows (login, refresh, logout, token checks).

"""
Authentication Service

WHY: Single place where credentials, lockout, tokens and security events
meet. Routes, decorators and the CLI call these methods; none of them
touch CredentialGuard or TokenService directly for authentication.

SECURITY FEATURES:
- Lockout identifier is "<username>-<ip>"; a locked identifier is refused
  before the password is checked, even when the password is correct
- Unknown usernames still run a full bcrypt verification against a dummy
  hash, so response time does not reveal which usernames exist
- Inactive accounts are reported only after a correct password
- Every rejected attempt records exactly one security event
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..extensions import db
from ..models import User
from ..models.auth import ROLE_CASHIER, VALID_ROLES
from ..errors import (
    AccountDisabled,
    AccountLocked,
    AuthenticationError,
    ConflictError,
    DeviceMismatch,
    InvalidCredentials,
    InvalidTokenType,
    PasswordValidationError,
    RefreshTokenRevoked,
    TokenExpired,
    TokenRevoked,
    ValidationError,
)
from . import security_events as events
from .credential_guard import CredentialGuard
from .crypto_vault import CryptoVault
from .security_events import SecurityEventSink
from .token_service import TokenPair, TokenService
from trustcore.time_utils import utcnow


logger = logging.getLogger(__name__)


DUMMY_PASSWORD = "dummy-password-for-timing-Aa1!"

# Maps token verification failures to the event type recorded for them
TOKEN_FAILURE_EVENTS = {
    TokenRevoked: events.TOKEN_REVOKED,
    TokenExpired: events.TOKEN_EXPIRED,
    DeviceMismatch: events.DEVICE_MISMATCH,
    InvalidTokenType: events.INVALID_TOKEN_TYPE,
}


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    csrf_token: str | None = None

    def to_dict(self) -> dict:
        payload = self.tokens.to_dict()
        payload["user"] = self.user.to_dict()
        payload["csrf_token"] = self.csrf_token
        return payload


def lockout_identifier(username: str, ip_address: str | None) -> str:
    return f"{username.strip().lower()}-{ip_address or 'unknown'}"


class AuthService:
    def __init__(
        self,
        guard: CredentialGuard,
        tokens: TokenService,
        event_sink: SecurityEventSink,
        vault: CryptoVault | None = None,
    ):
        self.guard = guard
        self.tokens = tokens
        self.events = event_sink
        self.vault = vault
        self._dummy_hash: str | None = None

    def _dummy(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.guard.hash_password(DUMMY_PASSWORD).hash
        return self._dummy_hash

    def _csrf_for(self, tokens: TokenPair) -> str | None:
        if self.vault is None:
            return None
        return self.vault.generate_csrf_token(tokens.session_id)

    # =========================================================================
    # AUTHENTICATE
    # =========================================================================

    def authenticate(
        self,
        username: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: dict | None = None,
    ) -> AuthResult:
        """
        Verify credentials and issue a token pair.

        Raises AccountLocked, InvalidCredentials or AccountDisabled.
        """
        if not username or not password:
            raise ValidationError("username and password required")
        if not isinstance(username, str) or not isinstance(password, str):
            raise ValidationError("username and password must be strings")

        identifier = lockout_identifier(username, ip_address)
        origin = {"ip_address": ip_address, "user_agent": user_agent, "resource": "authenticate"}

        if self.guard.is_locked(identifier):
            status = self.guard.lockout_status(identifier)
            events.record_safely(
                self.events,
                events.ACCOUNT_LOCKED,
                success=False,
                reason="Login attempted while locked",
                details={"username": username},
                **origin,
            )
            raise AccountLocked(
                "Account temporarily locked due to too many failed login attempts",
                details={"locked": True, "retry_after_seconds": status["seconds_until_unlock"]},
            )

        user = db.session.query(User).filter_by(username=username.strip()).first()

        if user is None:
            self.guard.verify_password(password, self._dummy())
            self._fail(identifier, None, username, "Unknown username", origin)

        if not self.guard.verify_password(password, user.password_hash):
            self._fail(identifier, user.id, username, "Invalid password", origin)

        if not user.is_active:
            events.record_safely(
                self.events,
                events.ACCOUNT_DISABLED,
                success=False,
                user_id=user.id,
                reason="Account is disabled",
                **origin,
            )
            raise AccountDisabled("Account is disabled")

        self.guard.clear(identifier)
        user.last_login_at = utcnow()
        db.session.commit()

        pair = self.tokens.issue(user, device_info=device_info)
        events.record_safely(
            self.events,
            events.AUTHENTICATION_SUCCESS,
            success=True,
            user_id=user.id,
            details={"session_id": pair.session_id, "device_bound": bool(device_info)},
            **origin,
        )
        return AuthResult(user=user, tokens=pair, csrf_token=self._csrf_for(pair))

    def _fail(self, identifier: str, user_id: int | None, username: str, reason: str, origin: dict):
        locked_now = self.guard.track_failed_attempt(identifier)
        status = self.guard.lockout_status(identifier)
        remaining = max(status["max_attempts"] - status["failed_attempts"], 0)
        events.record_safely(
            self.events,
            events.LOGIN_FAILED,
            success=False,
            user_id=user_id,
            reason=reason,
            details={"username": username, "failed_attempts": status["failed_attempts"], "locked_now": locked_now},
            **origin,
        )
        raise InvalidCredentials(
            "Invalid credentials",
            details={"attempts_remaining": remaining, "locked": locked_now},
        )

    # =========================================================================
    # REFRESH / REVOKE
    # =========================================================================

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: dict | None = None,
    ) -> AuthResult:
        origin = {"ip_address": ip_address, "user_agent": user_agent, "resource": "refresh"}
        try:
            claims = self.tokens.verify_refresh(refresh_token)
            user = db.session.get(User, claims.user_id)
            if user is None or not user.is_active:
                self.tokens.revoke_session(claims.session_id)
                raise AccountDisabled("Account is disabled")
            pair = self.tokens.rotate(refresh_token, user, device_info=device_info)
        except AuthenticationError as exc:
            if isinstance(exc, RefreshTokenRevoked) and exc.details.get("reuse_detected"):
                event_type = events.REFRESH_TOKEN_REUSE
            elif isinstance(exc, InvalidTokenType):
                event_type = events.INVALID_TOKEN_TYPE
            else:
                event_type = events.REFRESH_FAILED
            events.record_safely(self.events, event_type, success=False, reason=exc.message, details={"code": exc.code}, **origin)
            raise

        events.record_safely(

            self.events,
            events.TOKEN_REFRESHED,
            success=True,
            user_id=user.id,
            details={"session_id": pair.session_id},
            **origin,
        )
        return AuthResult(user=user, tokens=pair, csrf_token=self._csrf_for(pair))

    def revoke(
        self,
        access_token: str,
        refresh_token: str | None = None,
        *,
        user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Logout: revoke the presented tokens and their whole session."""
        claims = self.tokens.revoke(access_token)
        if refresh_token:
            self.tokens.revoke(refresh_token)
        session_id = claims.get("sessionId") if claims else None
        self.tokens.revoke_session(session_id)

        events.record_safely(

            self.events,
            events.LOGOUT,
            success=True,
            user_id=user_id or (claims or {}).get("userId"),
            resource="revoke",
            details={"session_id": session_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # =========================================================================
    # REQUEST AUTHENTICATION
    # =========================================================================

    def verify_access(
        self,
        token: str,
        *,
        device_info: dict | None = None,
        resource: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[User, dict]:
        """
        Resolve the user behind an access token.

        Records one security event on failure and re-raises.
        """
        try:
            claims = self.tokens.verify_access(token, device_info=device_info)
            user = db.session.get(User, int(claims["userId"]))
            if user is None or not user.is_active:
                raise AccountDisabled("Account is disabled")
        except AuthenticationError as exc:
            event_type = TOKEN_FAILURE_EVENTS.get(type(exc), events.TOKEN_INVALID)
            if isinstance(exc, AccountDisabled):
                event_type = events.ACCOUNT_DISABLED
            events.record_safely(
                self.events,
                event_type,
                success=False,
                reason=exc.message,
                resource=resource,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        return user, claims

    # =========================================================================
    # USERS
    # =========================================================================

    def create_user(
        self,
        username: str,
        password: str,
        *,
        role: str = ROLE_CASHIER,
        first_name: str = "",
        last_name: str = "",
        store_id: int | None = None,
    ) -> User:
        """Create an employee account after enforcing the password policy."""
        username = (username or "").strip()
        if not username:
            raise ValidationError("username required")
        if role not in VALID_ROLES:
            raise ValidationError("Invalid role", details={"valid_roles": list(VALID_ROLES)})
        if db.session.query(User).filter_by(username=username).first():
            raise ConflictError("Username already exists", code="DUPLICATE_USERNAME")

        strength = self.guard.validate_strength(password, username=username)
        if not strength.is_valid:
            raise PasswordValidationError(
                "Password does not meet security requirements",
                details={"errors": strength.errors, "strength": strength.strength},
            )

        user = User(
            username=username,
            password_hash=self.guard.hash_password(password).hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
            store_id=store_id,
            is_active=True,
        )
        db.session.add(user)
        db.session.commit()
        logger.info("Created user %s with role %s", username, role)
        return user
