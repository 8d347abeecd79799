# Overview: Pytest coverage for login, lockout, refresh rotation and logout flows.

"""
Authentication Service Tests

Verifies:
- Successful login issues a token pair and a CSRF token bound to the session
- Credential stuffing: lockout on the 5th failure, refusal while locked even
  with the correct password, recovery after the window
- Unknown and disabled accounts
- Refresh rotation and reuse detection
- Logout revokes the session
- Account creation enforces the password policy
"""

from datetime import datetime, timedelta

import pytest

from conftest import PASSWORD, events_of
from trustcore.errors import (
    AccountDisabled,
    AccountLocked,
    ConflictError,
    DeviceMismatch,
    InvalidCredentials,
    InvalidTokenType,
    PasswordValidationError,
    RefreshTokenRevoked,
    TokenRevoked,
    ValidationError,
)
from trustcore.extensions import db
from trustcore.services import security_events as events
from trustcore.services.auth_service import lockout_identifier
from trustcore.services.credential_guard import CredentialGuard
from trustcore.services.keyed_store import InMemoryKeyedStore


IP = "203.0.113.9"


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def guard_clock(ctx):
    """Replace the guard with one whose clock the test controls."""
    clock = MutableClock(datetime(2026, 3, 10, 12, 0, 0))
    ctx.auth.guard = CredentialGuard(InMemoryKeyedStore(), bcrypt_rounds=4, verify_target_ms=0, clock=clock)
    return clock


class TestAuthenticate:
    def test_success(self, ctx, cashier):
        result = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP, user_agent="pytest")

        assert result.user.id == cashier.id
        assert result.user.last_login_at is not None
        claims = ctx.tokens.verify_access(result.tokens.access_token)
        assert claims["userId"] == cashier.id
        assert ctx.vault.validate_csrf_token(result.csrf_token, result.tokens.session_id)

        payload = result.to_dict()
        assert payload["user"]["username"] == "alice"
        assert "password_hash" not in payload["user"]

        successes = events_of(events.AUTHENTICATION_SUCCESS)
        assert len(successes) == 1
        assert successes[0].user_id == cashier.id

    def test_wrong_password(self, ctx, cashier):
        with pytest.raises(InvalidCredentials) as exc:
            ctx.auth.authenticate("alice", "Wrong-Password-1!", ip_address=IP)
        assert exc.value.details == {"attempts_remaining": 4, "locked": False}

        failures = events_of(events.LOGIN_FAILED)
        assert len(failures) == 1
        assert failures[0].user_id == cashier.id
        assert failures[0].ip_address == IP

    def test_unknown_user_looks_like_wrong_password(self, ctx, cashier):
        with pytest.raises(InvalidCredentials) as exc:
            ctx.auth.authenticate("mallory", PASSWORD, ip_address=IP)
        assert exc.value.message == "Invalid credentials"
        assert events_of(events.LOGIN_FAILED)[0].user_id is None

    def test_disabled_account_after_correct_password(self, ctx, cashier):
        cashier.is_active = False
        db.session.commit()

        with pytest.raises(InvalidCredentials):
            ctx.auth.authenticate("alice", "Wrong-Password-1!", ip_address=IP)
        with pytest.raises(AccountDisabled):
            ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        assert len(events_of(events.ACCOUNT_DISABLED)) == 1

    def test_missing_fields(self, ctx):
        with pytest.raises(ValidationError):
            ctx.auth.authenticate("", PASSWORD)

    def test_non_string_credentials(self, ctx, cashier):
        with pytest.raises(ValidationError):
            ctx.auth.authenticate(123, PASSWORD)
        with pytest.raises(ValidationError):
            ctx.auth.authenticate("alice", {"password": PASSWORD})
        assert events_of(events.LOGIN_FAILED) == []

    def test_device_bound_login(self, ctx, cashier):
        device = {"terminal": "REG-01"}
        result = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP, device_info=device)
        with pytest.raises(DeviceMismatch):
            ctx.auth.verify_access(result.tokens.access_token, device_info={"terminal": "REG-02"})
        assert len(events_of(events.DEVICE_MISMATCH)) == 1


class TestCredentialStuffing:
    def test_lockout_sequence(self, ctx, cashier, guard_clock):
        """Five failures lock the account; the correct password is refused while locked."""
        for attempt in range(1, 5):
            with pytest.raises(InvalidCredentials) as exc:
                ctx.auth.authenticate("alice", f"Wrong-Password-{attempt}!", ip_address=IP)
            assert exc.value.details["locked"] is False

        with pytest.raises(InvalidCredentials) as exc:
            ctx.auth.authenticate("alice", "Wrong-Password-5!", ip_address=IP)
        assert exc.value.details == {"attempts_remaining": 0, "locked": True}

        with pytest.raises(AccountLocked) as exc:
            ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        assert exc.value.http_status == 429
        assert exc.value.details["retry_after_seconds"] == 30 * 60

        assert len(events_of(events.LOGIN_FAILED)) == 5
        assert len(events_of(events.ACCOUNT_LOCKED)) == 1
        assert events_of(events.AUTHENTICATION_SUCCESS) == []

    def test_other_ip_is_not_locked(self, ctx, cashier, guard_clock):
        for attempt in range(5):
            with pytest.raises(InvalidCredentials):
                ctx.auth.authenticate("alice", "Wrong-Password-0!", ip_address=IP)
        assert ctx.auth.authenticate("alice", PASSWORD, ip_address="198.51.100.1").user.id == cashier.id

    def test_unlocks_after_window(self, ctx, cashier, guard_clock):
        for attempt in range(5):
            with pytest.raises(InvalidCredentials):
                ctx.auth.authenticate("alice", "Wrong-Password-0!", ip_address=IP)

        guard_clock.now += timedelta(minutes=31)
        result = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        assert result.user.id == cashier.id
        assert ctx.auth.guard.lockout_status(lockout_identifier("alice", IP))["failed_attempts"] == 0

    def test_success_clears_failures(self, ctx, cashier, guard_clock):
        for attempt in range(3):
            with pytest.raises(InvalidCredentials):
                ctx.auth.authenticate("Alice", "Wrong-Password-0!", ip_address=IP)
        ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        assert not ctx.auth.guard.is_locked(lockout_identifier("alice", IP))

    def test_identifier_is_case_insensitive(self):
        assert lockout_identifier(" Alice ", "10.0.0.1") == "alice-10.0.0.1"
        assert lockout_identifier("bob", None) == "bob-unknown"


class TestRefresh:
    def test_rotation(self, ctx, cashier):
        login = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        refreshed = ctx.auth.refresh(login.tokens.refresh_token, ip_address=IP)

        assert refreshed.tokens.session_id == login.tokens.session_id
        assert refreshed.tokens.refresh_token != login.tokens.refresh_token
        assert len(events_of(events.TOKEN_REFRESHED)) == 1

    def test_reuse_detected(self, ctx, cashier):
        login = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        refreshed = ctx.auth.refresh(login.tokens.refresh_token)

        with pytest.raises(RefreshTokenRevoked):
            ctx.auth.refresh(login.tokens.refresh_token)
        assert len(events_of(events.REFRESH_TOKEN_REUSE)) == 1

        with pytest.raises(TokenRevoked):
            ctx.auth.verify_access(refreshed.tokens.access_token)

    def test_access_token_rejected(self, ctx, cashier):
        login = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        with pytest.raises(InvalidTokenType):
            ctx.auth.refresh(login.tokens.access_token)
        assert len(events_of(events.INVALID_TOKEN_TYPE)) == 1

    def test_disabled_user_cannot_refresh(self, ctx, cashier):
        login = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        cashier.is_active = False
        db.session.commit()
        with pytest.raises(AccountDisabled):
            ctx.auth.refresh(login.tokens.refresh_token)
        assert len(events_of(events.REFRESH_FAILED)) == 1


class TestRevoke:
    def test_logout_revokes_session(self, ctx, cashier):
        login = ctx.auth.authenticate("alice", PASSWORD, ip_address=IP)
        ctx.auth.revoke(login.tokens.access_token, login.tokens.refresh_token, user_id=cashier.id)

        with pytest.raises(TokenRevoked):
            ctx.auth.verify_access(login.tokens.access_token)
        with pytest.raises(RefreshTokenRevoked):
            ctx.auth.refresh(login.tokens.refresh_token)

        logouts = events_of(events.LOGOUT)
        assert len(logouts) == 1
        assert logouts[0].details["session_id"] == login.tokens.session_id
        assert len(events_of(events.TOKEN_REVOKED)) == 1


class TestCreateUser:
    def test_duplicate_username(self, ctx, cashier, store):
        with pytest.raises(ConflictError) as exc:
            ctx.auth.create_user("alice", PASSWORD, store_id=store.id)
        assert exc.value.code == "DUPLICATE_USERNAME"

    def test_weak_password(self, ctx, store):
        with pytest.raises(PasswordValidationError) as exc:
            ctx.auth.create_user("bob", "password", store_id=store.id)
        assert exc.value.http_status == 400
        assert exc.value.details["errors"]

    def test_invalid_role(self, ctx, store):
        with pytest.raises(ValidationError):
            ctx.auth.create_user("bob", PASSWORD, role="OWNER", store_id=store.id)

    def test_password_is_hashed(self, ctx, cashier):
        assert cashier.password_hash.startswith("$2b$")
        assert PASSWORD not in cashier.password_hash
