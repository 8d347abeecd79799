# Overview: Pytest coverage for JWT issuance, verification, rotation and revocation.

"""
TokenService tests.

Verifies:
- Access/refresh issuance with shared session and distinct jti
- Signature, algorithm, issuer, audience and expiry enforcement
- Token-type confusion (refresh as access, access as refresh)
- Revocation by digest, jti and session; bounded revocation list
- Refresh rotation and reuse detection
- Device binding
"""

from datetime import timedelta
from types import SimpleNamespace

import jwt
import pytest

from trustcore.errors import (
    DeviceMismatch,
    InvalidTokenType,
    RefreshTokenExpired,
    RefreshTokenInvalid,
    RefreshTokenRevoked,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from trustcore.services.keyed_store import InMemoryKeyedStore
from trustcore.services.token_service import (
    REASON_ROTATED,
    RevocationList,
    TokenService,
    hash_token,
)
from trustcore.time_utils import utcnow


ACCESS_SECRET = "access-" + "a" * 40
REFRESH_SECRET = "refresh-" + "b" * 40
DEVICE = {"terminal": "REG-01", "os": "linux"}


def make_service(clock=utcnow, capacity=10_000) -> TokenService:
    return TokenService(
        RevocationList(InMemoryKeyedStore(), capacity=capacity),
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        device_secret="device-" + "c" * 40,
        issuer="trustcore-test",
        audience="trustcore-test-clients",
        clock=clock,
    )


@pytest.fixture
def tokens():
    return make_service()


@pytest.fixture
def user():
    return SimpleNamespace(id=7, username="alice", role="CASHIER", store_id=1)


class TestIssuance:
    def test_pair_shares_session(self, tokens, user):
        pair = tokens.issue(user)
        access = tokens.verify_access(pair.access_token)
        refresh = tokens.verify_refresh(pair.refresh_token)

        assert access["userId"] == 7
        assert access["role"] == "CASHIER"
        assert access["sessionId"] == pair.session_id == refresh.session_id
        assert access["jti"] != refresh.jti
        assert pair.expires_at < pair.refresh_expires_at

    def test_to_dict(self, tokens, user):
        data = tokens.issue(user).to_dict()
        assert data["token_type"] == "Bearer"
        assert data["expires_at"].endswith("Z")
        assert set(data) >= {"access_token", "refresh_token", "session_id", "refresh_expires_at"}


class TestVerification:
    def test_expired_access_token(self, user):
        past = utcnow() - timedelta(hours=1)
        tokens = make_service(clock=lambda: past)
        pair = tokens.issue(user)
        with pytest.raises(TokenExpired):
            tokens.verify_access(pair.access_token)

    def test_expired_refresh_token(self, tokens, user):
        long_ago = utcnow() - timedelta(days=8)
        pair = make_service(clock=lambda: long_ago).issue(user)
        with pytest.raises(RefreshTokenExpired):
            tokens.verify_refresh(pair.refresh_token)

    def test_wrong_secret(self, tokens, user):
        forged = jwt.encode(
            {"userId": 7, "jti": "x", "iat": 0, "exp": 2**31, "iss": "trustcore-test", "aud": "trustcore-test-clients"},
            "not-the-secret-" + "z" * 32,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            tokens.verify_access(forged)

    def test_alg_none_rejected(self, tokens, user):
        unsigned = jwt.encode(
            {"userId": 7, "jti": "x", "iat": 0, "exp": 2**31, "iss": "trustcore-test", "aud": "trustcore-test-clients"},
            None,
            algorithm="none",
        )
        with pytest.raises(TokenInvalid):
            tokens.verify_access(unsigned)

    def test_wrong_audience(self, tokens, user):
        other = TokenService(
            RevocationList(InMemoryKeyedStore()),
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            device_secret="d" * 40,
            issuer="trustcore-test",
            audience="someone-else",
        )
        with pytest.raises(TokenInvalid):
            tokens.verify_access(other.issue(user).access_token)

    def test_missing_token(self, tokens):
        with pytest.raises(TokenInvalid):
            tokens.verify_access("")
        with pytest.raises(RefreshTokenInvalid):
            tokens.verify_refresh("")


class TestTokenTypeConfusion:
    def test_access_token_as_refresh(self, tokens, user):
        pair = tokens.issue(user)
        with pytest.raises(InvalidTokenType):
            tokens.verify_refresh(pair.access_token)

    def test_refresh_token_signed_with_access_secret(self, tokens, user):
        smuggled = jwt.encode(
            {
                "userId": 7, "sessionId": "s", "jti": "j", "type": "refresh",
                "iat": 0, "exp": 2**31, "iss": "trustcore-test", "aud": "trustcore-test-clients",
            },
            ACCESS_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenType):
            tokens.verify_access(smuggled)

    def test_garbage_as_refresh(self, tokens):
        with pytest.raises(RefreshTokenInvalid):
            tokens.verify_refresh("not.a.jwt")


class TestRevocation:
    def test_revoke_access_token(self, tokens, user):
        pair = tokens.issue(user)
        claims = tokens.revoke(pair.access_token)
        assert claims["userId"] == 7
        with pytest.raises(TokenRevoked):
            tokens.verify_access(pair.access_token)

    def test_revoke_session_kills_both_tokens(self, tokens, user):
        pair = tokens.issue(user)
        tokens.revoke_session(pair.session_id)
        with pytest.raises(TokenRevoked):
            tokens.verify_access(pair.access_token)
        with pytest.raises(RefreshTokenRevoked):
            tokens.verify_refresh(pair.refresh_token)

    def test_revoking_garbage_still_records_digest(self, tokens):
        assert tokens.revoke("garbage") is None
        assert tokens.revocations.contains(f"token:{hash_token('garbage')}")

    def test_capacity_evicts_oldest_half(self):
        revocations = RevocationList(InMemoryKeyedStore(), capacity=10)
        for i in range(10):
            revocations.add(f"jti:{i}")
        assert len(revocations) == 10

        revocations.add("jti:10")
        assert len(revocations) == 6
        assert not revocations.contains("jti:0")
        assert not revocations.contains("jti:4")
        assert revocations.contains("jti:5")
        assert revocations.contains("jti:10")


class TestRotation:
    def test_rotation_issues_new_pair_on_same_session(self, tokens, user):
        first = tokens.issue(user)
        second = tokens.rotate(first.refresh_token, user)

        assert second.session_id == first.session_id
        assert second.refresh_token != first.refresh_token
        assert tokens.verify_access(second.access_token)["userId"] == 7

    def test_reuse_revokes_session(self, tokens, user):
        first = tokens.issue(user)
        jti = tokens.verify_refresh(first.refresh_token).jti
        second = tokens.rotate(first.refresh_token, user)
        assert tokens.revocations.reason_for(f"jti:{jti}") == REASON_ROTATED

        with pytest.raises(RefreshTokenRevoked) as exc:
            tokens.verify_refresh(first.refresh_token)
        assert exc.value.details["reuse_detected"] is True

        # The legitimately rotated pair dies with the session
        with pytest.raises(RefreshTokenRevoked):
            tokens.verify_refresh(second.refresh_token)
        with pytest.raises(TokenRevoked):
            tokens.verify_access(second.access_token)

    def test_rotation_for_another_user(self, tokens, user):
        pair = tokens.issue(user)
        with pytest.raises(RefreshTokenInvalid):
            tokens.rotate(pair.refresh_token, SimpleNamespace(id=8, username="eve", role="ADMIN", store_id=1))


class TestDeviceBinding:
    def test_matching_device(self, tokens, user):
        pair = tokens.issue(user, device_info=DEVICE)
        claims = tokens.verify_access(pair.access_token, device_info={"os": "linux", "terminal": "REG-01"})
        assert claims["deviceFingerprintHash"] == tokens.fingerprint(DEVICE)

    def test_different_device(self, tokens, user):
        pair = tokens.issue(user, device_info=DEVICE)
        with pytest.raises(DeviceMismatch):
            tokens.verify_access(pair.access_token, device_info={"terminal": "REG-02", "os": "linux"})

    def test_bound_token_without_device_info(self, tokens, user):
        pair = tokens.issue(user, device_info=DEVICE)
        claims = tokens.verify_access(pair.access_token)
        assert claims["deviceFingerprintHash"] == tokens.fingerprint(DEVICE)

    def test_unbound_token_ignores_device(self, tokens, user):
        pair = tokens.issue(user)
        assert tokens.verify_access(pair.access_token, device_info=DEVICE)["userId"] == 7
