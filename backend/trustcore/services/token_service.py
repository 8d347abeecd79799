# Overview: JWT access/refresh token issuance, verification, rotation and revocation.

"""
Token Service

WHY: Every authenticated request carries a short-lived access token; a
longer-lived refresh token obtains new pairs without re-entering the
password. Both are stateless JWTs, so revocation is tracked separately in
a bounded RevocationList backed by a KeyedStore.

SECURITY FEATURES:
- HS256 pinned on decode (no algorithm negotiation, "none" rejected)
- Issuer and audience pinned on both token types
- Separate secrets for access and refresh tokens
- Access TTL 15 minutes, refresh TTL 7 days
- Optional device binding: HMAC-SHA256 of the canonical device metadata
- Refresh rotation: the old refresh token is marked rotated; presenting it
  again revokes the whole session (token theft signal)
- Raw tokens are never stored or logged, only their SHA-256 digests
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import jwt

from .crypto_vault import CryptoVault, canonical_json
from .keyed_store import KeyedStore
from ..errors import (
    DeviceMismatch,
    InvalidTokenType,
    RefreshTokenExpired,
    RefreshTokenInvalid,
    RefreshTokenRevoked,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from trustcore.time_utils import epoch_ms, from_epoch_seconds, to_utc_z, utcnow


logger = logging.getLogger(__name__)


ALGORITHM = "HS256"
TOKEN_TYPE_REFRESH = "refresh"

REASON_REVOKED = "revoked"
REASON_ROTATED = "rotated"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "Bearer",
            "expires_at": to_utc_z(self.expires_at),
            "refresh_expires_at": to_utc_z(self.refresh_expires_at),
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class RefreshClaims:
    user_id: int
    session_id: str
    jti: str
    expires_at: datetime


def hash_token(token: str) -> str:
    """SHA-256 of a raw token. Tokens are high-entropy, so no salt is needed."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationList:
    """
    Bounded revoked-identifier set.

    Keys are namespaced strings ("token:<digest>", "jti:<id>",
    "session:<id>"); the value is the revocation reason. When the set
    reaches capacity, the oldest half is evicted before the new entry is
    added.
    """

    def __init__(self, store: KeyedStore, capacity: int = 10_000, ttl_seconds: float | None = None):
        self._store = store
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds

    def add(self, key: str, reason: str = REASON_REVOKED) -> None:
        if self._store.size() >= self.capacity:
            evicted = self._store.evict_oldest(self.capacity // 2)
            logger.info("Revocation list at capacity; evicted %d oldest entries", evicted)
        self._store.set(key, reason, ttl_seconds=self.ttl_seconds)

    def reason_for(self, key: str) -> str | None:
        return self._store.get(key)

    def contains(self, key: str) -> bool:
        return self._store.contains(key)

    def __len__(self) -> int:
        return self._store.size()


class TokenService:
    def __init__(
        self,
        revocations: RevocationList,
        *,
        access_secret: str,
        refresh_secret: str,
        device_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.revocations = revocations
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._device_secret = device_secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    # =========================================================================
    # ISSUANCE
    # =========================================================================

    def fingerprint(self, device_info: dict) -> str:
        return CryptoVault.sign_hmac(canonical_json(device_info), self._device_secret)

    def issue(self, user, device_info: dict | None = None, session_id: str | None = None) -> TokenPair:
        """
        Issue an access/refresh pair for a user.

        Both tokens share session_id and carry distinct jti values.
        Pass session_id to continue an existing session (rotation).
        """
        now = self._clock()
        session_id = session_id or secrets.token_hex(16)
        access_expires = now + self.access_ttl
        refresh_expires = now + self.refresh_ttl
        iat = epoch_ms(now) // 1000

        access_claims = {
            "userId": user.id,
            "username": user.username,
            "role": user.role,
            "storeId": user.store_id,
            "jti": str(uuid.uuid4()),
            "sessionId": session_id,
            "iat": iat,
            "exp": iat + int(self.access_ttl.total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        if device_info:
            access_claims["deviceFingerprintHash"] = self.fingerprint(device_info)

        refresh_claims = {
            "userId": user.id,
            "sessionId": session_id,
            "jti": str(uuid.uuid4()),
            "type": TOKEN_TYPE_REFRESH,
            "iat": iat,
            "exp": iat + int(self.refresh_ttl.total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
        }

        return TokenPair(
            access_token=jwt.encode(access_claims, self._access_secret, algorithm=ALGORITHM),
            refresh_token=jwt.encode(refresh_claims, self._refresh_secret, algorithm=ALGORITHM),
            expires_at=access_expires,
            refresh_expires_at=refresh_expires,
            session_id=session_id,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def _decode(self, token: str, secret: str, verify_exp: bool = True) -> dict:
        return jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=self.issuer,
            audience=self.audience,
            options={"require": ["exp", "iat", "jti"], "verify_exp": verify_exp},
        )

    def _session_revoked(self, session_id: str | None) -> bool:
        return bool(session_id) and self.revocations.contains(f"session:{session_id}")

    def verify_access(self, token: str, device_info: dict | None = None) -> dict:
        """
        Verify an access token and return its claims.

        Raises TokenRevoked, TokenExpired, TokenInvalid or DeviceMismatch.
        When device metadata is supplied and the token is bound to a device,
        the fingerprints must match.
        """
        if not token:
            raise TokenInvalid("Access token required")

        if self.revocations.contains(f"token:{hash_token(token)}"):
            raise TokenRevoked("Token has been revoked")

        try:
            claims = self._decode(token, self._access_secret)
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenInvalid("Invalid token") from exc

        if claims.get("type") == TOKEN_TYPE_REFRESH:
            raise InvalidTokenType("Refresh token cannot be used for authentication")

        if self.revocations.contains(f"jti:{claims['jti']}") or self._session_revoked(claims.get("sessionId")):
            raise TokenRevoked("Token has been revoked")

        bound = claims.get("deviceFingerprintHash")
        if device_info and bound:
            if not CryptoVault.verify_hmac_constant_time(bound, self.fingerprint(device_info)):
                raise DeviceMismatch("Device fingerprint mismatch")

        return claims

    def verify_refresh(self, token: str) -> RefreshClaims:
        """
        Verify a refresh token.

        Presenting an access token here raises InvalidTokenType rather than
        a generic invalid-signature error. Presenting a refresh token that
        was already rotated revokes its whole session.
        """
        if not token:
            raise RefreshTokenInvalid("Refresh token required")

        if self.revocations.contains(f"token:{hash_token(token)}"):
            raise RefreshTokenRevoked("Refresh token has been revoked")

        try:
            claims = self._decode(token, self._refresh_secret)
        except jwt.ExpiredSignatureError as exc:
            raise RefreshTokenExpired("Refresh token has expired") from exc
        except jwt.InvalidSignatureError as exc:
            if self._is_access_token(token):
                raise InvalidTokenType("Access token cannot be used as a refresh token") from exc
            raise RefreshTokenInvalid("Invalid refresh token") from exc
        except jwt.InvalidTokenError as exc:
            raise RefreshTokenInvalid("Invalid refresh token") from exc

        if claims.get("type") != TOKEN_TYPE_REFRESH:
            raise InvalidTokenType("Invalid token type")

        session_id = claims.get("sessionId")
        reason = self.revocations.reason_for(f"jti:{claims['jti']}")
        if reason == REASON_ROTATED:
            logger.warning("Rotated refresh token presented again; revoking session %s", session_id)
            self.revoke_session(session_id)
            raise RefreshTokenRevoked(
                "Refresh token has already been used",
                details={"reuse_detected": True},
            )
        if reason is not None or self._session_revoked(session_id):
            raise RefreshTokenRevoked("Refresh token has been revoked")

        return RefreshClaims(
            user_id=int(claims["userId"]),
            session_id=session_id,
            jti=claims["jti"],
            expires_at=from_epoch_seconds(claims["exp"]),
        )

    def _is_access_token(self, token: str) -> bool:
        try:
            self._decode(token, self._access_secret, verify_exp=False)
        except jwt.InvalidTokenError:
            return False
        return True

    # =========================================================================
    # REVOCATION & ROTATION
    # =========================================================================

    def _verified_claims(self, token: str) -> dict | None:
        for secret in (self._access_secret, self._refresh_secret):
            try:
                return self._decode(token, secret, verify_exp=False)
            except jwt.InvalidTokenError:
                continue
        return None

    def revoke(self, token: str) -> dict | None:
        """
        Revoke a token by raw digest and, when it verifies under either
        secret, by its jti. Returns the claims when decodable.
        """
        self.revocations.add(f"token:{hash_token(token)}")
        claims = self._verified_claims(token)
        if claims and claims.get("jti"):
            self.revocations.add(f"jti:{claims['jti']}")
        return claims

    def revoke_session(self, session_id: str | None) -> None:
        if session_id:
            self.revocations.add(f"session:{session_id}")

    def rotate(self, refresh_token: str, user, device_info: dict | None = None) -> TokenPair:
        """
        Exchange a refresh token for a new pair on the same session.

        The old refresh token's jti is marked rotated (not just revoked) so
        reuse can be told apart from an ordinary logout.
        """
        claims = self.verify_refresh(refresh_token)
        if claims.user_id != user.id:
            raise RefreshTokenInvalid("Refresh token does not belong to this user")

        self.revocations.add(f"jti:{claims.jti}", reason=REASON_ROTATED)
        return self.issue(user, device_info=device_info, session_id=claims.session_id)
