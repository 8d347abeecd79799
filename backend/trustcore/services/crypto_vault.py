# Overview: Symmetric field encryption, HMAC signing and line-item integrity hashing.

"""
CryptoVault

SECURITY FEATURES:
- AES-256-GCM with a fresh random 96-bit IV per call (never reused per key)
- AAD binds every ciphertext to a context string; a blob encrypted for
  "customer-email" cannot be decrypted as "customer-phone"
- Authentication failures raise DecryptionError and are never retried
- HMAC-SHA256 signing with constant-time comparison (hmac.compare_digest)
- Line-item integrity hash: SHA-256 over canonical JSON + server secret

The vault holds key material; nothing here ever logs or returns a secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import DecryptionError, EncryptionError
from trustcore.time_utils import epoch_ms


AAD_PREFIX = "trustcore-"
IV_BYTES = 12
TAG_BYTES = 16
BLOB_VERSION = "v1"


@dataclass(frozen=True)
class EncryptedBlob:
    """Hex-encoded AES-GCM output. Opaque to callers."""
    ciphertext: str
    iv: str
    auth_tag: str
    version: str = BLOB_VERSION

    def to_dict(self) -> dict:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "auth_tag": self.auth_tag,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedBlob":
        try:
            return cls(
                ciphertext=data["ciphertext"],
                iv=data["iv"],
                auth_tag=data["auth_tag"],
                version=data.get("version", BLOB_VERSION),
            )
        except (KeyError, TypeError) as exc:
            raise DecryptionError("Malformed encrypted blob") from exc


def canonical_json(data: dict) -> str:
    """Stable serialization: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class CryptoVault:
    """
    Holds the field-encryption key and integrity/CSRF secrets.

    field_key_hex: 64 hex chars (32 bytes, AES-256). May be None, in which
    case encrypt() raises EncryptionError (key material absent).
    """

    def __init__(
        self,
        field_key_hex: str | None,
        integrity_secret: str | None,
        csrf_secret: str | None = None,
    ):
        self._key = self._load_key(field_key_hex)
        self._integrity_secret = integrity_secret
        self._csrf_secret = csrf_secret

    @staticmethod
    def _load_key(field_key_hex: str | None) -> bytes | None:
        if not field_key_hex:
            return None
        try:
            key = bytes.fromhex(field_key_hex)
        except ValueError as exc:
            raise EncryptionError("FIELD_ENCRYPTION_KEY must be hex encoded") from exc
        if len(key) != 32:
            raise EncryptionError("FIELD_ENCRYPTION_KEY must be 32 bytes (64 hex characters)")
        return key

    @property
    def has_key(self) -> bool:
        return self._key is not None

    # =========================================================================
    # AES-256-GCM
    # =========================================================================

    def encrypt(self, plaintext: str, aad_context: str) -> EncryptedBlob:
        if self._key is None:
            raise EncryptionError("Field encryption key is not configured")

        iv = os.urandom(IV_BYTES)
        aad = (AAD_PREFIX + aad_context).encode("utf-8")
        sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), aad)
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]

        return EncryptedBlob(ciphertext=body.hex(), iv=iv.hex(), auth_tag=tag.hex())

    def decrypt(self, blob: EncryptedBlob, aad_context: str) -> str:
        if self._key is None:
            raise DecryptionError("Field encryption key is not configured")

        try:
            iv = bytes.fromhex(blob.iv)
            sealed = bytes.fromhex(blob.ciphertext) + bytes.fromhex(blob.auth_tag)
        except ValueError as exc:
            raise DecryptionError("Malformed encrypted blob") from exc

        aad = (AAD_PREFIX + aad_context).encode("utf-8")
        try:
            plaintext = AESGCM(self._key).decrypt(iv, sealed, aad)
        except InvalidTag as exc:
            # Tampered ciphertext, wrong AAD or wrong key. Security event, not a retry.
            raise DecryptionError("Authentication tag verification failed") from exc
        return plaintext.decode("utf-8")

    def encrypt_field(self, value: str | None, field: str) -> str | None:
        """Encrypt a column value to JSON text (None passes through)."""
        if value is None:
            return None
        return json.dumps(self.encrypt(value, field).to_dict())

    def decrypt_field(self, stored: str | None, field: str) -> str | None:
        if stored is None:
            return None
        try:
            data = json.loads(stored)
        except ValueError as exc:
            raise DecryptionError("Malformed encrypted field") from exc
        return self.decrypt(EncryptedBlob.from_dict(data), field)

    # =========================================================================
    # HMAC
    # =========================================================================

    @staticmethod
    def sign_hmac(message: str, secret: str) -> str:
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def verify_hmac_constant_time(a: str | None, b: str | None) -> bool:
        """Constant-time digest comparison. Never use == on secrets or digests."""
        if a is None or b is None:
            return False
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    # =========================================================================
    # INTEGRITY
    # =========================================================================

    def hash_line_item(self, line: dict, secret: str | None = None) -> str:
        """
        Keyed digest over a line's economic fields.

        line must contain product_id, quantity, unit_price_cents and
        line_total_cents; other keys are ignored so callers can pass a
        richer dict.
        """
        secret = secret if secret is not None else self._integrity_secret
        if not secret:
            raise EncryptionError("Integrity secret is not configured")

        canonical = canonical_json({
            "product_id": line["product_id"],
            "quantity": line["quantity"],
            "unit_price_cents": line["unit_price_cents"],
            "line_total_cents": line["line_total_cents"],
        })
        return hashlib.sha256((canonical + secret).encode("utf-8")).hexdigest()

    def verify_line_item(self, line: dict, stored_hash: str | None) -> bool:
        return self.verify_hmac_constant_time(self.hash_line_item(line), stored_hash)

    # =========================================================================
    # CSRF
    # =========================================================================

    def generate_csrf_token(self, session_token: str, now_ms: int | None = None) -> str:
        """Timestamped CSRF token: "<epoch ms>.<hmac(session_token + ms)>"."""
        if not self._csrf_secret:
            raise EncryptionError("CSRF secret is not configured")
        timestamp = str(now_ms if now_ms is not None else epoch_ms())
        return f"{timestamp}.{self.sign_hmac(session_token + timestamp, self._csrf_secret)}"

    def validate_csrf_token(
        self,
        token: str | None,
        session_token: str | None,
        max_age_seconds: int = 3600,
        now_ms: int | None = None,
    ) -> bool:
        if not token or not session_token or not self._csrf_secret:
            return False

        timestamp, sep, signature = token.partition(".")
        if not sep or not timestamp.isdigit() or not signature:
            return False

        now_ms = now_ms if now_ms is not None else epoch_ms()
        if now_ms - int(timestamp) > max_age_seconds * 1000:
            return False

        expected = self.sign_hmac(session_token + timestamp, self._csrf_secret)
        return self.verify_hmac_constant_time(signature, expected)
