# backend/trustcore/config.py
from __future__ import annotations

import logging
import os
import secrets


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


# Secret config keys and the minimum length (characters) each must have.
# FIELD_ENCRYPTION_KEY is 32 bytes of hex (AES-256).
SECRET_KEYS = {
    "JWT_SECRET": 32,
    "JWT_REFRESH_SECRET": 32,
    "FIELD_ENCRYPTION_KEY": 64,
    "INTEGRITY_SECRET": 32,
    "CSRF_SECRET": 32,
    "DEVICE_FINGERPRINT_SECRET": 32,
}


class InsecureConfigurationError(RuntimeError):
    """Raised at startup when hardened mode is on and a secret is missing or weak."""


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///trustcore.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Independently rotatable secrets. None means "not configured".
    JWT_SECRET = os.environ.get("JWT_SECRET")
    JWT_REFRESH_SECRET = os.environ.get("JWT_REFRESH_SECRET")
    FIELD_ENCRYPTION_KEY = os.environ.get("FIELD_ENCRYPTION_KEY")
    INTEGRITY_SECRET = os.environ.get("INTEGRITY_SECRET")
    CSRF_SECRET = os.environ.get("CSRF_SECRET")
    DEVICE_FINGERPRINT_SECRET = os.environ.get("DEVICE_FINGERPRINT_SECRET")

    # Hardened mode refuses to start without every secret configured.
    SECURITY_HARDENED = _env_bool("SECURITY_HARDENED", False)

    # Token issuance
    JWT_ISSUER = os.environ.get("JWT_ISSUER", "trustcore-pos-secure")
    JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE", "pos-financial-system")
    ACCESS_TOKEN_TTL_SECONDS = _env_int("ACCESS_TOKEN_TTL_SECONDS", 15 * 60)
    REFRESH_TOKEN_TTL_SECONDS = _env_int("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60)
    REVOCATION_CAPACITY = _env_int("REVOCATION_CAPACITY", 10_000)

    # Credentials and lockout
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 14)
    PASSWORD_VERIFY_TARGET_MS = _env_int("PASSWORD_VERIFY_TARGET_MS", 100)
    MAX_FAILED_ATTEMPTS = _env_int("MAX_FAILED_ATTEMPTS", 5)
    LOCKOUT_WINDOW_MINUTES = _env_int("LOCKOUT_WINDOW_MINUTES", 30)
    # Login attempts per client IP, regardless of username
    AUTH_RATE_LIMIT = _env_int("AUTH_RATE_LIMIT", 5)
    AUTH_RATE_WINDOW_SECONDS = _env_int("AUTH_RATE_WINDOW_SECONDS", 15 * 60)

    # "memory" (process-local) or "sql" (shared table, multi-instance safe)
    KEYED_STORE_BACKEND = os.environ.get("KEYED_STORE_BACKEND", "memory")

    # Checkout
    CHECKOUT_TIMEOUT_SECONDS = _env_int("CHECKOUT_TIMEOUT_SECONDS", 30)
    DEFAULT_TAX_RATE_BPS = _env_int("DEFAULT_TAX_RATE_BPS", 800)
    RESTRICTED_SURTAX_BPS = _env_int("RESTRICTED_SURTAX_BPS", 200)
    TRANSACTION_RATE_LIMIT = _env_int("TRANSACTION_RATE_LIMIT", 10)
    TRANSACTION_RATE_WINDOW_SECONDS = _env_int("TRANSACTION_RATE_WINDOW_SECONDS", 60)

    # Fraud thresholds (cents / counts / local hours)
    FRAUD_LARGE_AMOUNT_CENTS = _env_int("FRAUD_LARGE_AMOUNT_CENTS", 100_000)
    FRAUD_VELOCITY_THRESHOLD = _env_int("FRAUD_VELOCITY_THRESHOLD", 5)
    FRAUD_VELOCITY_WINDOW_MINUTES = _env_int("FRAUD_VELOCITY_WINDOW_MINUTES", 5)

    CSRF_TOKEN_MAX_AGE_SECONDS = _env_int("CSRF_TOKEN_MAX_AGE_SECONDS", 60 * 60)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"

    JWT_SECRET = "test-access-secret-" + "a" * 32
    JWT_REFRESH_SECRET = "test-refresh-secret-" + "b" * 32
    FIELD_ENCRYPTION_KEY = "0f" * 32
    INTEGRITY_SECRET = "test-integrity-secret-" + "c" * 32
    CSRF_SECRET = "test-csrf-secret-" + "d" * 32
    DEVICE_FINGERPRINT_SECRET = "test-device-secret-" + "e" * 32

    SECURITY_HARDENED = False
    BCRYPT_ROUNDS = 4
    PASSWORD_VERIFY_TARGET_MS = 0
    KEYED_STORE_BACKEND = "memory"
    # Every test client shares 127.0.0.1
    AUTH_RATE_LIMIT = 1000


def resolve_secrets(config) -> list[str]:
    """
    Make sure every secret in SECRET_KEYS has a usable value.

    Hardened mode: a missing or short secret raises InsecureConfigurationError
    so the process refuses to start.

    Development mode: a missing secret is replaced with an ephemeral random
    value (tokens and ciphertexts will not survive a restart) and a warning
    is logged. Returns the names that were generated.
    """
    hardened = bool(config.get("SECURITY_HARDENED"))
    generated = []
    problems = []

    for name, min_length in SECRET_KEYS.items():
        value = config.get(name)
        if not value:
            if hardened:
                problems.append(f"{name} is not set")
                continue
            config[name] = secrets.token_hex(32)
            generated.append(name)
            continue
        if len(value) < min_length:
            if hardened:
                problems.append(f"{name} must be at least {min_length} characters")
            else:
                logger.warning("%s is shorter than %d characters", name, min_length)

    if problems:
        raise InsecureConfigurationError("; ".join(problems))

    if generated:
        logger.warning(
            "Missing security secrets %s; using ephemeral random values. "
            "Set SECURITY_HARDENED=1 in production to refuse startup instead.",
            ", ".join(generated),
        )
    return generated
