# Overview: Builds and wires every security component for one app instance.

"""
SecurityContext

WHY: Components are constructed once per app from its config and handed
to routes through app.extensions, instead of living in module-level
singletons. Tests build their own context (or override single pieces)
without touching global state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from flask import current_app

from .services.auth_service import AuthService
from .services.credential_guard import CredentialGuard
from .services.crypto_vault import CryptoVault
from .services.fraud_scorer import FraudScorer
from .services.keyed_store import build_keyed_store
from .services.ledger_service import TransactionLedger, count_recent_checkouts
from .services.rate_limiter import RateLimiter
from .services.security_events import SecurityEventSink, SqlSecurityEventSink
from .services.tax_service import StoreTaxRateProvider, TaxRateProvider
from .services.token_service import RevocationList, TokenService


EXTENSION_KEY = "trustcore"


@dataclass
class SecurityContext:
    vault: CryptoVault
    guard: CredentialGuard
    tokens: TokenService
    fraud: FraudScorer
    ledger: TransactionLedger
    auth: AuthService
    events: SecurityEventSink
    checkout_limiter: RateLimiter
    login_limiter: RateLimiter
    generated_secrets: list[str] = field(default_factory=list)


def build_security_context(
    config,
    *,
    generated_secrets: list[str] | None = None,
    event_sink: SecurityEventSink | None = None,
    tax_rates: TaxRateProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SecurityContext:
    """
    Construct every component from a config mapping.

    sleep is the delay primitive used for password timing equalization;
    pass a cooperative sleep when running under gevent or eventlet.
    """
    backend = config["KEYED_STORE_BACKEND"]
    event_sink = event_sink or SqlSecurityEventSink()

    vault = CryptoVault(
        config["FIELD_ENCRYPTION_KEY"],
        config["INTEGRITY_SECRET"],
        config["CSRF_SECRET"],
    )

    guard = CredentialGuard(
        build_keyed_store(backend, "failed_attempts"),
        bcrypt_rounds=config["BCRYPT_ROUNDS"],
        verify_target_ms=config["PASSWORD_VERIFY_TARGET_MS"],
        max_failed_attempts=config["MAX_FAILED_ATTEMPTS"],
        lockout_window=timedelta(minutes=config["LOCKOUT_WINDOW_MINUTES"]),
        sleep=sleep,
    )

    revocations = RevocationList(
        build_keyed_store(backend, "revoked_tokens"),
        capacity=config["REVOCATION_CAPACITY"],
        ttl_seconds=config["REFRESH_TOKEN_TTL_SECONDS"],
    )
    tokens = TokenService(
        revocations,
        access_secret=config["JWT_SECRET"],
        refresh_secret=config["JWT_REFRESH_SECRET"],
        device_secret=config["DEVICE_FINGERPRINT_SECRET"],
        issuer=config["JWT_ISSUER"],
        audience=config["JWT_AUDIENCE"],
        access_ttl=timedelta(seconds=config["ACCESS_TOKEN_TTL_SECONDS"]),
        refresh_ttl=timedelta(seconds=config["REFRESH_TOKEN_TTL_SECONDS"]),
    )

    fraud = FraudScorer(
        count_recent_checkouts,
        large_amount_cents=config["FRAUD_LARGE_AMOUNT_CENTS"],
        velocity_threshold=config["FRAUD_VELOCITY_THRESHOLD"],
        velocity_window=timedelta(minutes=config["FRAUD_VELOCITY_WINDOW_MINUTES"]),
    )

    ledger = TransactionLedger(
        vault,
        fraud,
        tax_rates or StoreTaxRateProvider(config["DEFAULT_TAX_RATE_BPS"], config["RESTRICTED_SURTAX_BPS"]),
        event_sink,
        timeout_seconds=config["CHECKOUT_TIMEOUT_SECONDS"],
    )

    checkout_limiter = RateLimiter(
        build_keyed_store(backend, "rate_limits"),
        limit=config["TRANSACTION_RATE_LIMIT"],
        window_seconds=config["TRANSACTION_RATE_WINDOW_SECONDS"],
        prefix="checkout",
    )
    login_limiter = RateLimiter(
        build_keyed_store(backend, "rate_limits"),
        limit=config["AUTH_RATE_LIMIT"],
        window_seconds=config["AUTH_RATE_WINDOW_SECONDS"],
        prefix="login",
    )

    return SecurityContext(
        vault=vault,
        guard=guard,
        tokens=tokens,
        fraud=fraud,
        ledger=ledger,
        auth=AuthService(guard, tokens, event_sink, vault=vault),
        events=event_sink,
        checkout_limiter=checkout_limiter,
        login_limiter=login_limiter,
        generated_secrets=list(generated_secrets or []),
    )


def get_security_context() -> SecurityContext:
    return current_app.extensions[EXTENSION_KEY]
