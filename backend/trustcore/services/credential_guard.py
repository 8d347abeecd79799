# Overview: Password hashing, strength policy and failed-login lockout.

"""
CredentialGuard

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, 14 in production)
- Verification is timing-equalized: every call takes at least
  PASSWORD_VERIFY_TARGET_MS, on success, failure and internal error alike
- Minimum 12 characters, four character classes, no username, no runs of
  3+ identical characters, no common weak patterns
- Lockout after MAX_FAILED_ATTEMPTS failures within the lockout window

The wait is an injected delay primitive (time.sleep by default). Under a
cooperative worker (gevent/eventlet) pass that library's sleep so the wait
yields instead of pinning a worker.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import bcrypt

from .keyed_store import KeyedStore
from trustcore.time_utils import utcnow


logger = logging.getLogger(__name__)


MIN_PASSWORD_LENGTH = 12
STRONG_PASSWORD_LENGTH = 16
MIN_DISTINCT_CHARACTERS = 8

SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
REPEATED_CHARACTERS = re.compile(r"(.)\1{2,}")
WEAK_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"123456"),
    re.compile(r"qwerty", re.IGNORECASE),
    re.compile(r"admin", re.IGNORECASE),
    re.compile(r"letmein", re.IGNORECASE),
    re.compile(r"welcome", re.IGNORECASE),
    re.compile(r"monkey", re.IGNORECASE),
    re.compile(r"dragon", re.IGNORECASE),
]


@dataclass(frozen=True)
class PasswordHash:
    hash: str
    salt: str


@dataclass
class PasswordStrength:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    strength: str = "weak"  # weak | medium | strong

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FailedAttemptRecord:
    identifier: str
    count: int
    last_attempt_at: datetime
    locked_until: datetime | None = None

    def to_store(self) -> dict:
        return {
            "identifier": self.identifier,
            "count": self.count,
            "last_attempt_at": self.last_attempt_at.isoformat(),
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
        }

    @classmethod
    def from_store(cls, data: dict) -> "FailedAttemptRecord":
        return cls(
            identifier=data["identifier"],
            count=int(data["count"]),
            last_attempt_at=datetime.fromisoformat(data["last_attempt_at"]),
            locked_until=datetime.fromisoformat(data["locked_until"]) if data.get("locked_until") else None,
        )


class CredentialGuard:
    def __init__(
        self,
        attempts_store: KeyedStore,
        *,
        bcrypt_rounds: int = 14,
        verify_target_ms: int = 100,
        max_failed_attempts: int = 5,
        lockout_window: timedelta = timedelta(minutes=30),
        sleep: Callable[[float], None] = time.sleep,
        timer: Callable[[], float] = time.perf_counter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._attempts = attempts_store
        self.bcrypt_rounds = bcrypt_rounds
        self.verify_target = verify_target_ms / 1000.0
        self.max_failed_attempts = max_failed_attempts
        self.lockout_window = lockout_window
        self._sleep = sleep
        self._timer = timer
        self._clock = clock
        # Guards read-modify-write of failed-attempt records in this process
        self._lock = threading.Lock()

    # =========================================================================
    # HASHING
    # =========================================================================

    def hash_password(self, password: str) -> PasswordHash:
        """
        Hash password using bcrypt.

        The salt is generated per call and is also embedded in the returned
        hash, so verify_password only needs the hash.
        """
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return PasswordHash(hash=hashed.decode("utf-8"), salt=salt.decode("utf-8"))

    def verify_password(self, password: str, password_hash: str) -> bool:
        """
        Verify password against a bcrypt hash in equalized wall-clock time.

        Returns False (never raises) on malformed hashes or any internal
        error, after waiting the full target duration.
        """
        started = self._timer()
        try:
            is_valid = bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except Exception:
            logger.warning("Password verification failed with an internal error")
            self._wait(self.verify_target)
            return False

        elapsed = self._timer() - started
        if elapsed < self.verify_target:
            self._wait(self.verify_target - elapsed)
        return is_valid

    def _wait(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    # =========================================================================
    # STRENGTH POLICY
    # =========================================================================

    @staticmethod
    def validate_strength(password: str, username: str | None = None) -> PasswordStrength:
        errors = []

        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

        has_upper = bool(re.search(r"[A-Z]", password))
        has_lower = bool(re.search(r"[a-z]", password))
        has_digit = bool(re.search(r"\d", password))
        has_special = bool(SPECIAL_CHARACTERS.search(password))

        if not has_upper:
            errors.append("Password must contain at least one uppercase letter")
        if not has_lower:
            errors.append("Password must contain at least one lowercase letter")
        if not has_digit:
            errors.append("Password must contain at least one number")
        if not has_special:
            errors.append("Password must contain at least one special character")

        has_weak_pattern = any(p.search(password) for p in WEAK_PATTERNS)
        if has_weak_pattern:
            errors.append("Password contains common weak patterns")

        if username and username.lower() in password.lower():
            errors.append("Password must not contain the username")

        if REPEATED_CHARACTERS.search(password):
            errors.append("Password must not contain more than 2 repeated characters in sequence")

        signals = [
            len(password) >= STRONG_PASSWORD_LENGTH,
            has_upper,
            has_lower,
            has_digit,
            has_special,
            not has_weak_pattern,
            len(set(password)) >= MIN_DISTINCT_CHARACTERS,
        ]
        score = sum(signals)
        if score >= 6:
            strength = "strong"
        elif score >= 4:
            strength = "medium"
        else:
            strength = "weak"

        return PasswordStrength(is_valid=not errors, errors=errors, strength=strength)

    # =========================================================================
    # LOCKOUT
    # =========================================================================

    def _key(self, identifier: str) -> str:
        return f"failed:{identifier}"

    def _load(self, identifier: str) -> FailedAttemptRecord | None:
        data = self._attempts.get(self._key(identifier))
        if not data:
            return None
        return FailedAttemptRecord.from_store(data)

    def _is_stale(self, record: FailedAttemptRecord, now: datetime) -> bool:
        return now - record.last_attempt_at > self.lockout_window

    def track_failed_attempt(self, identifier: str) -> bool:
        """
        Record a failed attempt. Returns True exactly when this failure
        brings the count to MAX_FAILED_ATTEMPTS (the account locks now).
        """
        now = self._clock()
        with self._lock:
            record = self._load(identifier)
            if record is None or self._is_stale(record, now):
                record = FailedAttemptRecord(identifier=identifier, count=0, last_attempt_at=now)

            record.count += 1
            record.last_attempt_at = now
            if record.count >= self.max_failed_attempts:
                record.locked_until = now + self.lockout_window

            self._attempts.set(
                self._key(identifier),
                record.to_store(),
                ttl_seconds=self.lockout_window.total_seconds() * 2,
            )

        if record.count == self.max_failed_attempts:
            logger.warning("Identifier %s locked after %d failed attempts", identifier, record.count)
            return True
        return False

    def is_locked(self, identifier: str) -> bool:
        now = self._clock()
        with self._lock:
            record = self._load(identifier)
            if record is None:
                return False
            if self._is_stale(record, now):
                self._attempts.delete(self._key(identifier))
                return False
            return record.count >= self.max_failed_attempts

    def clear(self, identifier: str) -> None:
        """Called on successful authentication."""
        with self._lock:
            self._attempts.delete(self._key(identifier))

    def lockout_status(self, identifier: str) -> dict:
        """
        Lockout details for an identifier:
        locked, failed_attempts, max_attempts, seconds_until_unlock
        """
        now = self._clock()
        record = self._load(identifier)
        if record is None or self._is_stale(record, now):
            return {
                "locked": False,
                "failed_attempts": 0,
                "max_attempts": self.max_failed_attempts,
                "seconds_until_unlock": None,
                "lockout_window_minutes": int(self.lockout_window.total_seconds() / 60),
            }

        locked = record.count >= self.max_failed_attempts
        seconds = None
        if locked and record.locked_until:
            seconds = max(int((record.locked_until - now).total_seconds()), 0)
        return {
            "locked": locked,
            "failed_attempts": record.count,
            "max_attempts": self.max_failed_attempts,
            "seconds_until_unlock": seconds,
            "lockout_window_minutes": int(self.lockout_window.total_seconds() / 60),
        }
