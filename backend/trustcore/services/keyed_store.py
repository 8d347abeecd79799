# Overview: Shared keyed state (revoked tokens, failed attempts, rate-limit counters).

"""
KeyedStore abstraction

WHY: The revoked-token set, failed-login map and rate-limit counters are
shared by every concurrent request. Callers only talk to the KeyedStore
interface, so the process-local implementation and the shared-table
implementation are interchangeable without touching calling code.

- InMemoryKeyedStore: mutex-guarded dict with TTL. Single process only.
- SqlKeyedStore: keyed_store_entries table. Shared by every app instance
  pointing at the same database.

TTL semantics: expired entries behave as absent and are purged lazily.
increment() applies ttl_seconds only when it creates the entry (fixed
window counter).
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError as SqlIntegrityError

from ..extensions import db
from ..models import KeyedStoreEntry
from trustcore.time_utils import utcnow


class KeyedStore:
    """Interface for shared keyed state."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        raise NotImplementedError

    def increment(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def size(self) -> int:
        raise NotImplementedError

    def evict_oldest(self, count: int) -> int:
        """Remove the `count` oldest entries. Returns how many were removed."""
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError


class _Entry:
    __slots__ = ("value", "counter", "expires_at")

    def __init__(self, value: Any, counter: int, expires_at: float | None):
        self.value = value
        self.counter = counter
        self.expires_at = expires_at


class InMemoryKeyedStore(KeyedStore):
    """
    Process-local store. Insertion order doubles as age for eviction
    (re-setting a key moves it to the newest position).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.RLock()

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return entry.value if entry.value is not None else entry.counter

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value, 0, self._expiry(ttl_seconds))

    def increment(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(None, 0, self._expiry(ttl_seconds))
                self._entries[key] = entry
            entry.counter += amount
            return entry.counter

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def evict_oldest(self, count: int) -> int:
        with self._lock:
            victims = list(self._entries)[:max(count, 0)]
            for key in victims:
                del self._entries[key]
            return len(victims)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expires_at is not None and e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)


class SqlKeyedStore(KeyedStore):
    """
    Shared-table store. Each instance owns one namespace.

    Uses its own short engine-level transactions (never db.session), so it
    neither commits nor rolls back work pending in the caller's session.
    Must be used inside a Flask app context.
    """

    def __init__(self, namespace: str):
        self.namespace = namespace
        self._table = KeyedStoreEntry.__table__

    def _not_expired(self, now):
        return or_(self._table.c.expires_at.is_(None), self._table.c.expires_at > now)

    def _key_filter(self, key: str):
        return and_(self._table.c.namespace == self.namespace, self._table.c.key == key)

    @staticmethod
    def _expiry(now, ttl_seconds: float | None):
        return now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None

    def get(self, key: str) -> Any | None:
        now = utcnow()
        with db.engine.begin() as conn:
            row = conn.execute(
                select(self._table.c.value, self._table.c.counter)
                .where(self._key_filter(key), self._not_expired(now))
            ).first()
        if row is None:
            return None
        return row.value if row.value is not None else row.counter

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        now = utcnow()
        with db.engine.begin() as conn:
            conn.execute(delete(self._table).where(self._key_filter(key)))
            conn.execute(insert(self._table).values(
                namespace=self.namespace,
                key=key,
                value=value,
                counter=0,
                created_at=time.time(),
                expires_at=self._expiry(now, ttl_seconds),
            ))

    def increment(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int:
        now = utcnow()
        for _ in range(2):
            try:
                with db.engine.begin() as conn:
                    result = conn.execute(
                        update(self._table)
                        .where(self._key_filter(key), self._not_expired(now))
                        .values(counter=self._table.c.counter + amount)
                    )
                    if result.rowcount == 0:
                        conn.execute(delete(self._table).where(self._key_filter(key)))
                        conn.execute(insert(self._table).values(
                            namespace=self.namespace,
                            key=key,
                            value=None,
                            counter=amount,
                            created_at=time.time(),
                            expires_at=self._expiry(now, ttl_seconds),
                        ))
                        return amount
                    return conn.execute(
                        select(self._table.c.counter).where(self._key_filter(key))
                    ).scalar_one()
            except SqlIntegrityError:
                # Another instance created the row between our UPDATE and INSERT
                continue
        raise RuntimeError(f"Could not increment keyed store entry {self.namespace}:{key}")

    def delete(self, key: str) -> None:
        with db.engine.begin() as conn:
            conn.execute(delete(self._table).where(self._key_filter(key)))

    def size(self) -> int:
        now = utcnow()
        with db.engine.begin() as conn:
            return conn.execute(
                select(func.count())
                .select_from(self._table)
                .where(self._table.c.namespace == self.namespace, self._not_expired(now))
            ).scalar_one()

    def evict_oldest(self, count: int) -> int:
        if count <= 0:
            return 0
        with db.engine.begin() as conn:
            ids = conn.execute(
                select(self._table.c.id)
                .where(self._table.c.namespace == self.namespace)
                .order_by(self._table.c.created_at, self._table.c.id)
                .limit(count)
            ).scalars().all()
            if ids:
                conn.execute(delete(self._table).where(self._table.c.id.in_(ids)))
            return len(ids)

    def purge_expired(self) -> int:
        now = utcnow()
        with db.engine.begin() as conn:
            result = conn.execute(
                delete(self._table).where(
                    self._table.c.namespace == self.namespace,
                    self._table.c.expires_at.is_not(None),
                    self._table.c.expires_at <= now,
                )
            )
            return result.rowcount


def build_keyed_store(backend: str, namespace: str) -> KeyedStore:
    """Factory used by the SecurityContext (KEYED_STORE_BACKEND config)."""
    if backend == "memory":
        return InMemoryKeyedStore()
    if backend == "sql":
        return SqlKeyedStore(namespace)
    raise ValueError(f"Unknown KEYED_STORE_BACKEND: {backend!r}")
