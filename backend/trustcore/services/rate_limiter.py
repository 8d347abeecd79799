# Overview: Fixed-window rate limiting on top of the KeyedStore.

from __future__ import annotations

import logging

from .keyed_store import KeyedStore
from ..errors import RateLimitError


logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-window counter per key.

    The first hit in a window creates the counter with a TTL of the window
    length; hits past `limit` inside the window raise RateLimitError.
    """

    def __init__(self, store: KeyedStore, *, limit: int, window_seconds: int, prefix: str = "rl"):
        self._store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def hit(self, key: str) -> int:
        return self._store.increment(f"{self.prefix}:{key}", ttl_seconds=self.window_seconds)

    def check(self, key: str) -> int:
        count = self.hit(key)
        if count > self.limit:
            logger.warning("Rate limit exceeded for %s:%s (%d/%d)", self.prefix, key, count, self.limit)
            raise RateLimitError(
                "Too many requests",
                details={"limit": self.limit, "retry_after_seconds": self.window_seconds},
            )
        return count

    def reset(self, key: str) -> None:
        self._store.delete(f"{self.prefix}:{key}")
