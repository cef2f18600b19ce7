"""
cache/store.py -- In-memory TTL cache for allow-list decisions.

Avoids repeating the allow-list lookup on rapid navigation. Entries live for
a fixed TTL (1-5 minutes, see Settings.access_cache_ttl) and the whole cache
is dropped on every sign-out, so a revoked or demoted user never keeps a
stale "allowed" answer past their own logout.

Staleness within the TTL is accepted: the session gate never reads this
cache, it always asks the store. Only the client-facing checks (/auth/me)
go through CachedAccessPolicy.

No locking: every operation is a single dict call, and a lost write costs
one extra lookup.

Usage:
    cache = AccessCache(ttl=300)
    cache.get("owner:alice@example.com")      # returns value or None
    cache.set("owner:alice@example.com", True)
    cache.invalidate_all()                    # sign-out hook
"""

import time
from typing import Any, Callable, Optional

_DEFAULT_TTL = 5 * 60  # 5 minutes in seconds


class AccessCache:
    def __init__(self, ttl: int = _DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value for key if it exists and hasn't expired."""
        item = self._entries.get(key)
        if item is None:
            return None
        value, cached_at = item
        if self._clock() - cached_at > self.ttl:
            self._delete(key)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        """Store value for key, replacing any existing entry."""
        self._entries[key] = (value, self._clock())

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of entries removed."""
        cutoff = self._clock() - self.ttl
        stale = [k for k, (_, cached_at) in self._entries.items() if cached_at < cutoff]
        for key in stale:
            self._delete(key)
        return len(stale)

    def invalidate_all(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _delete(self, key: str) -> None:
        self._entries.pop(key, None)
