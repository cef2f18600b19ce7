"""
auth/policy.py -- Access Policy Evaluator.

AccessPolicy answers two questions about a verified email:
  is_allowed(email) -- an allow-list entry exists for it and is active
  is_owner(email)   -- additionally, that entry's role is "owner"

It performs a single store read per call, never writes, and has no retry or
timeout of its own. Bounding the wait is the caller's job: the session gate
wraps lookup() in asyncio.wait_for, CachedAccessPolicy does the same for the
client-facing checks.

CachedAccessPolicy is the long-lived-session variant. Answers are cached per
email in an injected AccessCache for a fixed TTL. Failures and timeouts answer
False and are not cached, so the next call asks the store again.

Layer rule: no imports from api/, web/, accounts/, or audit/.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from auth.models import AllowListEntry, Role
from auth.store import AccessStore, normalize_email
from cache.store import AccessCache

logger = logging.getLogger("sentinel.auth.policy")


class AccessPolicy:
    def __init__(self, store: AccessStore) -> None:
        self.store = store

    def lookup(self, email: str) -> AllowListEntry | None:
        """Return the active allow-list entry for email, or None."""
        if not email:
            return None
        return self.store.get_active_entry(email)

    def is_allowed(self, email: str) -> bool:
        return self.lookup(email) is not None

    def is_owner(self, email: str) -> bool:
        entry = self.lookup(email)
        return entry is not None and entry.role == Role.owner.value


class CachedAccessPolicy:
    """Time-bounded, TTL-cached front for AccessPolicy.

    Usage:
        cached = CachedAccessPolicy(policy, AccessCache(ttl=300), timeout=5.0)
        if await cached.is_owner(identity.email): ...
    """

    def __init__(self, policy: AccessPolicy, cache: AccessCache, timeout: float = 5.0) -> None:
        self.policy = policy
        self.cache = cache
        self.timeout = timeout

    async def is_allowed(self, email: str) -> bool:
        return await self._check("allowed", email, self.policy.is_allowed)

    async def is_owner(self, email: str) -> bool:
        return await self._check("owner", email, self.policy.is_owner)

    def invalidate(self) -> None:
        """Sign-out hook: drop every cached answer."""
        self.cache.invalidate_all()

    async def _check(self, kind: str, email: str, fn: Callable[[str], bool]) -> bool:
        if not email:
            return False
        key = f"{kind}:{normalize_email(email)}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn, email), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s check timed out after %.1fs for %s, denying", kind, self.timeout, email)
            return False
        except Exception:
            logger.exception("%s check failed for %s, denying", kind, email)
            return False
        self.cache.set(key, result)
        return result
