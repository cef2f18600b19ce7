"""
auth/gate.py -- Session Gate: the per-request authentication/authorization decision.

Every request except static assets goes through SessionGate.decide() before
any route handler runs (installed as HTTP middleware in api/main.py). The
decision list is ordered and the first matching rule wins:

  0. Static asset path                          -> pass, identity not resolved
  1. Identity provider not configured           -> log; protected path -> login,
                                                   anything else -> pass
  2. Resolve identity; refresh failure          -> sign out; login unless the
                                                   path is already under /login
  4. Protected path, no identity                -> login
  5. Identity, allow-list lookup (bounded wait) -> no active entry, error or
                                                   timeout: sign out and
                                                   login?error=email_not_allowed
  6. /emails and role != owner                  -> home
  7. Identity and path == /login                -> home
  8. Otherwise                                  -> pass with refreshed cookies

Security:
  [G1] Fail closed. Every ambiguous outcome (lookup error, lookup timeout,
       identity provider error) resolves to the more restrictive result.
       The timeout is never retried inline.
  [G2] Redirect safety. All redirect targets are resolved against the request
       URL; a target that resolves to another origin is replaced with the
       site root (safe_redirect).
  [G3] Missing identity configuration does not fail open: protected paths
       redirect to /login, where the page reports that sign-in is
       unavailable.

Steps run strictly in order. The role check depends on the allow-list entry,
which depends on the identity, so nothing here may be reordered.

Layer rule: no imports from api/, web/, accounts/, or audit/.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urljoin, urlsplit, urlunsplit

from auth.identity import RefreshTokenError, SessionIdentityProvider
from auth.models import AllowListEntry, CookieWrite, Identity, Role
from auth.policy import AccessPolicy

logger = logging.getLogger("sentinel.auth.gate")

# ---------------------------------------------------------------------------
# Route classes (string prefix match on the request path)
# ---------------------------------------------------------------------------

PROTECTED_PREFIXES = ("/accounts", "/customers", "/audit-log", "/emails")
OWNER_ONLY_PREFIXES = ("/emails",)
LOGIN_PATH = "/login"
HOME_PATH = "/"
EMAIL_NOT_ALLOWED_URL = f"{LOGIN_PATH}?error=email_not_allowed"

_STATIC_PREFIXES = ("/static/",)
_STATIC_FILES = ("/favicon.ico",)
_IMAGE_SUFFIXES = (".svg", ".png", ".jpg", ".jpeg", ".gif", ".webp")


def is_static_asset(path: str) -> bool:
    return path.startswith(_STATIC_PREFIXES) or path in _STATIC_FILES or path.lower().endswith(_IMAGE_SUFFIXES)


def is_protected(path: str) -> bool:
    return path.startswith(PROTECTED_PREFIXES)


def is_owner_only(path: str) -> bool:
    return path.startswith(OWNER_ONLY_PREFIXES)


def safe_redirect(target: str, request_url: str) -> str:
    """Resolve target against request_url; off-origin results become the site root [G2]."""
    base = urlsplit(request_url)
    resolved = urljoin(request_url, target)
    parts = urlsplit(resolved)
    if (parts.scheme, parts.netloc) != (base.scheme, base.netloc):
        return urlunsplit((base.scheme, base.netloc, HOME_PATH, "", ""))
    return resolved


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


class GateOutcome(str, Enum):
    PASS = "pass"
    REDIRECT = "redirect"


@dataclass
class GateDecision:
    """Result of SessionGate.decide().

    cookie_writes must be applied to whatever response goes out, whether the
    request is passed to a handler or redirected.
    """

    outcome: GateOutcome
    location: str | None = None
    cookie_writes: list[CookieWrite] = field(default_factory=list)
    identity: Identity | None = None
    entry: AllowListEntry | None = None
    reason: str = ""

    @property
    def is_redirect(self) -> bool:
        return self.outcome is GateOutcome.REDIRECT


class SessionGate:
    """Ordered request gate. See module docstring for the decision list.

    Usage:
        gate = SessionGate(identity_provider, AccessPolicy(store), configured=True)
        decision = await gate.decide(request.url.path, str(request.url), dict(request.cookies))
    """

    def __init__(
        self,
        identity: SessionIdentityProvider,
        policy: AccessPolicy,
        configured: bool = True,
        lookup_timeout: float = 3.0,
    ) -> None:
        self.identity = identity
        self.policy = policy
        self.configured = configured
        self.lookup_timeout = lookup_timeout

    async def decide(self, path: str, request_url: str, cookies: dict[str, str]) -> GateDecision:
        # 0. Static assets carry no sensitive data.
        if is_static_asset(path):
            return GateDecision(GateOutcome.PASS, reason="static")

        # 1. Missing identity configuration [G3]
        if not self.configured:
            logger.error("Identity provider configuration missing: no OAuth/OIDC provider is configured")
            if is_protected(path):
                return self._redirect(LOGIN_PATH, request_url, [], "unconfigured")
            return GateDecision(GateOutcome.PASS, reason="unconfigured")

        # 2. Identity
        try:
            resolved = await self.identity.resolve(cookies)
        except RefreshTokenError as exc:
            logger.warning("Refresh token error on %s: %s", path, exc)
            return await self._identity_failure(path, request_url, cookies)
        except Exception:
            logger.exception("Identity resolution failed on %s", path)
            return await self._identity_failure(path, request_url, cookies)

        identity = resolved.identity
        writes = resolved.cookie_writes

        # 4. Protected path without identity
        if identity is None:
            if is_protected(path):
                return self._redirect(LOGIN_PATH, request_url, writes, "unauthenticated")
            return GateDecision(GateOutcome.PASS, cookie_writes=writes, reason="anonymous")

        # 5. Allow-list, fail closed [G1]
        entry = await self._lookup(identity.email)
        if entry is None:
            removals = await self.identity.sign_out(cookies)
            logger.info("Denied %s: no active allow-list entry", identity.email)
            return self._redirect(EMAIL_NOT_ALLOWED_URL, request_url, removals, "email_not_allowed")

        # 6. Owner-only paths
        if is_owner_only(path) and entry.role != Role.owner.value:
            return self._redirect(HOME_PATH, request_url, writes, "not_owner", identity, entry)

        # 7. Already signed in
        if path == LOGIN_PATH:
            return self._redirect(HOME_PATH, request_url, writes, "already_signed_in", identity, entry)

        # 8.
        return GateDecision(GateOutcome.PASS, cookie_writes=writes, identity=identity, entry=entry, reason="allowed")

    async def _lookup(self, email: str) -> AllowListEntry | None:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.policy.lookup, email), timeout=self.lookup_timeout)
        except asyncio.TimeoutError:
            logger.warning("Allow-list lookup timed out after %.1fs for %s, denying", self.lookup_timeout, email)
            return None
        except Exception:
            logger.exception("Allow-list lookup failed for %s, denying", email)
            return None

    async def _identity_failure(self, path: str, request_url: str, cookies: dict[str, str]) -> GateDecision:
        removals = await self.identity.sign_out(cookies)
        if path.startswith(LOGIN_PATH):
            return GateDecision(GateOutcome.PASS, cookie_writes=removals, reason="signed_out")
        return self._redirect(LOGIN_PATH, request_url, removals, "signed_out")

    @staticmethod
    def _redirect(
        target: str,
        request_url: str,
        writes: list[CookieWrite],
        reason: str,
        identity: Identity | None = None,
        entry: AllowListEntry | None = None,
    ) -> GateDecision:
        return GateDecision(
            GateOutcome.REDIRECT,
            location=safe_redirect(target, request_url),
            cookie_writes=writes,
            identity=identity,
            entry=entry,
            reason=reason,
        )
