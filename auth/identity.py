"""
auth/identity.py -- Session-backed identity resolution.

SessionIdentityProvider is the identity layer the session gate talks to. It
turns request cookies into a verified Identity and keeps the browser's
session cookies current:

  sign_in()  -- after a successful OAuth callback: create a session row,
                return access + refresh cookie writes.
  resolve()  -- valid access token on a live session -> identity, no writes.
                Otherwise a refresh token (reassembled from its chunk cookies)
                is verified and rotated -> identity + fresh cookie writes.
                Any refresh failure raises RefreshTokenError.
  sign_out() -- revoke the session (best effort), run sign-out listeners,
                return removal writes for every session cookie.

Refresh rotation: each refresh token carries the session's generation. A
token whose generation no longer matches has already been rotated; seeing it
again means it leaked, so the whole session is revoked.

Every store call from the async methods goes through asyncio.to_thread so the
event loop never blocks on SQLite.

Layer rule: no imports from api/, web/, accounts/, or audit/.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.models import CookieWrite, Identity, Session, TokenKind
from auth.store import AccessStore, normalize_email
from auth.tokens import (
    access_cookie_name,
    create_access_token,
    create_refresh_token,
    decode_token,
    identity_from_payload,
    read_refresh_token,
    session_cookie_writes,
    session_removal_writes,
)
from core.config import get_settings
from core.database import parse_iso

logger = logging.getLogger("sentinel.auth.identity")


class RefreshTokenError(Exception):
    """The refresh credential is invalid, expired, revoked, or was reused."""


@dataclass
class ResolvedIdentity:
    identity: Identity | None
    cookie_writes: list[CookieWrite] = field(default_factory=list)


def _session_is_live(session: Session | None, now: datetime) -> bool:
    return session is not None and session.revoked_at is None and parse_iso(session.expires_at) > now


class SessionIdentityProvider:
    def __init__(self, store: AccessStore) -> None:
        self.store = store
        self._sign_out_listeners: list[Callable[[], None]] = []

    def add_sign_out_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback run on every sign-out (e.g. access cache invalidation)."""
        self._sign_out_listeners.append(listener)

    # ------------------------------------------------------------------
    # Sign in
    # ------------------------------------------------------------------

    def sign_in(self, email: str, subject: str, provider: str) -> tuple[Identity, list[CookieWrite]]:
        """Open a new session for a verified email and return its cookie writes."""
        settings = get_settings()
        session_id = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.refresh_token_expire_seconds)
        identity = Identity(subject=subject, email=normalize_email(email), session_id=session_id, provider=provider)
        self.store.create_session(
            Session(
                id=session_id,
                email=identity.email,
                subject=subject,
                provider=provider,
                expires_at=expires_at.isoformat(),
            )
        )
        logger.info("Session opened for %s via %s", identity.email, provider)
        writes = session_cookie_writes(create_access_token(identity), create_refresh_token(identity, 0))
        return identity, writes

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    async def resolve(self, cookies: dict[str, str]) -> ResolvedIdentity:
        """Return the caller's identity, refreshing the session if needed.

        Raises RefreshTokenError when a refresh was attempted and failed.
        No session cookies at all resolves to ResolvedIdentity(None).
        """
        access_token = cookies.get(access_cookie_name())
        if access_token:
            payload = decode_token(access_token, TokenKind.ACCESS)
            if payload is not None:
                session = await asyncio.to_thread(self.store.get_session, payload["sid"])
                if _session_is_live(session, datetime.now(timezone.utc)):
                    return ResolvedIdentity(identity_from_payload(payload))

        refresh_token = read_refresh_token(cookies)
        if not refresh_token:
            return ResolvedIdentity(None)
        return await asyncio.to_thread(self._refresh, refresh_token)

    def _refresh(self, refresh_token: str) -> ResolvedIdentity:
        payload = decode_token(refresh_token, TokenKind.REFRESH)
        if payload is None:
            raise RefreshTokenError("Invalid Refresh Token: verification failed")

        session_id = payload["sid"]
        session = self.store.get_session(session_id)
        now = datetime.now(timezone.utc)
        if not _session_is_live(session, now):
            raise RefreshTokenError("Invalid Refresh Token: session revoked or expired")

        generation = payload["gen"]
        if generation != session.refresh_generation:
            self.store.revoke_session(session_id)
            logger.warning("Refresh token reuse detected for %s, session revoked", session.email)
            raise RefreshTokenError("Invalid Refresh Token: already used")

        settings = get_settings()
        expires_at = (now + timedelta(seconds=settings.refresh_token_expire_seconds)).isoformat()
        if not self.store.rotate_refresh(session_id, generation, expires_at):
            raise RefreshTokenError("Invalid Refresh Token: already used")

        identity = identity_from_payload(payload)
        writes = session_cookie_writes(create_access_token(identity), create_refresh_token(identity, generation + 1))
        return ResolvedIdentity(identity, writes)

    # ------------------------------------------------------------------
    # Sign out
    # ------------------------------------------------------------------

    async def sign_out(self, cookies: dict[str, str]) -> list[CookieWrite]:
        """Revoke the caller's session and return cookie removals. Never raises."""
        session_id = self._session_id_from_cookies(cookies)
        if session_id:
            try:
                await asyncio.to_thread(self.store.revoke_session, session_id)
            except Exception:
                logger.exception("Session revocation failed during sign-out")
        for listener in self._sign_out_listeners:
            try:
                listener()
            except Exception:
                logger.exception("Sign-out listener failed")
        return session_removal_writes()

    def _session_id_from_cookies(self, cookies: dict[str, str]) -> str | None:
        access_token = cookies.get(access_cookie_name())
        if access_token:
            payload = decode_token(access_token, TokenKind.ACCESS, verify_exp=False)
            if payload is not None:
                return payload["sid"]
        refresh_token = read_refresh_token(cookies)
        if refresh_token:
            payload = decode_token(refresh_token, TokenKind.REFRESH, verify_exp=False)
            if payload is not None:
                return payload["sid"]
        return None
