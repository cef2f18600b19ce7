"""
auth/tokens.py -- Session JWTs and the session cookie policy.

Security design decisions:
  JWT: python-jose with HS256. Both tokens are signed with SECRET_KEY and
       carry sub, email, sid (session id) and a "kind" claim. A refresh token
       presented where an access token is expected (or the reverse) fails
       verification. Verification returns None on any failure -- callers
       treat that as unauthenticated.

  Refresh tokens additionally carry "gen", the session's refresh_generation
       at issue time. auth/identity.py compares it with the stored value to
       detect reuse of an already-rotated token.

  Cookies:
       access   -> "<prefix>-auth-token"           HttpOnly
       refresh  -> "<prefix>-auth-token.0" / ".1"  readable by scripts, so a
                   client-side session library can rotate it
       HttpOnly is looked up from the TokenKind carried on each CookieWrite
       (_HTTPONLY_BY_KIND). Cookie names are never parsed to infer a kind.
       samesite="lax" everywhere. Secure is forced on outside debug [M8].
       path/domain from the CookieWrite are written verbatim.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup
       [M6] [M7].

Layer rule: no imports from api/, web/, accounts/, audit/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import CookieWrite, Identity, TokenKind
from core.config import get_settings

logger = logging.getLogger("sentinel.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# Browsers cap a single cookie around 4 KB; leave room for attributes.
REFRESH_CHUNK_SIZE = 3180
MAX_REFRESH_CHUNKS = 2

_HTTPONLY_BY_KIND: dict[TokenKind, bool] = {
    TokenKind.ACCESS: True,
    TokenKind.REFRESH: False,
}


# ---------------------------------------------------------------------------
# Cookie names
# ---------------------------------------------------------------------------


def access_cookie_name(prefix: str | None = None) -> str:
    return f"{prefix or _settings.session_cookie_prefix}-auth-token"


def refresh_cookie_names(prefix: str | None = None) -> list[str]:
    base = access_cookie_name(prefix)
    return [f"{base}.{i}" for i in range(MAX_REFRESH_CHUNKS)]


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, expire_seconds: int) -> str:
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_access_token(identity: Identity, expire_seconds: int = 0) -> str:
    """Encode a short-lived access token for a live session."""
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    return _encode(
        {
            "sub": identity.subject,
            "email": identity.email,
            "sid": identity.session_id,
            "prv": identity.provider,
            "kind": TokenKind.ACCESS.value,
        },
        duration,
    )


def create_refresh_token(identity: Identity, generation: int, expire_seconds: int = 0) -> str:
    """Encode a refresh token bound to a session generation."""
    duration = expire_seconds if expire_seconds > 0 else _settings.refresh_token_expire_seconds
    return _encode(
        {
            "sub": identity.subject,
            "email": identity.email,
            "sid": identity.session_id,
            "prv": identity.provider,
            "gen": generation,
            "kind": TokenKind.REFRESH.value,
        },
        duration,
    )


def decode_token(token: str, kind: TokenKind, verify_exp: bool = True) -> dict | None:
    """Decode and verify a session JWT of the expected kind.

    Returns the payload dict or None on any failure (bad signature, expired,
    wrong kind, missing claims). verify_exp=False is only for sign-out, which
    still needs the sid of an expired token to revoke its session.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": verify_exp},
        )
    except JWTError:
        return None
    if payload.get("kind") != kind.value:
        return None
    if not all(payload.get(claim) for claim in ("sub", "email", "sid")):
        return None
    if kind is TokenKind.REFRESH and not isinstance(payload.get("gen"), int):
        return None
    return payload


def identity_from_payload(payload: dict) -> Identity:
    return Identity(
        subject=payload["sub"],
        email=payload["email"],
        session_id=payload["sid"],
        provider=payload.get("prv", ""),
    )


# ---------------------------------------------------------------------------
# Cookie writes
# ---------------------------------------------------------------------------


def split_refresh_token(token: str, chunk_size: int = REFRESH_CHUNK_SIZE) -> list[str]:
    """Split a refresh token into cookie-sized chunks (at most MAX_REFRESH_CHUNKS)."""
    chunks = [token[i : i + chunk_size] for i in range(0, len(token), chunk_size)] or [""]
    if len(chunks) > MAX_REFRESH_CHUNKS:
        raise ValueError(f"Refresh token needs {len(chunks)} cookie chunks; at most {MAX_REFRESH_CHUNKS} are supported.")
    return chunks


def read_refresh_token(cookies: dict[str, str], prefix: str | None = None) -> str | None:
    """Reassemble the refresh token from its chunk cookies, in suffix order."""
    parts: list[str] = []
    for name in refresh_cookie_names(prefix):
        value = cookies.get(name)
        if not value:
            break
        parts.append(value)
    return "".join(parts) or None


def session_cookie_writes(
    access_token: str,
    refresh_token: str,
    path: str = "/",
    domain: str | None = None,
    chunk_size: int = REFRESH_CHUNK_SIZE,
) -> list[CookieWrite]:
    """Build the cookie writes that install a session on the browser.

    Chunk names that the new refresh token does not need are removed so a
    shorter token never gets concatenated with a stale tail.
    """
    writes = [
        CookieWrite(
            name=access_cookie_name(),
            value=access_token,
            kind=TokenKind.ACCESS,
            max_age=_settings.access_token_expire_seconds,
            path=path,
            domain=domain,
        )
    ]
    chunks = split_refresh_token(refresh_token, chunk_size)
    for i, name in enumerate(refresh_cookie_names()):
        if i < len(chunks):
            writes.append(
                CookieWrite(
                    name=name,
                    value=chunks[i],
                    kind=TokenKind.REFRESH,
                    max_age=_settings.refresh_token_expire_seconds,
                    path=path,
                    domain=domain,
                )
            )
        else:
            writes.append(CookieWrite(name=name, value="", kind=TokenKind.REFRESH, max_age=0, path=path, domain=domain))
    return writes


def session_removal_writes(path: str = "/", domain: str | None = None) -> list[CookieWrite]:
    """Cookie writes that remove every session cookie."""
    writes = [CookieWrite(name=access_cookie_name(), value="", kind=TokenKind.ACCESS, max_age=0, path=path, domain=domain)]
    writes.extend(
        CookieWrite(name=name, value="", kind=TokenKind.REFRESH, max_age=0, path=path, domain=domain)
        for name in refresh_cookie_names()
    )
    return writes


def apply_cookie_writes(response, writes: list[CookieWrite]) -> None:
    """Write CookieWrites onto a Starlette response with the enforced policy.

    httponly comes from the token kind, secure from Settings [M8],
    samesite is always "lax". Removal writes keep the same path/domain so the
    browser matches and drops the original cookie.
    """
    secure = _settings.effective_secure_cookies
    for write in writes:
        response.set_cookie(
            write.name,
            value=write.value,
            max_age=0 if write.is_removal else write.max_age,
            path=write.path,
            domain=write.domain,
            secure=secure,
            httponly=_HTTPONLY_BY_KIND[write.kind],
            samesite="lax",
        )
