"""
auth/models.py -- Domain dataclasses for authentication and authorization.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only carry shape between them.

Layer rule: no imports from api/, web/, accounts/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    owner = "owner"
    admin = "admin"
    user = "user"


class TokenKind(str, Enum):
    """Kind of session token a cookie carries, fixed at issuance.

    The cookie layer decides HttpOnly from this tag through a lookup table
    (auth/tokens.py::_HTTPONLY_BY_KIND), never from the cookie name.
    """

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Identity:
    """A verified external identity attached to a live session.

    email is always lowercase and verified by the OAuth provider [H1].
    session_id is the opaque sid shared by the access and refresh tokens.
    """

    subject: str
    email: str
    session_id: str
    provider: str = ""


@dataclass
class AllowListEntry:
    """Authorization record: whether an email may use the console, and as what.

    A user is authorized iff exactly one active entry exists for the email.
    The email column is unique, so "exactly one" reduces to "the entry exists
    and is_active is True".
    """

    email: str
    role: str = Role.user.value
    is_active: bool = True
    added_by: str | None = None
    notes: str | None = None
    id: int | None = None
    added_at: str | None = None


@dataclass
class Session:
    """Server-side session record backing a pair of access/refresh tokens.

    refresh_generation increments on every refresh rotation. A refresh token
    carrying an older generation has already been used; presenting it again
    revokes the session (refresh token reuse detection).
    """

    id: str
    email: str
    subject: str
    provider: str
    expires_at: str
    refresh_generation: int = 0
    created_at: str | None = None
    revoked_at: str | None = None


@dataclass(frozen=True)
class CookieWrite:
    """One Set-Cookie instruction produced by the identity layer.

    kind is set by the code that issued the token; path and domain are
    preserved verbatim when the gate writes the cookie. max_age=0 together
    with an empty value means "remove".
    """

    name: str
    value: str
    kind: TokenKind
    max_age: int | None = None
    path: str = "/"
    domain: str | None = None

    @property
    def is_removal(self) -> bool:
        return self.max_age == 0
