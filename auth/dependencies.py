"""
auth/dependencies.py -- FastAPI Depends() helpers for authorization.

The session gate (auth/gate.py, installed in api/main.py) has already resolved
the caller's identity and allow-list entry before any route runs and stored
them on request.state. These dependencies only read that result:

  get_identity()    -- identity or None, never raises
  require_allowed() -- 401 without identity, 403 without an active entry
  require_owner()   -- require_allowed() plus role == owner, else 403

Actor (audit/models.py) is the (user_id, email, role) triple passed into every
audited mutation.

Layer rule: no imports from web/ or accounts/. audit.models is allowed for Actor.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from audit.models import Actor
from auth.models import AllowListEntry, Identity, Role


def get_identity(request: Request) -> Identity | None:
    return getattr(request.state, "identity", None)


def get_access_entry(request: Request) -> AllowListEntry | None:
    return getattr(request.state, "access_entry", None)


def require_allowed(request: Request) -> Actor:
    """Require an authenticated, allow-listed caller.

    Use as a FastAPI dependency:
        @router.get("/accounts")
        async def route(actor: Actor = Depends(require_allowed)): ...
    """
    identity = get_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    entry = get_access_entry(request)
    if entry is None or not entry.is_active:
        raise HTTPException(
            status_code=403,
            detail={"code": "email_not_allowed", "message": "This email is not on the allow-list."},
        )
    return Actor(user_id=identity.subject, email=identity.email, role=entry.role)


def require_owner(actor: Actor = Depends(require_allowed)) -> Actor:
    """Require the owner role. Raises 401/403 like require_allowed(), 403 if not owner."""
    if actor.role != Role.owner.value:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Owner access required."},
        )
    return actor
