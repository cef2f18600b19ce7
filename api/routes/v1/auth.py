"""
api/routes/v1/auth.py -- Session introspection and sign-out REST endpoints.

Routes:
  GET  /api/v1/auth/me         -- current identity, role and owner flag (allow-listed)
  GET  /api/v1/auth/providers  -- list configured OAuth/OIDC providers (public)
  POST /api/v1/auth/logout     -- LOGOUT audit entry, revoke session, clear cookies

Sign-in itself is the browser flow in web/routes.py (/login/oauth/{provider}
and /auth/callback/{provider}); there is no password login.

Security:
  [M5] Cache-Control: no-store on every response that sets or clears session
       cookies.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import MeResponse, ProviderRow
from audit.models import Actor, AuditAction
from auth.dependencies import get_identity, require_allowed
from auth.oauth import get_enabled_providers
from auth.tokens import apply_cookie_writes

# Auth policy:
# - GET  /api/v1/auth/providers: public -- the login page renders buttons from it
# - POST /api/v1/auth/logout:    public -- signing out needs no allow-list entry
# - GET  /api/v1/auth/me:        requires an allow-listed identity
router = APIRouter()


@router.get("/auth/providers", response_model=list[ProviderRow])
def list_providers() -> list[ProviderRow]:
    """Return the OAuth/OIDC providers that are configured on this deployment."""
    return [ProviderRow(**p) for p in get_enabled_providers()]


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, actor: Actor = Depends(require_allowed)) -> MeResponse:
    """Return the caller's identity and role.

    is_owner goes through the cached policy: a bounded wait (5s by default)
    and a per-email TTL cache cleared on every sign-out. A timeout reports
    False rather than failing the request.
    """
    identity = get_identity(request)
    is_owner = await request.app.state.cached_policy.is_owner(identity.email)
    return MeResponse(
        email=identity.email,
        subject=identity.subject,
        provider=identity.provider,
        role=actor.role,
        is_owner=is_owner,
    )


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Record LOGOUT (when signed in), revoke the session and clear every session cookie."""
    identity = get_identity(request)
    if identity is not None:
        request.app.state.audit.log_action(identity.subject, identity.email, AuditAction.LOGOUT, "User signed out.")
    try:
        removals = await request.app.state.identity.sign_out(dict(request.cookies))
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "logout_failed", "message": "Sign-out failed."},
        ) from exc
    resp = JSONResponse(content={"message": "Logged out."})
    apply_cookie_writes(resp, removals)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
