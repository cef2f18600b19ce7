"""
web/routes.py -- Jinja2 template routes for the iCloud Sentinel web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same stores, lifecycle, identity provider) but return HTML instead of
JSON. Edits from the pages go through the JSON API under /api/v1.

Authorization: the session gate (auth/gate.py) has already run. Protected
prefixes (/accounts, /customers, /audit-log, /emails) never reach a handler
without an allow-listed identity, and /emails never without the owner role.
"/" is not a protected prefix, so the home page checks for itself.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /accounts/trash must be registered before GET /accounts/{account_id}.
  - GET /login/oauth/{provider} must be registered before GET /login.

Routes:
  GET  /                           -- account list (allow-listed)
  GET  /accounts                   -- account list
  GET  /accounts/trash             -- trash with purge deadlines
  GET  /accounts/{account_id}      -- account detail, password history, customers
  GET  /customers                  -- all customers
  GET  /audit-log                  -- audit trail, newest first
  GET  /emails                     -- allow-list (owner only, enforced by the gate)
  GET  /login/oauth/{provider}     -- OAuth redirect to provider
  GET  /auth/callback/{provider}   -- identity callback: code exchange, session cookies
  GET  /login                      -- sign-in page
  GET  /logout                     -- LOGOUT audit entry, sign out, back to /login
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from accounts.lifecycle import AccountError
from api.limiter import LOGIN_LIMIT, limiter
from audit.models import AuditAction
from auth.gate import safe_redirect
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.tokens import apply_cookie_writes

logger = logging.getLogger("sentinel.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "email_not_allowed": "This email is not allowed to use the console. Contact an owner.",
    "auth_error": "Sign-in failed. Please try again.",
    "oauth_failed": "The selected sign-in provider is not available.",
}

_NEXT_SESSION_KEY = "login_next"


def _current(request: Request):
    """Return (identity, entry) as resolved by the gate, or (None, None)."""
    return getattr(request.state, "identity", None), getattr(request.state, "access_entry", None)


def _require_allowed(request: Request) -> Optional[RedirectResponse]:
    """Redirect to /login unless the gate resolved an active allow-list entry.

    Call at the top of handlers for paths the gate does not protect:
        if redirect := _require_allowed(request):
            return redirect
    """
    identity, entry = _current(request)
    if identity is None or entry is None or not entry.is_active:
        return RedirectResponse("/login", status_code=302)
    return None


def _render(request: Request, name: str, **context) -> HTMLResponse:
    identity, entry = _current(request)
    context.update(request=request, identity=identity, entry=entry)
    return templates.TemplateResponse(name, context)


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    if redirect := _require_allowed(request):
        return redirect
    return _render(request, "accounts.html", accounts=request.app.state.lifecycle.list_accounts())


@router.get("/accounts", response_class=HTMLResponse)
def accounts_page(request: Request) -> HTMLResponse:
    return _render(request, "accounts.html", accounts=request.app.state.lifecycle.list_accounts())


@router.get("/accounts/trash", response_class=HTMLResponse)
def trash_page(request: Request) -> HTMLResponse:
    lifecycle = request.app.state.lifecycle
    return _render(request, "trash.html", items=lifecycle.list_trash(), retention_days=lifecycle.retention_days)


@router.get("/accounts/{account_id}", response_class=HTMLResponse)
def account_detail_page(request: Request, account_id: int) -> HTMLResponse:
    lifecycle = request.app.state.lifecycle
    try:
        detail = lifecycle.get_account_detail(account_id)
        customers = lifecycle.list_customers(account_id)
    except AccountError as exc:
        return _render(request, "error.html", message=str(exc))
    return _render(request, "account_detail.html", detail=detail, customers=customers)


@router.get("/customers", response_class=HTMLResponse)
def customers_page(request: Request) -> HTMLResponse:
    lifecycle = request.app.state.lifecycle
    usernames = {a.id: a.username for a in lifecycle.list_accounts()}
    return _render(request, "customers.html", customers=lifecycle.list_customers(), usernames=usernames)


@router.get("/audit-log", response_class=HTMLResponse)
def audit_log_page(request: Request, action: Optional[str] = None) -> HTMLResponse:
    actions = [a.value for a in AuditAction]
    if action not in actions:
        action = None
    entries = request.app.state.audit_store.list_entries(action=action, limit=500)
    return _render(request, "audit_log.html", entries=entries, actions=actions, selected=action)


@router.get("/emails", response_class=HTMLResponse)
def emails_page(request: Request) -> HTMLResponse:
    return _render(request, "emails.html", entries=request.app.state.access_store.list_entries())


# ---------------------------------------------------------------------------
# Sign-in
#
# /login/oauth/{provider} is registered before GET /login.
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)
@router.get("/login/oauth/{provider}", response_class=HTMLResponse)
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    Validates the provider name against the enabled provider list before
    redirecting. ?next= is kept in the Starlette session until the callback.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    next_url = request.query_params.get("next")
    if next_url:
        request.session[_NEXT_SESSION_KEY] = next_url
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@limiter.limit(LOGIN_LIMIT)
@router.get("/auth/callback/{provider}", response_class=HTMLResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Identity callback: exchange the code, open a session, go to ?next.

    Flow:
      1. Exchange authorization code for token (authlib checks the state).
      2. Extract the verified email and subject [H1].
      3. Open a session; access + refresh cookies go on the redirect.
      4. LOGIN_SUCCESS audit entry (best effort, never blocks the sign-in).
      5. Redirect to next through safe_redirect [G2].

    Any failure in 1-3 -> /login?error=auth_error. The allow-list is not
    consulted here: the gate checks it on the very next request.
    """
    fail = RedirectResponse("/login?error=auth_error", status_code=302)
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return fail

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return fail

    try:
        email, subject = get_oauth_user_info(provider, token)
    except ValueError:
        logger.warning("Sign-in rejected: unverified or missing email from %r", provider)
        return fail

    try:
        identity, writes = await asyncio.to_thread(request.app.state.identity.sign_in, email, subject, provider)
    except Exception:
        logger.exception("Could not open a session for %s", email)
        return fail

    request.app.state.audit.log_action(
        identity.subject, identity.email, AuditAction.LOGIN_SUCCESS, "User logged in successfully."
    )

    next_url = request.query_params.get("next") or request.session.pop(_NEXT_SESSION_KEY, None) or "/"
    resp = RedirectResponse(safe_redirect(next_url, str(request.url)), status_code=302)
    apply_cookie_writes(resp, writes)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the sign-in page with one button per configured provider."""
    # Map ?error= query param through whitelist [M3]
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    providers = get_enabled_providers()
    gate = getattr(request.app.state, "gate", None)
    return templates.TemplateResponse(
        "login.html",
        {
            "request": request,
            "error_msg": error_msg,
            "providers": providers,
            "configured": bool(gate and gate.configured),
            "next": request.query_params.get("next", ""),
        },
    )


@router.get("/logout")
async def logout(request: Request) -> RedirectResponse:
    """Record LOGOUT, then revoke the session and clear its cookies."""
    identity, _entry = _current(request)
    if identity is not None:
        request.app.state.audit.log_action(identity.subject, identity.email, AuditAction.LOGOUT, "User signed out.")
    removals = await request.app.state.identity.sign_out(dict(request.cookies))
    resp = RedirectResponse("/login", status_code=302)
    apply_cookie_writes(resp, removals)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
