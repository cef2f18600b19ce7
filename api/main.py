"""
api/main.py -- FastAPI application entry point for iCloud Sentinel.

Exposes the account console over HTTP: JSON routes under /api/v1 here, the
server-rendered pages from web/routes.py (mounted by asgi.py).

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client host
  2. session_gate          -- SessionGate.decide() on every request (auth/gate.py)
  3. SessionMiddleware     -- authlib OAuth state between redirect and callback
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. CORSMiddleware        -- adds CORS headers for allowed browser origins
  6. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan wires stores and services into app.state (init_state), starts the
audit writer and the maintenance task, and tears them down symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import Engine
from starlette.middleware.sessions import SessionMiddleware

from accounts.lifecycle import AccountLifecycle
from accounts.store import AccountStore
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.customers import router as customers_router
from api.routes.v1.data import router as data_router
from api.routes.v1.emails import router as emails_router
from api.routes.v1.passwords import router as passwords_router
from audit.emitter import AuditEmitter
from audit.models import SYSTEM_ACTOR, Actor
from audit.store import AuditStore
from auth.dependencies import require_allowed
from auth.gate import SessionGate
from auth.identity import SessionIdentityProvider
from auth.oauth import oauth as oauth_client
from auth.policy import AccessPolicy, CachedAccessPolicy
from auth.store import AccessStore
from auth.tokens import apply_cookie_writes
from cache.store import AccessCache
from core.config import get_settings
from core.database import create_db_engine
from core.proxy import DataProxy

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sentinel.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, engine: Engine, configured: bool | None = None) -> None:
    """Build every store and service on top of engine and attach them to app.state.

    configured overrides Settings.identity_configured (tests run without real
    OAuth credentials but still exercise the full gate).
    """
    settings = get_settings()
    if configured is None:
        configured = settings.identity_configured

    app.state.engine = engine
    app.state.access_store = AccessStore(engine)
    app.state.account_store = AccountStore(engine)
    app.state.audit_store = AuditStore(engine)
    app.state.audit = AuditEmitter(app.state.audit_store)

    app.state.access_cache = AccessCache(ttl=settings.access_cache_ttl)
    app.state.policy = AccessPolicy(app.state.access_store)
    app.state.cached_policy = CachedAccessPolicy(
        app.state.policy,
        app.state.access_cache,
        timeout=settings.client_check_timeout_seconds,
    )

    app.state.identity = SessionIdentityProvider(app.state.access_store)
    # Role and allow-list answers must not outlive the session that produced them.
    app.state.identity.add_sign_out_listener(app.state.cached_policy.invalidate)

    app.state.gate = SessionGate(
        app.state.identity,
        app.state.policy,
        configured=configured,
        lookup_timeout=settings.allowlist_timeout_seconds,
    )
    app.state.lifecycle = AccountLifecycle(
        app.state.account_store,
        app.state.audit,
        retention_days=settings.trash_retention_days,
    )
    app.state.proxy = DataProxy(engine)
    app.state.oauth = oauth_client


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI, interval: int, sweep_trash: bool) -> None:
    """Periodic housekeeping: expired sessions, stale cache entries, and (opt-in) the trash.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            now = datetime.now(timezone.utc).isoformat()
            removed = await asyncio.to_thread(app.state.access_store.purge_expired_sessions, now)
            if removed:
                logger.info("Removed %d expired sessions", removed)
            app.state.access_cache.purge_expired()
            if sweep_trash:
                await asyncio.to_thread(app.state.lifecycle.purge_expired, SYSTEM_ACTOR)
        except Exception:
            logger.exception("Maintenance pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine and services on startup; drain and dispose on shutdown.

    Startup order matters:
      1. Engine and stores -- create_all runs in each store constructor.
      2. Audit writer -- needs the running loop, must exist before any request.
      3. Maintenance task last -- references the stores and the lifecycle.
    """
    settings = get_settings()
    logger.info("iCloud Sentinel starting up")
    engine = create_db_engine(settings.database_url)
    init_state(app, engine)
    if not app.state.gate.configured:
        logger.error("No OAuth/OIDC provider configured: protected pages will redirect to /login")

    app.state.audit.start()
    logger.info("Audit writer started")

    sweep_trash = settings.trash_purge_interval_seconds > 0
    interval = settings.trash_purge_interval_seconds if sweep_trash else 60 * 60
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app, interval, sweep_trash))
    logger.info("Maintenance task started (every %ds, trash sweep=%s)", interval, sweep_trash)

    yield

    # Shutdown
    app.state.maintenance_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.maintenance_task
    await app.state.audit.stop()
    engine.dispose()
    logger.info("iCloud Sentinel shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="iCloud Sentinel API",
    description="Admin console for iCloud account credentials and their customers.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by allow-listed equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state parameter in the Starlette session between the
# authorization redirect and the callback.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    https_only=_settings.effective_secure_cookies,
    same_site="lax",
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Session gate middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_gate(request: Request, call_next):
    """Run the session gate and apply its cookie writes to whatever goes out.

    The resolved identity and allow-list entry are left on request.state for
    the dependencies in auth/dependencies.py.
    """
    gate: SessionGate | None = getattr(request.app.state, "gate", None)
    request.state.identity = None
    request.state.access_entry = None
    if gate is None:
        return await call_next(request)

    decision = await gate.decide(request.url.path, str(request.url), dict(request.cookies))
    request.state.identity = decision.identity
    request.state.access_entry = decision.entry

    if decision.is_redirect:
        logger.info("Gate redirect %s -> %s (%s)", request.url.path, decision.location, decision.reason)
        response = RedirectResponse(decision.location, status_code=302)
    else:
        response = await call_next(request)
    # A handler that set a session cookie itself (sign-in, sign-out) wins over
    # the gate's refresh rotation.
    handled = {h.split("=", 1)[0].strip() for h in response.headers.getlist("set-cookie")}
    apply_cookie_writes(response, [w for w in decision.cookie_writes if w.name not in handled])
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])
app.include_router(customers_router, prefix="/api/v1", tags=["Customers"])
app.include_router(emails_router, prefix="/api/v1", tags=["Allow-list"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit log"])
app.include_router(passwords_router, prefix="/api/v1", tags=["Passwords"])
app.include_router(data_router, prefix="/api/v1", tags=["Data"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Allow-listed API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(actor: Actor = Depends(require_allowed)):
    """Swagger UI -- allow-listed callers only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="iCloud Sentinel API")


@app.get("/redoc", include_in_schema=False)
async def redoc(actor: Actor = Depends(require_allowed)):
    """ReDoc UI -- allow-listed callers only."""
    return get_redoc_html(openapi_url="/openapi.json", title="iCloud Sentinel API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a dict it becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
