"""
api/main.py -- FastAPI application entry point for TLC Portal.

Exposes the account/session engine and the lead-capture forms over HTTP
for the marketing site and the learner dashboard.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed session cookie backing request.session

Lifespan handles startup (stores, auth service, session purge task) and
shutdown (cancel purge task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import HealthResponse
from api.responses import envelope
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.leads import router as leads_router
from auth.dependencies import ROTATED_REMEMBER_ATTR, LoginRedirect, require_login
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import set_remember_cookie
from core.config import get_settings
from leads.store import LeadStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tlcportal.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired user_sessions rows every SESSION_PURGE_INTERVAL seconds.

    Expiry is already enforced lazily on every session check; this loop only
    keeps the table from growing with sessions that were never logged out.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(settings.session_purge_interval)
        try:
            removed = await asyncio.to_thread(app.state.auth_service.purge_expired_sessions)
        except Exception:
            logger.exception("Session purge failed")
            continue
        if removed:
            logger.info("Purged %d expired sessions", removed)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- they create their tables on construction.
      2. AuthService second -- wraps the user store.
      3. Purge task last -- references app.state.auth_service.
    """
    logger.info("TLC Portal API starting up")
    app.state.user_store = UserStore()
    app.state.lead_store = LeadStore()
    app.state.auth_service = AuthService(app.state.user_store, settings)
    logger.info("Stores initialized (%s)", settings.database_url.split("://", 1)[0])
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.lead_store.close()
    app.state.user_store.close()
    logger.info("TLC Portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TLC Portal API",
    description="Accounts, sessions and lead capture for the TLC Consult site.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs is replaced by a login-protected route below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST one added is the
# outermost. Register innermost first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="tlc_session",
    max_age=settings.session_lifetime,
    same_site="lax",
    https_only=settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Requested-With", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Remember-me cookie refresh
#
# try_get_current_user() rotates the remember-me token when it restores a
# session. Dependencies cannot touch the outgoing response, so the new raw
# token is parked on request.state and written here.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def refresh_remember_cookie(request: Request, call_next):
    response = await call_next(request)
    rotated = getattr(request.state, ROTATED_REMEMBER_ATTR, None)
    if rotated:
        set_remember_cookie(response, rotated)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(leads_router, prefix="/api/v1", tags=["Leads"])


# ---------------------------------------------------------------------------
# Login-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: dict = Depends(require_login)):
    """Swagger UI -- requires a logged-in session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="TLC Portal API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {success, message, errors?} envelope so
# clients parse errors uniformly without inspecting status codes to choose
# a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(LoginRedirect)
async def login_redirect_handler(request: Request, exc: LoginRedirect) -> RedirectResponse:
    """Browser requests that fail a guard are sent to the login page (or home)."""
    return RedirectResponse(exc.location, status_code=302)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = envelope("Too many requests. Please try again later.", success=False, status_code=429)
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with per-field messages when a body does not fit its model."""
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.setdefault(".".join(loc) or "body", []).append(err.get("msg", "Invalid value"))
    return envelope("Validation failed", success=False, status_code=400, errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap FastAPI/Starlette HTTP exceptions (401, 403, 404, 405, ...) in the envelope."""
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 405:
        message = "Method not allowed"
    response = envelope(message, success=False, status_code=exc.status_code)
    for key, value in (exc.headers or {}).items():
        response.headers[key] = value
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return envelope("An internal error occurred. Please try again later.", success=False, status_code=500)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        if not request.app.state.user_store.ping():
            components["database"] = "error"
    except Exception:
        logger.exception("Health check database ping failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
