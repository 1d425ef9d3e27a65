"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Session resolution, in priority order:
  1. Signed session cookie (Starlette SessionMiddleware) whose session_id
     still has a live user_sessions row -- AuthService.current_user().
  2. remember_token cookie -- AuthService.resume_session() opens a fresh
     session and rotates the token.

try_get_current_user() is the soft variant (returns None on failure).
require_login() wraps it; require_admin() wraps require_login().

Failure responses depend on who is asking:
  Programmatic callers (X-Requested-With: XMLHttpRequest, an Accept header
  that asks for JSON, or any /api/ path) get a 401/403 JSON envelope via
  HTTPException. Browsers get a LoginRedirect, which api/main.py turns into
  a 302 to LOGIN_URL (or "/" for a non-admin hitting an admin page).

Layer rule: no imports from api/ or leads/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import SessionContext
from auth.service import AuthService
from auth.tokens import REMEMBER_COOKIE
from core.config import get_settings

# Request-state attribute holding a rotated remember-me token that the
# response still needs to set (see api/main.py refresh_remember_cookie).
ROTATED_REMEMBER_ATTR = "rotated_remember_token"


class LoginRedirect(Exception):
    """Raised by the guards for browser requests; handled as a 302."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


def get_session_context(request: Request) -> SessionContext:
    """Build the explicit session context the service works on."""
    return SessionContext(
        state=request.session,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        remember_token=request.cookies.get(REMEMBER_COOKIE),
    )


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def is_programmatic(request: Request) -> bool:
    """True for AJAX / API callers that expect a JSON status, not a redirect."""
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    if "application/json" in request.headers.get("accept", "").lower():
        return True
    return request.url.path.startswith("/api/")


def try_get_current_user(request: Request) -> dict | None:
    """Return the logged-in sanitized user, or None.

    Never raises -- callers that need a hard 401 should use require_login().
    A successful remember-me renewal leaves the rotated raw token on
    request.state for the response middleware to write back as a cookie.
    """
    service = get_auth_service(request)
    ctx = get_session_context(request)

    user = service.current_user(ctx)
    if user is not None:
        return user

    if ctx.remember_token:
        result = service.resume_session(ctx)
        if result.success:
            setattr(request.state, ROTATED_REMEMBER_ATTR, result.remember_token)
            return result.user
    return None


def require_login(request: Request) -> dict:
    """Require an authenticated session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: dict = Depends(require_login)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        if not is_programmatic(request):
            raise LoginRedirect(get_settings().login_url)
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_admin(request: Request) -> dict:
    """Require the admin role. 401 if unauthenticated, 403 if not admin."""
    user = require_login(request)
    if user.get("role") != "admin":
        if not is_programmatic(request):
            raise LoginRedirect("/")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
