"""
api/routes/v1/auth.py -- Account and session REST endpoints.

Routes:
  GET  /api/v1/auth/csrf              -- issue (or return) the session CSRF token
  POST /api/v1/auth/login             -- password login; opens a session
  POST /api/v1/auth/register          -- create an account; 201
  POST /api/v1/auth/logout            -- end the session; clears remember-me cookie
  POST /api/v1/auth/password/forgot   -- request a reset link (generic answer)
  POST /api/v1/auth/password/reset    -- consume a reset token
  GET  /api/v1/auth/me                -- current user (requires login)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Lockout, timing equalization and enumeration resistance live in
  AuthService -- handlers never inline store lookups + verify_password().
  Cache-Control: no-store on login responses.

CSRF:
  A successful login starts a new session with a new CSRF token. The login
  response carries it in data.csrf_token; tokens fetched before login no
  longer validate.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from api.responses import envelope, form_body, result_response
from auth.dependencies import get_auth_service, get_session_context, require_login
from auth.service import AuthService
from auth.tokens import clear_remember_cookie, set_remember_cookie
from auth.validator import Email, Validator, generate_csrf

# Auth policy:
# - GET  /auth/csrf, POST /auth/login, /auth/register, /auth/logout,
#   /auth/password/forgot, /auth/password/reset: public
# - GET  /auth/me: requires login (require_login)
router = APIRouter()


@router.get("/auth/csrf")
def csrf_token(request: Request) -> JSONResponse:
    """Return this session's CSRF token, creating it on first use."""
    return envelope("CSRF token issued", data={"csrf_token": generate_csrf(request.session)})


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(
    request: Request,
    body: LoginRequest = Depends(form_body(LoginRequest)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password.

    Field presence and email syntax are checked here; every account rule
    (lockout, status, attempts) is the service's call.
    """
    if not body.email.strip() or not body.password:
        resp = envelope("Email and password are required", success=False, status_code=400)
    elif not Validator().validate({"email": body.email.strip()}, {"email": [Email()]}).valid:
        resp = envelope("Please enter a valid email address", success=False, status_code=400)
    else:
        ctx = get_session_context(request)
        result = service.login(ctx, body.email.strip(), body.password, remember_me=body.remember_me)
        csrf = {"csrf_token": generate_csrf(request.session)} if result.success else None
        resp = result_response(result, data=csrf)
        if result.success and result.remember_token:
            set_remember_cookie(resp, result.remember_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", status_code=201)
def register(
    request: Request,
    body: RegisterRequest = Depends(form_body(RegisterRequest)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    data = body.model_dump(exclude={"csrf_token"}, exclude_none=True)
    result = service.register(get_session_context(request), data)
    return result_response(result, success_status=201)


@router.post("/auth/logout")
def logout(request: Request, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """End the session and drop the remember-me cookie. Safe to call when logged out."""
    result = service.logout(get_session_context(request))
    resp = result_response(result)
    clear_remember_cookie(resp)
    return resp


@router.post("/auth/password/forgot")
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest = Depends(form_body(ForgotPasswordRequest)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    if not body.email.strip():
        return envelope("Email address is required", success=False, status_code=400)
    return result_response(service.request_password_reset(get_session_context(request), body.email.strip()))


@router.post("/auth/password/reset")
def reset_password(
    request: Request,
    body: ResetPasswordRequest = Depends(form_body(ResetPasswordRequest)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    return result_response(service.reset_password(get_session_context(request), body.token, body.password))


@router.get("/auth/me")
async def me(user: dict = Depends(require_login)) -> JSONResponse:
    """Return the sanitized record of the logged-in user."""
    return envelope("OK", data={"user": user})
