"""
api/routes/v1/dashboard.py -- Learner dashboard endpoints.

Routes:
  GET  /api/v1/dashboard/overview   -- account summary + recent activity
  GET  /api/v1/dashboard/profile    -- editable profile fields
  POST /api/v1/dashboard/profile    -- update profile fields
  POST /api/v1/dashboard/password   -- change password (current password required)

Course enrollment and certificate data are not served here.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import ChangePasswordRequest, ProfileUpdate
from api.responses import envelope, form_body, result_response
from auth.dependencies import get_auth_service, get_session_context, require_login
from auth.service import AuthService
from auth.store import UserStore

# Auth policy:
# - every /dashboard route: requires login
# Router-level dependency enforces auth; handlers that need the user repeat
# require_login, which FastAPI resolves once per request.
router = APIRouter(dependencies=[Depends(require_login)])

_PROFILE_KEYS = ("id", "first_name", "last_name", "email", "phone", "company", "position", "created_at", "last_login")


@limiter.limit("60/minute")
@router.get("/dashboard/overview")
def overview(request: Request, user: dict = Depends(require_login)) -> JSONResponse:
    """Return the account summary and the ten most recent activity entries."""
    store: UserStore = request.app.state.user_store
    activity = [
        {"action": e.action, "description": e.description, "created_at": e.created_at}
        for e in store.recent_activity(user["id"], limit=10)
    ]
    return envelope(
        "OK",
        data={
            "user": user,
            "recent_activity": activity,
        },
    )


@router.get("/dashboard/profile")
def get_profile(request: Request, user: dict = Depends(require_login)) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    record = store.get_by_id(user["id"])
    if record is None:
        return envelope("User not found", success=False, status_code=404)
    fields = asdict(record)
    return envelope("OK", data={"profile": {key: fields[key] for key in _PROFILE_KEYS}})


@router.post("/dashboard/profile")
def update_profile(
    request: Request,
    body: ProfileUpdate = Depends(form_body(ProfileUpdate)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    data = body.model_dump(exclude={"csrf_token"}, exclude_none=True)
    return result_response(service.update_profile(get_session_context(request), data))


@router.post("/dashboard/password")
def change_password(
    request: Request,
    body: ChangePasswordRequest = Depends(form_body(ChangePasswordRequest)),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    result = service.change_password(
        get_session_context(request),
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return result_response(result)
