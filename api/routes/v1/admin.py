"""
api/routes/v1/admin.py -- Staff-only account listing.

Routes:
  GET /api/v1/admin/users -- every account, sanitized, ordered by email
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.responses import envelope
from auth.dependencies import require_admin
from auth.models import sanitize_user
from auth.store import UserStore

# Auth policy:
# - GET /api/v1/admin/users: requires admin (require_admin)
router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/admin/users")
def list_users(request: Request) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    users = [sanitize_user(u) for u in store.list_users()]
    return envelope("OK", data={"users": users, "total": len(users)})
