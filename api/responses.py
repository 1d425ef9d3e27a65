"""
api/responses.py -- Envelope responses and JSON-or-form body parsing.

Handlers accept either a JSON object or a classic form post on the same
route. read_payload() normalizes both into a pydantic request model and
enforces the CSRF policy:

  - a csrf_token field or X-CSRF-Token header, when present, must match the
    token issued for this session;
  - form-encoded submissions (what a browser sends cross-site) must carry one.

AuthResult codes map to HTTP statuses in result_response(); the mapping is
the only place that decides status codes for engine outcomes.
"""

from __future__ import annotations

import json
from typing import Any, Optional, TypeVar

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from api.models import Envelope
from auth.models import AuthOutcome, AuthResult
from auth.validator import validate_csrf

M = TypeVar("M", bound=BaseModel)

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

_STATUS_BY_OUTCOME: dict[AuthOutcome, int] = {
    AuthOutcome.OK: 200,
    AuthOutcome.VALIDATION_FAILED: 400,
    AuthOutcome.INVALID_CREDENTIALS: 400,
    AuthOutcome.ACCOUNT_LOCKED: 400,
    AuthOutcome.ACCOUNT_INACTIVE: 400,
    AuthOutcome.INVALID_OR_EXPIRED_TOKEN: 400,
    AuthOutcome.UNAUTHENTICATED: 401,
    AuthOutcome.INTERNAL_ERROR: 500,
}


def envelope(
    message: str,
    *,
    success: bool = True,
    status_code: int = 200,
    data: Optional[dict[str, Any]] = None,
    errors: Optional[dict[str, list[str]]] = None,
) -> JSONResponse:
    body = Envelope(success=success, message=message, data=data, errors=errors).body()
    return JSONResponse(status_code=status_code, content=body)


def result_response(result: AuthResult, success_status: int = 200, data: Optional[dict] = None) -> JSONResponse:
    """Serialize an AuthResult. The user dict (already sanitized) goes under data.user."""
    if result.success:
        payload = dict(data or {})
        if result.user is not None:
            payload.setdefault("user", result.user)
        return envelope(result.message, status_code=success_status, data=payload or None)
    return envelope(
        result.message,
        success=False,
        status_code=_STATUS_BY_OUTCOME.get(result.code, 400),
        errors=result.errors,
    )


async def read_payload(request: Request, model: type[M]) -> M:
    """Parse a JSON or form body into model, enforcing the CSRF policy.

    Raises HTTPException(400) for a bad CSRF token and RequestValidationError
    when the payload does not fit the model.
    """
    content_type = request.headers.get("content-type", "").lower()
    is_form = content_type.startswith(_FORM_TYPES)
    if is_form:
        form = await request.form()
        raw: Any = {key: value for key, value in form.items() if isinstance(value, str)}
    else:
        body = await request.body()
        try:
            raw = json.loads(body) if body else {}
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body") from None
        if not isinstance(raw, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

    token = raw.get("csrf_token") or request.headers.get("x-csrf-token")
    if (token is not None or is_form) and not validate_csrf(request.session, token):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")

    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None


def form_body(model: type[M]):
    """FastAPI dependency factory: Depends(form_body(LoginRequest))."""

    async def dependency(request: Request) -> M:
        return await read_payload(request, model)

    return dependency
