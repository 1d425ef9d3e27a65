"""
API request and response models for TLC Portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
leads/models.py, which own the internal domain representation. Route handlers
map between the two.

Request models are deliberately loose (strings, optional fields): field rules
and their messages belong to auth/validator.py, so a missing first_name comes
back as {"first_name": ["First name is required"]} rather than a pydantic
type error.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response body: {success, message, data?, errors?}.

    Every handler, including the exception handlers in api/main.py, returns
    this shape so clients parse one schema regardless of status code.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    errors: Optional[dict[str, list[str]]] = None

    def body(self) -> dict:
        """JSON body with unset optional keys omitted."""
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _FormModel(BaseModel):
    """Shared config: ignore unknown keys, keep the optional CSRF token."""

    model_config = ConfigDict(extra="ignore")

    csrf_token: Optional[str] = None


class LoginRequest(_FormModel):
    email: str = ""
    password: str = ""
    remember_me: bool = False


class RegisterRequest(_FormModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    password: str = ""
    password_confirmation: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    position: Optional[str] = None


class ForgotPasswordRequest(_FormModel):
    email: str = ""


class ResetPasswordRequest(_FormModel):
    token: str = ""
    password: str = ""


class ChangePasswordRequest(_FormModel):
    current_password: str = ""
    new_password: str = ""
    confirm_password: str = ""


class ProfileUpdate(_FormModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    position: Optional[str] = None


class NewsletterRequest(_FormModel):
    email: str = ""
    name: str = ""
    source: str = "website"
    website: str = ""  # honeypot; humans never see or fill it


class ContactRequest(_FormModel):
    name: str = ""
    email: str = ""
    message: str = ""
    phone: str = ""
    company: str = ""
    subject: str = ""
    type: str = "general"
    website: str = ""  # honeypot


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
