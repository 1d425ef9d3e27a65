"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; auth/store.py persists them and auth/service.py does the work.

Layer rule: no imports from api/ or leads/.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

# Fields that must never leave the server. sanitize_user() strips them.
SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "hashed_password",
        "verification_token",
        "reset_token",
        "reset_expires",
        "login_attempts",
        "locked_until",
        "remember_token",
    }
)


@dataclass
class User:
    """A learner or staff identity.

    login_attempts / locked_until drive the brute-force lockout: locked_until
    is only ever set once login_attempts has reached MAX_LOGIN_ATTEMPTS, and
    both are cleared together on a successful login.

    reset_token and remember_token hold HMAC hashes, never the raw values.
    Timestamps are ISO 8601 UTC strings; None means "never" / "not set".
    """

    email: str
    first_name: str
    last_name: str
    id: int | None = None
    hashed_password: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    role: str = "user"  # "user" | "admin"
    status: str = "active"  # "active" | "inactive"
    login_attempts: int = 0
    locked_until: str | None = None
    reset_token: str | None = None
    reset_expires: str | None = None
    verification_token: str | None = None
    remember_token: str | None = None
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class UserSession:
    """A server-tracked login. id is the opaque token kept in the session cookie."""

    id: str
    user_id: int
    expires_at: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class ActivityLogEntry:
    """Append-only audit record. Written by the engine, never read back by it."""

    user_id: int
    action: str  # "login", "logout", "register", "password_reset", ...
    entity_type: str | None = None
    entity_id: int | None = None
    description: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class SessionContext:
    """Request-scoped session state handed to every AuthService call.

    state is the mutable per-browser session mapping (Starlette's
    request.session in production, a plain dict in tests). The request layer
    owns it; the engine reads and writes the "user", "session_id",
    "login_time" and "csrf_token" keys.

    remember_token is the raw remember-me cookie value, if the browser sent one.
    """

    state: MutableMapping[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    remember_token: str | None = None


class AuthOutcome(str, Enum):
    """Result codes returned by AuthService operations."""

    OK = "ok"
    VALIDATION_FAILED = "validation_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    UNAUTHENTICATED = "unauthenticated"
    INTERNAL_ERROR = "internal_error"


@dataclass
class AuthResult:
    """Structured result envelope for every engine operation.

    remember_token carries the raw remember-me value exactly once, right after
    a login that asked for it, so the handler can set the cookie.
    """

    success: bool
    message: str
    code: AuthOutcome = AuthOutcome.OK
    user: dict | None = None
    session_id: str | None = None
    remember_token: str | None = None
    errors: dict[str, list[str]] | None = None


def sanitize_user(user: User) -> dict:
    """Return the user as a dict with every security-sensitive field removed."""
    data = asdict(user)
    for name in SENSITIVE_FIELDS:
        data.pop(name, None)
    return data
