"""
auth/service.py -- Login, registration, logout, password reset and lockout.

AuthService is the only place that applies account business rules. Route
handlers translate HTTP into calls here and serialize the AuthResult back;
UserStore does the persistence. Every public method receives an explicit
SessionContext, so the service itself holds no per-request state.

Lockout state machine (per account):
  Unlocked --wrong password--> Unlocked      attempts + 1
  Unlocked --wrong password--> Locked        attempts + 1 reaches MAX_LOGIN_ATTEMPTS
  Locked   --any login------->  Locked        refused, attempts untouched
  *        --successful login-> Unlocked      attempts = 0, locked_until = NULL

A lock only expires by time; the counter is not reset when it does, so the
first wrong password after expiry locks the account again immediately.

Enumeration resistance:
  login() returns the same message for an unknown email and a wrong password,
  and spends one bcrypt verification on a dummy hash for unknown emails so
  both paths take about the same time. request_password_reset() always
  answers with the same message.

Failure semantics:
  Public methods never raise. Unexpected errors (database down, driver
  errors) are logged with logger.exception and returned as INTERNAL_ERROR
  with an opaque message.

Layer rule: no imports from api/ or leads/.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.models import (
    ActivityLogEntry,
    AuthOutcome,
    AuthResult,
    SessionContext,
    User,
    UserSession,
    sanitize_user,
)
from auth.store import UserStore, format_ts
from auth.tokens import (
    burn_password_check,
    generate_session_id,
    generate_token,
    hash_password,
    hash_token,
    verify_password,
)
from auth.validator import (
    Confirmed,
    Email,
    Max,
    Min,
    Phone,
    Required,
    StrongPassword,
    Unique,
    Validator,
    generate_csrf,
    normalize_email,
    sanitize,
    validate_strong_password,
)
from core.config import Settings, get_settings

logger = logging.getLogger("tlcportal.auth")

INVALID_CREDENTIALS_MSG = "Invalid email or password"
ACCOUNT_LOCKED_MSG = "Account is temporarily locked due to too many failed login attempts. Please try again later."
ACCOUNT_INACTIVE_MSG = "Your account is inactive. Please contact support."
RESET_REQUESTED_MSG = "If an account with that email exists, a reset link has been sent."
INVALID_RESET_TOKEN_MSG = "Invalid or expired reset token."
INTERNAL_ERROR_MSG = "An error occurred. Please try again."
STRONG_PASSWORD_MSG = (
    "Password must be at least 8 characters and contain uppercase, lowercase, number and special character"
)

# Session state keys written by the service.
USER_KEY = "user"
SESSION_ID_KEY = "session_id"
LOGIN_TIME_KEY = "login_time"

PROFILE_FIELDS = ("first_name", "last_name", "phone", "company", "position")

Notifier = Callable[[User, str], None]


def log_reset_notice(user: User, raw_token: str) -> None:
    """Default reset notifier. Mail delivery is out of scope; the token is not logged."""
    logger.info("Password reset link issued for user_id=%s", user.id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _guarded(action: str):
    """Wrap a public AuthService method so unexpected errors become INTERNAL_ERROR."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> AuthResult:
            try:
                return func(*args, **kwargs)
            except Exception:
                logger.exception("%s failed", action)
                return AuthResult(False, INTERNAL_ERROR_MSG, AuthOutcome.INTERNAL_ERROR)

        return wrapper

    return decorator


class AuthService:
    """Account lifecycle operations over a UserStore.

    Usage:
        service = AuthService(UserStore())
        ctx = SessionContext(state=request.session, ip_address="203.0.113.7")
        result = service.login(ctx, "ana@x.com", "password1", remember_me=True)
        if result.success:
            ...  # ctx.state now holds the sanitized user and the session id

    notifier receives (user, raw_reset_token) when a reset is requested.
    clock returns the current aware datetime; tests pass a fixed one.
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.notifier = notifier or log_reset_notice
        self.clock = clock or _utcnow
        self.validator = Validator(store, self.settings)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    @_guarded("login")
    def login(self, ctx: SessionContext, email: str, password: str, remember_me: bool = False) -> AuthResult:
        """Authenticate and open a session.

        The lock check runs before the password check, so a locked account
        gets the lockout message even with the right password and the
        attempt is not counted.
        """
        now = self.clock()
        email = normalize_email(email)
        password = password or ""
        user = self.store.get_by_email(email) if email else None

        if user is not None and self._is_locked(user, now):
            logger.warning("Login refused for locked account user_id=%s", user.id)
            return AuthResult(False, ACCOUNT_LOCKED_MSG, AuthOutcome.ACCOUNT_LOCKED)

        if user is None:
            burn_password_check(password)
            return AuthResult(False, INVALID_CREDENTIALS_MSG, AuthOutcome.INVALID_CREDENTIALS)

        if not verify_password(password, user.hashed_password or ""):
            lock_until = format_ts(now + timedelta(seconds=self.settings.lockout_duration))
            attempts = self.store.record_failed_login(user.id, self.settings.max_login_attempts, lock_until)
            if attempts >= self.settings.max_login_attempts:
                logger.warning("Account user_id=%s locked after %d failed attempts", user.id, attempts)
            return AuthResult(False, INVALID_CREDENTIALS_MSG, AuthOutcome.INVALID_CREDENTIALS)

        if not user.is_active:
            return AuthResult(False, ACCOUNT_INACTIVE_MSG, AuthOutcome.ACCOUNT_INACTIVE)

        self.store.record_successful_login(user.id, format_ts(now))
        fresh = self.store.get_by_id(user.id) or user
        session_id = self._open_session(ctx, fresh, now)

        raw_remember = None
        if remember_me:
            raw_remember = generate_token()
            self.store.set_remember_token(user.id, hash_token(raw_remember))

        self._log(ctx, user.id, "login", description="User logged in")
        logger.info("Login succeeded for user_id=%s", user.id)
        return AuthResult(
            True,
            "Login successful",
            user=ctx.state[USER_KEY],
            session_id=session_id,
            remember_token=raw_remember,
        )

    @_guarded("logout")
    def logout(self, ctx: SessionContext) -> AuthResult:
        """End the current session. Calling it while logged out is a no-op."""
        user = ctx.state.get(USER_KEY)
        if not user or not user.get("id"):
            return AuthResult(True, "Logged out")

        user_id = user["id"]
        try:
            session_id = ctx.state.get(SESSION_ID_KEY)
            if session_id:
                self.store.delete_session(session_id)
            self.store.set_remember_token(user_id, None)
            self._log(ctx, user_id, "logout", description="User logged out")
        finally:
            ctx.state.clear()
        return AuthResult(True, "Logged out")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_guarded("register")
    def register(self, ctx: SessionContext, data: Mapping[str, Any]) -> AuthResult:
        """Create an active account from form data.

        Nothing is written unless every field passes. The email UNIQUE
        constraint backs up the Unique rule when two registrations race.
        """
        data = {**data, "email": str(data.get("email") or "").strip()}
        result = self.validator.validate(data, self._registration_rules(data))
        if not result.valid:
            return AuthResult(False, "Validation failed", AuthOutcome.VALIDATION_FAILED, errors=result.errors)

        verification_token = generate_token()
        while self.store.exists("users", "verification_token", verification_token):
            verification_token = generate_token()

        new_user = User(
            email=data["email"],
            first_name=sanitize(data["first_name"]),
            last_name=sanitize(data["last_name"]),
            hashed_password=hash_password(str(data["password"])),
            phone=sanitize(data["phone"]) if data.get("phone") else None,
            company=sanitize(data["company"]) if data.get("company") else None,
            position=sanitize(data["position"]) if data.get("position") else None,
            verification_token=verification_token,
            role="user",
            status="active",
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError:
            return AuthResult(
                False,
                "Validation failed",
                AuthOutcome.VALIDATION_FAILED,
                errors={"email": ["Email already exists"]},
            )

        created = self.store.get_by_id(user_id)
        self._log(ctx, user_id, "register", entity_type="user", entity_id=user_id, description="User registered")
        logger.info("Registered user_id=%s", user_id)
        return AuthResult(
            True,
            "Registration successful. Please check your email for verification.",
            user=sanitize_user(created) if created else None,
        )

    def _registration_rules(self, data: Mapping[str, Any]) -> dict:
        password_rules = [Required(), Min(self.settings.password_min_length)]
        if self.settings.require_strong_passwords:
            password_rules.append(StrongPassword())
        if "password_confirmation" in data:
            password_rules.append(Confirmed())
        return {
            "first_name": [Required(), Min(2), Max(50)],
            "last_name": [Required(), Min(2), Max(50)],
            "email": [Required(), Email(), Unique("users")],
            "password": password_rules,
            "phone": [Max(20), Phone()],
            "company": [Max(100)],
            "position": [Max(100)],
        }

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_guarded("password reset request")
    def request_password_reset(self, ctx: SessionContext, email: str) -> AuthResult:
        """Issue a one-hour reset token when the account exists.

        The answer is identical either way.
        """
        email = normalize_email(email)
        user = self.store.get_by_email(email) if email else None
        if user is not None:
            raw_token = generate_token()
            expires = self.clock() + timedelta(seconds=self.settings.reset_token_lifetime)
            self.store.set_reset_token(user.id, hash_token(raw_token), format_ts(expires))
            self.notifier(user, raw_token)
            self._log(
                ctx,
                user.id,
                "password_reset_request",
                entity_type="user",
                entity_id=user.id,
                description="Password reset requested",
            )
        return AuthResult(True, RESET_REQUESTED_MSG)

    @_guarded("password reset")
    def reset_password(self, ctx: SessionContext, token: str, new_password: str) -> AuthResult:
        if not token:
            return AuthResult(False, INVALID_RESET_TOKEN_MSG, AuthOutcome.INVALID_OR_EXPIRED_TOKEN)

        token_hash = hash_token(token)
        user = self.store.get_by_reset_token(token_hash, format_ts(self.clock()))
        if user is None:
            return AuthResult(False, INVALID_RESET_TOKEN_MSG, AuthOutcome.INVALID_OR_EXPIRED_TOKEN)

        problem = self._password_problem(new_password or "")
        if problem:
            return AuthResult(False, problem, AuthOutcome.VALIDATION_FAILED, errors={"password": [problem]})

        if not self.store.consume_reset_token(user.id, token_hash, hash_password(new_password)):
            # Another request used the token between the lookup and the update.
            return AuthResult(False, INVALID_RESET_TOKEN_MSG, AuthOutcome.INVALID_OR_EXPIRED_TOKEN)

        self._log(
            ctx, user.id, "password_reset", entity_type="user", entity_id=user.id, description="Password was reset"
        )
        logger.info("Password reset completed for user_id=%s", user.id)
        return AuthResult(True, "Password has been reset successfully. You can now login with your new password.")

    # ------------------------------------------------------------------
    # Dashboard operations (require a logged-in context)
    # ------------------------------------------------------------------

    @_guarded("password change")
    def change_password(self, ctx: SessionContext, current: str, new: str, confirmation: str) -> AuthResult:
        user = self.current_user(ctx)
        if user is None:
            return self._unauthenticated()

        if not current or not new or not confirmation:
            return AuthResult(False, "All password fields are required", AuthOutcome.VALIDATION_FAILED)
        if new != confirmation:
            return AuthResult(False, "New password confirmation does not match", AuthOutcome.VALIDATION_FAILED)
        problem = self._password_problem(new, prefix="New password")
        if problem:
            return AuthResult(False, problem, AuthOutcome.VALIDATION_FAILED)

        record = self.store.get_by_id(user["id"])
        if record is None or not verify_password(current, record.hashed_password or ""):
            return AuthResult(False, "Current password is incorrect", AuthOutcome.VALIDATION_FAILED)

        self.store.update_password(record.id, hash_password(new))
        self._log(
            ctx, record.id, "password_change", entity_type="user", entity_id=record.id, description="Password changed"
        )
        return AuthResult(True, "Password changed successfully")

    @_guarded("profile update")
    def update_profile(self, ctx: SessionContext, data: Mapping[str, Any]) -> AuthResult:
        """Update the whitelisted profile fields present in data."""
        user = self.current_user(ctx)
        if user is None:
            return self._unauthenticated()

        updates = {name: str(data[name]).strip() for name in PROFILE_FIELDS if data.get(name) is not None}
        if not updates:
            return AuthResult(False, "No valid fields to update", AuthOutcome.VALIDATION_FAILED)

        rules = {
            "first_name": [Required(), Min(2), Max(50)],
            "last_name": [Required(), Min(2), Max(50)],
            "phone": [Max(20), Phone()],
            "company": [Max(100)],
            "position": [Max(100)],
        }
        result = self.validator.validate(updates, {name: rules[name] for name in updates})
        if not result.valid:
            return AuthResult(False, "Validation failed", AuthOutcome.VALIDATION_FAILED, errors=result.errors)

        # Validated as typed, stored escaped; blank optional fields become NULL.
        values = {name: (sanitize(value) or None) for name, value in updates.items()}
        if not self.store.update_profile(user["id"], **values):
            return AuthResult(False, "No changes were made", AuthOutcome.VALIDATION_FAILED)

        self._log(
            ctx, user["id"], "profile_update", entity_type="user", entity_id=user["id"], description="Profile updated"
        )
        refreshed = self.store.get_by_id(user["id"])
        if refreshed is not None:
            ctx.state[USER_KEY] = sanitize_user(refreshed)
        return AuthResult(True, "Profile updated successfully", user=ctx.state.get(USER_KEY))

    # ------------------------------------------------------------------
    # Session checks
    # ------------------------------------------------------------------

    def current_user(self, ctx: SessionContext) -> dict | None:
        """Return the logged-in sanitized user, or None.

        Expiry is checked lazily here: a session whose row is gone, expired,
        owned by someone else, or whose user is no longer active is cleared
        from ctx.state. Storage errors are logged and treated as logged out.
        """
        cached = ctx.state.get(USER_KEY)
        session_id = ctx.state.get(SESSION_ID_KEY)
        if not cached or not session_id:
            return None

        try:
            session = self.store.get_session(session_id)
            now = format_ts(self.clock())
            if session is None or session.expires_at <= now or session.user_id != cached.get("id"):
                if session is not None and session.expires_at <= now:
                    self.store.delete_session(session_id)
                ctx.state.clear()
                return None

            user = self.store.get_by_id(session.user_id)
        except Exception:
            logger.exception("Session check failed")
            return None

        if user is None or not user.is_active:
            ctx.state.clear()
            return None
        ctx.state[USER_KEY] = sanitize_user(user)
        return ctx.state[USER_KEY]

    @_guarded("remember-me login")
    def resume_session(self, ctx: SessionContext) -> AuthResult:
        """Open a session from the remember-me cookie when not logged in.

        The remember token is rotated on every use; the new raw value is
        returned in AuthResult.remember_token for the handler to re-set.
        """
        if not ctx.remember_token:
            return self._unauthenticated()

        now = self.clock()
        user = self.store.get_by_remember_token(hash_token(ctx.remember_token))
        if user is None or not user.is_active or self._is_locked(user, now):
            return self._unauthenticated()

        self.store.record_successful_login(user.id, format_ts(now))
        session_id = self._open_session(ctx, user, now)
        raw_remember = generate_token()
        self.store.set_remember_token(user.id, hash_token(raw_remember))
        self._log(ctx, user.id, "remember_login", description="Session restored from remember-me token")
        return AuthResult(
            True,
            "Session restored",
            user=ctx.state[USER_KEY],
            session_id=session_id,
            remember_token=raw_remember,
        )

    def purge_expired_sessions(self) -> int:
        return self.store.purge_expired_sessions(format_ts(self.clock()))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_locked(user: User, now: datetime) -> bool:
        return bool(user.locked_until) and user.locked_until > format_ts(now)

    def _password_problem(self, password: str, prefix: str = "Password") -> str | None:
        min_length = self.settings.password_min_length
        if len(password) < min_length:
            return f"{prefix} must be at least {min_length} characters long."
        if self.settings.require_strong_passwords and not validate_strong_password(password):
            return STRONG_PASSWORD_MSG
        return None

    def _open_session(self, ctx: SessionContext, user: User, now: datetime) -> str:
        """Replace any session held by ctx with a fresh one for user."""
        previous = ctx.state.get(SESSION_ID_KEY)
        if previous:
            self.store.delete_session(previous)
        # New session state on every login (no fixation through a reused id).
        ctx.state.clear()

        session_id = generate_session_id()
        self.store.create_session(
            UserSession(
                id=session_id,
                user_id=user.id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                created_at=format_ts(now),
                expires_at=format_ts(now + timedelta(seconds=self.settings.session_lifetime)),
            )
        )
        ctx.state[USER_KEY] = sanitize_user(user)
        ctx.state[SESSION_ID_KEY] = session_id
        ctx.state[LOGIN_TIME_KEY] = int(now.timestamp())
        # Fresh CSRF token for the new session; the old one went with the cleared state.
        generate_csrf(ctx.state)
        return session_id

    def _log(self, ctx: SessionContext, user_id: int, action: str, **details) -> None:
        self.store.log_activity(
            ActivityLogEntry(
                user_id=user_id,
                action=action,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                **details,
            )
        )

    @staticmethod
    def _unauthenticated() -> AuthResult:
        return AuthResult(False, "Authentication required", AuthOutcome.UNAUTHENTICATED)
