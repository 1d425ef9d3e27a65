"""Unit tests for auth/service.py -- AuthService business rules.

Each test drives the service through an explicit SessionContext and a
FakeClock, so lockout windows, session expiry and reset-token lifetimes
are exercised without sleeping.

Covers:
- login: success, unknown email vs wrong password, inactive accounts
- lockout: threshold, lock precedence over the password, expiry, re-lock
- registration: rule errors, duplicates (validator and UNIQUE race), strong passwords,
  ASCII-only emails, register -> login -> lockout end to end
- password reset: generic answer, single use, expiry
- change_password / update_profile
- current_user lazy expiry, remember-me resume with rotation, logout
- INTERNAL_ERROR when the store fails
"""

from unittest.mock import MagicMock

import pytest

from auth.models import AuthOutcome, SessionContext, User
from auth.service import (
    ACCOUNT_INACTIVE_MSG,
    ACCOUNT_LOCKED_MSG,
    INVALID_CREDENTIALS_MSG,
    INVALID_RESET_TOKEN_MSG,
    RESET_REQUESTED_MSG,
    SESSION_ID_KEY,
    USER_KEY,
    AuthService,
)
from auth.tokens import hash_password, hash_token, verify_password
from auth.validator import CSRF_SESSION_KEY, generate_csrf, validate_csrf
from core.config import Settings

EMAIL = "ana@tlc-consult.com"
PASSWORD = "correct-horse"


@pytest.fixture
def outbox() -> list:
    return []


@pytest.fixture
def service(store, clock, outbox) -> AuthService:
    return AuthService(
        store,
        Settings(debug=True),
        notifier=lambda user, token: outbox.append((user.email, token)),
        clock=clock,
    )


@pytest.fixture
def user_id(store) -> int:
    return store.create_user(
        User(email=EMAIL, first_name="Ana", last_name="Lee", hashed_password=hash_password(PASSWORD))
    )


def _ctx(**kwargs) -> SessionContext:
    return SessionContext(state={}, ip_address="203.0.113.7", user_agent="pytest", **kwargs)


def _registration(**overrides) -> dict:
    return {
        "first_name": "Bea",
        "last_name": "Cole",
        "email": "bea@tlc-consult.com",
        "password": "longenough1",
        **overrides,
    }


class TestLogin:
    def test_success_opens_session(self, service, store, user_id):
        ctx = _ctx()
        result = service.login(ctx, EMAIL, PASSWORD)
        assert result.success is True
        assert result.message == "Login successful"
        assert result.user["email"] == EMAIL
        assert "hashed_password" not in result.user
        assert ctx.state[USER_KEY]["id"] == user_id
        session = store.get_session(ctx.state[SESSION_ID_KEY])
        assert session.user_id == user_id
        assert session.ip_address == "203.0.113.7"
        assert store.get_by_id(user_id).last_login is not None

    def test_unknown_email_and_wrong_password_look_the_same(self, service, user_id):
        unknown = service.login(_ctx(), "nobody@tlc-consult.com", PASSWORD)
        wrong = service.login(_ctx(), EMAIL, "wrong-password")
        assert unknown.message == wrong.message == INVALID_CREDENTIALS_MSG
        assert unknown.code == wrong.code == AuthOutcome.INVALID_CREDENTIALS

    def test_failed_login_leaves_state_untouched(self, service, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, "wrong-password")
        assert ctx.state == {}

    def test_inactive_account(self, service, store, user_id):
        store.set_status(user_id, "inactive")
        result = service.login(_ctx(), EMAIL, PASSWORD)
        assert result.code == AuthOutcome.ACCOUNT_INACTIVE
        assert result.message == ACCOUNT_INACTIVE_MSG

    def test_login_replaces_previous_session(self, service, store, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD)
        first = ctx.state[SESSION_ID_KEY]
        service.login(ctx, EMAIL, PASSWORD)
        assert ctx.state[SESSION_ID_KEY] != first
        assert store.get_session(first) is None

    def test_remember_me_stores_only_the_hash(self, service, store, user_id):
        result = service.login(_ctx(), EMAIL, PASSWORD, remember_me=True)
        assert result.remember_token
        assert store.get_by_id(user_id).remember_token == hash_token(result.remember_token)

    def test_success_is_logged_as_activity(self, service, store, user_id):
        service.login(_ctx(), EMAIL, PASSWORD)
        assert [e.action for e in store.recent_activity(user_id)] == ["login"]

    def test_login_issues_a_fresh_csrf_token(self, service, user_id):
        ctx = _ctx()
        before = generate_csrf(ctx.state)
        service.login(ctx, EMAIL, PASSWORD)
        after = ctx.state[CSRF_SESSION_KEY]
        assert after and after != before
        assert validate_csrf(ctx.state, after)

    def test_accented_address_does_not_match_its_stripped_form(self, service, store, outbox):
        store.create_user(
            User(email="jos@tlc-consult.com", first_name="Jo", last_name="Sa", hashed_password=hash_password(PASSWORD))
        )
        result = service.login(_ctx(), "jos\u00e9@tlc-consult.com", PASSWORD)
        assert result.code == AuthOutcome.INVALID_CREDENTIALS
        service.request_password_reset(_ctx(), "jos\u00e9@tlc-consult.com")
        assert outbox == []


class TestLockout:
    def _fail(self, service, times: int) -> None:
        for _ in range(times):
            service.login(_ctx(), EMAIL, "wrong-password")

    def test_five_failures_lock_the_account(self, service, store, user_id):
        self._fail(service, 5)
        user = store.get_by_id(user_id)
        assert user.login_attempts == 5
        assert user.locked_until is not None

    def test_lock_wins_over_correct_password(self, service, store, user_id):
        self._fail(service, 5)
        result = service.login(_ctx(), EMAIL, PASSWORD)
        assert result.code == AuthOutcome.ACCOUNT_LOCKED
        assert result.message == ACCOUNT_LOCKED_MSG
        assert store.get_by_id(user_id).login_attempts == 5

    def test_four_failures_then_success_resets_counter(self, service, store, user_id):
        self._fail(service, 4)
        assert service.login(_ctx(), EMAIL, PASSWORD).success
        assert store.get_by_id(user_id).login_attempts == 0

    def test_lock_expires_after_duration(self, service, store, clock, user_id):
        self._fail(service, 5)
        clock.advance(minutes=31)
        assert service.login(_ctx(), EMAIL, PASSWORD).success
        user = store.get_by_id(user_id)
        assert user.login_attempts == 0
        assert user.locked_until is None

    def test_wrong_password_after_expiry_relocks(self, service, clock, user_id):
        self._fail(service, 5)
        clock.advance(minutes=31)
        assert service.login(_ctx(), EMAIL, "still-wrong").code == AuthOutcome.INVALID_CREDENTIALS
        assert service.login(_ctx(), EMAIL, PASSWORD).code == AuthOutcome.ACCOUNT_LOCKED

    def test_unknown_email_never_locks_anything(self, service, store, user_id):
        for _ in range(6):
            service.login(_ctx(), "ghost@tlc-consult.com", "x")
        assert store.get_by_id(user_id).login_attempts == 0


class TestRegister:
    def test_creates_active_user(self, service, store):
        result = service.register(_ctx(), _registration(company="Acme"))
        assert result.success is True
        assert result.message == "Registration successful. Please check your email for verification."
        created = store.get_by_email("bea@tlc-consult.com")
        assert created.role == "user"
        assert created.status == "active"
        assert created.company == "Acme"
        assert len(created.verification_token) == 64
        assert verify_password("longenough1", created.hashed_password)
        assert "verification_token" not in result.user

    def test_missing_and_malformed_fields(self, service, store):
        result = service.register(_ctx(), {"first_name": "B", "email": "nope", "password": "short"})
        assert result.code == AuthOutcome.VALIDATION_FAILED
        assert result.errors["first_name"] == ["First name must be at least 2 characters"]
        assert result.errors["last_name"] == ["Last name is required"]
        assert result.errors["email"] == ["Please enter a valid email address"]
        assert result.errors["password"] == ["Password must be at least 8 characters"]
        assert store.list_users() == []

    def test_duplicate_email(self, service, user_id):
        result = service.register(_ctx(), _registration(email=EMAIL))
        assert result.errors == {"email": ["Email already exists"]}

    def test_unique_constraint_backs_up_validator(self, service, store, user_id, monkeypatch):
        monkeypatch.setattr(store, "exists", lambda *args, **kwargs: False)
        result = service.register(_ctx(), _registration(email=EMAIL))
        assert result.code == AuthOutcome.VALIDATION_FAILED
        assert result.errors == {"email": ["Email already exists"]}

    def test_confirmation_checked_when_sent(self, service):
        result = service.register(_ctx(), _registration(password_confirmation="different1"))
        assert result.errors == {"password": ["Password confirmation does not match"]}

    def test_invalid_phone(self, service):
        result = service.register(_ctx(), _registration(phone="0123"))
        assert result.errors == {"phone": ["Please enter a valid phone number"]}

    def test_strong_password_policy(self, store, clock):
        strict = AuthService(store, Settings(debug=True, require_strong_passwords=True), clock=clock)
        weak = strict.register(_ctx(), _registration())
        assert weak.errors["password"] == [
            "Password must contain upper and lower case letters, a number and one of @$!%*?&"
        ]
        assert strict.register(_ctx(), _registration(password="Longenough1!")).success

    def test_registration_does_not_log_in(self, service):
        ctx = _ctx()
        service.register(ctx, _registration())
        assert ctx.state == {}

    def test_register_login_then_lockout(self, service):
        registered = service.register(
            _ctx(), {"first_name": "Ana", "last_name": "Lee", "email": "ana@x.com", "password": "password1"}
        )
        assert registered.success
        assert service.login(_ctx(), "ana@x.com", "password1").success
        for _ in range(5):
            assert service.login(_ctx(), "ana@x.com", "wrong-password").code == AuthOutcome.INVALID_CREDENTIALS
        assert service.login(_ctx(), "ana@x.com", "password1").code == AuthOutcome.ACCOUNT_LOCKED

    @pytest.mark.parametrize("address", ["jos\u00e9@x.com", "ana@b\u00fccher.de"])
    def test_non_ascii_email_is_rejected(self, service, store, address):
        result = service.register(_ctx(), _registration(email=address))
        assert result.errors == {"email": ["Please enter a valid email address"]}
        assert store.list_users() == []

    def test_every_registered_address_can_log_in(self, service):
        email = "first.last+tag@tlc-consult.com"
        assert service.register(_ctx(), _registration(email=email)).success
        assert service.login(_ctx(), email, "longenough1").success


class TestPasswordReset:
    def test_unknown_email_gets_same_answer(self, service, outbox):
        result = service.request_password_reset(_ctx(), "ghost@tlc-consult.com")
        assert result.success is True
        assert result.message == RESET_REQUESTED_MSG
        assert outbox == []

    def test_token_is_sent_and_only_hash_stored(self, service, store, outbox, user_id):
        result = service.request_password_reset(_ctx(), EMAIL)
        assert result.message == RESET_REQUESTED_MSG
        [(email, raw)] = outbox
        assert email == EMAIL
        assert store.get_by_id(user_id).reset_token == hash_token(raw)

    def test_reset_then_reuse(self, service, store, outbox, user_id):
        service.request_password_reset(_ctx(), EMAIL)
        raw = outbox[-1][1]
        result = service.reset_password(_ctx(), raw, "brand-new-pass")
        assert result.success is True
        assert verify_password("brand-new-pass", store.get_by_id(user_id).hashed_password)

        again = service.reset_password(_ctx(), raw, "another-pass1")
        assert again.code == AuthOutcome.INVALID_OR_EXPIRED_TOKEN
        assert again.message == INVALID_RESET_TOKEN_MSG

    def test_expired_token(self, service, clock, outbox, user_id):
        service.request_password_reset(_ctx(), EMAIL)
        clock.advance(hours=1, seconds=1)
        result = service.reset_password(_ctx(), outbox[-1][1], "brand-new-pass")
        assert result.code == AuthOutcome.INVALID_OR_EXPIRED_TOKEN

    def test_short_password_keeps_token(self, service, store, outbox, user_id):
        service.request_password_reset(_ctx(), EMAIL)
        raw = outbox[-1][1]
        result = service.reset_password(_ctx(), raw, "short")
        assert result.code == AuthOutcome.VALIDATION_FAILED
        assert result.errors == {"password": ["Password must be at least 8 characters long."]}
        assert service.reset_password(_ctx(), raw, "long-enough").success

    @pytest.mark.parametrize("token", ["", "f" * 64])
    def test_bad_tokens(self, service, token):
        assert service.reset_password(_ctx(), token, "long-enough").code == AuthOutcome.INVALID_OR_EXPIRED_TOKEN


class TestDashboardOperations:
    @pytest.fixture
    def ctx(self, service, user_id) -> SessionContext:
        ctx = _ctx()
        assert service.login(ctx, EMAIL, PASSWORD).success
        return ctx

    def test_change_password_requires_login(self, service):
        result = service.change_password(_ctx(), PASSWORD, "newpassword", "newpassword")
        assert result.code == AuthOutcome.UNAUTHENTICATED

    @pytest.mark.parametrize(
        "current,new,confirm,message",
        [
            ("", "newpassword", "newpassword", "All password fields are required"),
            (PASSWORD, "newpassword", "newpassw0rd", "New password confirmation does not match"),
            (PASSWORD, "short", "short", "New password must be at least 8 characters long."),
            ("wrong-password", "newpassword", "newpassword", "Current password is incorrect"),
        ],
    )
    def test_change_password_failures(self, service, ctx, current, new, confirm, message):
        result = service.change_password(ctx, current, new, confirm)
        assert result.success is False
        assert result.message == message

    def test_change_password_success(self, service, store, ctx, user_id):
        result = service.change_password(ctx, PASSWORD, "newpassword", "newpassword")
        assert result.message == "Password changed successfully"
        assert verify_password("newpassword", store.get_by_id(user_id).hashed_password)

    def test_update_profile(self, service, store, ctx, user_id):
        result = service.update_profile(ctx, {"company": "Acme <Ltd>", "phone": "", "role": "admin"})
        assert result.message == "Profile updated successfully"
        user = store.get_by_id(user_id)
        assert user.company == "Acme &lt;Ltd&gt;"
        assert user.phone is None
        assert user.role == "user"
        assert ctx.state[USER_KEY]["company"] == "Acme &lt;Ltd&gt;"

    def test_update_profile_checks_length_before_escaping(self, service, store, ctx, user_id):
        name = "O'Brien & Sons & Daughters & Partners Ltd"  # 41 chars, 58 once escaped
        result = service.update_profile(ctx, {"last_name": name})
        assert result.success is True
        assert store.get_by_id(user_id).last_name == "O&#x27;Brien &amp; Sons &amp; Daughters &amp; Partners Ltd"

    def test_update_profile_without_fields(self, service, ctx):
        result = service.update_profile(ctx, {"email": "x@y.com"})
        assert result.message == "No valid fields to update"

    def test_update_profile_validation(self, service, ctx):
        result = service.update_profile(ctx, {"first_name": "A"})
        assert result.message == "Validation failed"
        assert result.errors == {"first_name": ["First name must be at least 2 characters"]}


class TestSessionChecks:
    def test_current_user_for_live_session(self, service, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD)
        assert service.current_user(ctx)["id"] == user_id

    def test_anonymous(self, service):
        assert service.current_user(_ctx()) is None

    def test_expired_session_is_cleared(self, service, store, clock, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD)
        session_id = ctx.state[SESSION_ID_KEY]
        clock.advance(hours=1, seconds=1)
        assert service.current_user(ctx) is None
        assert ctx.state == {}
        assert store.get_session(session_id) is None

    def test_session_of_another_user_is_rejected(self, service, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD)
        ctx.state[USER_KEY] = {**ctx.state[USER_KEY], "id": user_id + 1}
        assert service.current_user(ctx) is None

    def test_deactivated_user_is_logged_out(self, service, store, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD)
        store.set_status(user_id, "inactive")
        assert service.current_user(ctx) is None

    def test_purge_uses_clock(self, service, clock, user_id):
        service.login(_ctx(), EMAIL, PASSWORD)
        assert service.purge_expired_sessions() == 0
        clock.advance(hours=2)
        assert service.purge_expired_sessions() == 1


class TestRememberMe:
    def test_resume_rotates_token(self, service, store, user_id):
        raw = service.login(_ctx(), EMAIL, PASSWORD, remember_me=True).remember_token
        ctx = _ctx(remember_token=raw)
        result = service.resume_session(ctx)
        assert result.success is True
        assert ctx.state[USER_KEY]["id"] == user_id
        assert result.remember_token and result.remember_token != raw
        assert service.resume_session(_ctx(remember_token=raw)).code == AuthOutcome.UNAUTHENTICATED

    def test_resume_refused_for_locked_account(self, service, user_id):
        raw = service.login(_ctx(), EMAIL, PASSWORD, remember_me=True).remember_token
        for _ in range(5):
            service.login(_ctx(), EMAIL, "wrong-password")
        assert service.resume_session(_ctx(remember_token=raw)).success is False

    def test_resume_without_cookie(self, service):
        assert service.resume_session(_ctx()).code == AuthOutcome.UNAUTHENTICATED


class TestLogout:
    def test_logout_clears_everything(self, service, store, user_id):
        ctx = _ctx()
        service.login(ctx, EMAIL, PASSWORD, remember_me=True)
        session_id = ctx.state[SESSION_ID_KEY]
        result = service.logout(ctx)
        assert result.success is True
        assert ctx.state == {}
        assert store.get_session(session_id) is None
        assert store.get_by_id(user_id).remember_token is None
        assert store.recent_activity(user_id)[0].action == "logout"

    def test_logout_when_anonymous_is_noop(self, service):
        assert service.logout(_ctx()).success is True


class TestFailureSemantics:
    def test_store_error_becomes_internal_error(self, clock):
        broken = MagicMock()
        broken.get_by_email.side_effect = RuntimeError("database is down")
        service = AuthService(broken, Settings(debug=True), clock=clock)
        result = service.login(_ctx(), EMAIL, PASSWORD)
        assert result.success is False
        assert result.code == AuthOutcome.INTERNAL_ERROR
        assert "database" not in result.message

    def test_current_user_swallows_store_errors(self, clock):
        broken = MagicMock()
        broken.get_session.side_effect = RuntimeError("database is down")
        service = AuthService(broken, Settings(debug=True), clock=clock)
        ctx = SessionContext(state={USER_KEY: {"id": 1}, SESSION_ID_KEY: "s"})
        assert service.current_user(ctx) is None
