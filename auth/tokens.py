"""
auth/tokens.py -- Password hashing, random token and cookie utilities.

Security design decisions:
  Passwords: bcrypt, used directly. Its cost factor makes brute-force
       expensive for low-entropy secrets. _DUMMY_HASH enables timing
       equalization in AuthService.login() so response time does not reveal
       whether an email is registered.

  Random tokens: secrets.token_hex. Session ids carry 512 bits, remember-me,
       reset and verification tokens 256 bits.

  Stored token hashes: remember-me and reset tokens are persisted as
       HMAC-SHA256(SECRET_KEY, raw). Deterministic, so the store can look a
       token up by hash in O(1); high-entropy inputs make bcrypt's slowness
       unnecessary. A stolen database alone does not yield usable tokens.

Layer rule: no imports from api/ or leads/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

import bcrypt

from core.config import get_settings

logger = logging.getLogger("tlcportal.auth")

_settings = get_settings()

REMEMBER_COOKIE = "remember_token"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes and bcrypt 5 raises on longer input,
    so the encoded password is cut to 72 bytes here and in verify_password().
    """
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a password bcrypt refuses outright.
        return False


# Computed once at module load so the first unknown-email login is not
# measurably slower than later ones.
_DUMMY_HASH: str = hash_password("tlcportal_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on a throwaway hash (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Random tokens
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    """128 hex chars (64 random bytes) -- primary key of user_sessions."""
    return secrets.token_hex(64)


def generate_token() -> str:
    """64 hex chars (32 random bytes) for remember-me, reset and verification tokens."""
    return secrets.token_hex(32)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_remember_cookie(response, token: str) -> None:
    """Write the raw remember-me token as an httpOnly cookie.

    httponly=True keeps it away from page script; samesite="lax" keeps it off
    cross-site POSTs; secure follows SECURE_COOKIES.
    """
    response.set_cookie(
        REMEMBER_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.remember_me_lifetime,
        path="/",
    )


def clear_remember_cookie(response) -> None:
    response.delete_cookie(REMEMBER_COOKIE, path="/")
