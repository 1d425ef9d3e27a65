"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TLC Portal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. max_login_attempts -> MAX_LOGIN_ATTEMPTS).

  @model_validator(mode="after"): cross-field checks run once all fields are
      resolved -- SECRET_KEY policy and lockout/session sanity.

Security notes:
  SECRET_KEY signs the session cookie and keys the HMAC used for remember-me
  and password-reset token hashes. Shorter than 32 chars is rejected. Outside
  DEBUG mode a missing key is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or leads/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tlcportal.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///tlcportal.db"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Browser requests that fail require_login are redirected here.
    login_url: str = "/login"

    # ------------------------------------------------------------------
    # Auth / session lifecycle
    # ------------------------------------------------------------------

    password_min_length: int = 8
    # When true, new passwords must also pass validate_strong_password().
    require_strong_passwords: bool = False
    max_login_attempts: int = 5
    lockout_duration: int = 1800  # seconds
    session_lifetime: int = 3600  # seconds
    remember_me_lifetime: int = 30 * 24 * 60 * 60  # seconds
    reset_token_lifetime: int = 3600  # seconds
    session_purge_interval: int = 3600  # seconds between expired-session sweeps

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    contact_cooldown_seconds: int = 300

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    max_file_size: int = 5 * 1024 * 1024
    allowed_image_types: list[str] = ["jpg", "jpeg", "png", "gif", "webp"]
    allowed_document_types: list[str] = ["pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"]
    max_image_dimension: int = 5000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and outstanding reset links will not survive a restart.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_lockout_policy(self) -> "Settings":
        """A zero attempt budget would lock every account on its first failure."""
        if self.max_login_attempts < 1:
            raise ValueError("MAX_LOGIN_ATTEMPTS must be at least 1.")
        if self.password_min_length < 1:
            raise ValueError("PASSWORD_MIN_LENGTH must be at least 1.")
        for name in ("lockout_duration", "session_lifetime", "reset_token_lifetime"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        return self

    @property
    def allowed_upload_types(self) -> list[str]:
        """Extensions accepted by the generic file rule (images + documents)."""
        return [*self.allowed_image_types, *self.allowed_document_types]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
