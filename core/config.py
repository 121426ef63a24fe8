"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SimpleAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_cookie_name -> SESSION_COOKIE_NAME). Type coercion and
      validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. DEBUG mode generates a SECRET_KEY with a
      warning; production mode refuses to start without one.

Security notes:
  SECRET_KEY signs the flash-message cookie. Keys shorter than 32 chars are
  rejected outright. Session tokens themselves are random bearer values looked
  up in the database, so they do not depend on SECRET_KEY.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("simpleauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'simpleauth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    database_url: str = _DEFAULT_DB_URL
    # Master switch. When false the interceptor passes every request through
    # without resuming sessions or checking access rules.
    enabled: bool = True

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    session_cookie_name: str = "session_token"
    session_cookie_path: str = "/"
    session_max_age: int = 30 * 24 * 60 * 60  # 30 days
    session_http_only: bool = True
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    # bcrypt cost factor. Tests lower this to 4 to keep the suite fast.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    password_reset_enabled: bool = True
    reset_token_expiry: int = 900  # seconds
    cleanup_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    login_url: str = "/session/new"
    logout_url: str = "/session/destroy"
    home_url: str = "/"
    # Ant-style patterns: "*" matches one path segment, "**" any number.
    excluded_patterns: list[str] = [
        "/session/new",
        "/session",
        "/passwords/**",
        "/static/**",
        "/api/v1/health",
    ]
    # Absolute base URL used to build links in outbound email.
    app_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    mail_enabled: bool = True
    mail_from: str = "noreply@example.com"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        """bcrypt accepts cost factors 4..31."""
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @field_validator("reset_token_expiry", "session_max_age", "cleanup_interval_seconds")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Durations must be positive numbers of seconds.")
        return value

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Flash messages in flight are lost on restart -- acceptable locally.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Signed cookies will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need a one-off configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
