"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Warden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

The auth core never imports this module's singleton from business logic. The
API lifespan and the CLI call get_settings() once and hand an explicit
auth.config.AuthConfig to the service constructors, so tests can build
isolated instances without touching the environment.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC over one-time codes both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       session and every outstanding code on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("warden.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Field names map to upper-cased
    environment variables (session_ttl_seconds -> SESSION_TTL_SECONDS).
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
    # Public address of this service; OAuth callback URLs are built from it.
    base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_seconds: int = 7 * 24 * 3600
    # Sliding refresh threshold. 0 keeps every session on a fixed expiry.
    session_update_age_seconds: int = 24 * 3600
    impersonation_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Accounts and moderation
    # ------------------------------------------------------------------

    require_email_verification: bool = False
    default_ban_reason: str = "Violated terms of service"
    banned_user_message: str = "Your account has been suspended. Please contact support."

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_expiry_seconds: int = 300
    otp_allowed_attempts: int = 3
    otp_resend_cooldown_seconds: int = 60

    # ------------------------------------------------------------------
    # Email delivery (HTTP email API). Empty key = log-only dev channel.
    # ------------------------------------------------------------------

    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from: str = "Warden <no-reply@localhost>"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
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
    def validate_otp_policy(self) -> "Settings":
        """Reject one-time-code policies that cannot be satisfied."""
        if not 4 <= self.otp_length <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10 digits.")
        if self.otp_allowed_attempts < 1:
            raise ValueError("OTP_ALLOWED_ATTEMPTS must be at least 1.")
        if self.otp_expiry_seconds < 1:
            raise ValueError("OTP_EXPIRY_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
