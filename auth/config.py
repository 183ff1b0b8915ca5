"""
auth/config.py -- Explicit configuration for the identity core.

AuthConfig is built once at the edge (API lifespan, CLI) and passed to every
constructor that needs it. Nothing under auth/ reads the environment or the
Settings singleton while handling a request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from core.config import Settings


@dataclass(frozen=True)
class AuthConfig:
    secret_key: str
    session_ttl_seconds: int = 7 * 24 * 3600
    session_update_age_seconds: int = 24 * 3600
    impersonation_ttl_seconds: int = 3600
    otp_length: int = 6
    otp_expiry_seconds: int = 300
    otp_allowed_attempts: int = 3
    otp_resend_cooldown_seconds: int = 60
    require_email_verification: bool = False
    default_ban_reason: str = "Violated terms of service"
    banned_user_message: str = "Your account has been suspended. Please contact support."

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthConfig:
        return cls(
            secret_key=settings.secret_key,
            session_ttl_seconds=settings.session_ttl_seconds,
            session_update_age_seconds=settings.session_update_age_seconds,
            impersonation_ttl_seconds=settings.impersonation_ttl_seconds,
            otp_length=settings.otp_length,
            otp_expiry_seconds=settings.otp_expiry_seconds,
            otp_allowed_attempts=settings.otp_allowed_attempts,
            otp_resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
            require_email_verification=settings.require_email_verification,
            default_ban_reason=settings.default_ban_reason,
            banned_user_message=settings.banned_user_message,
        )
