"""
auth/otp.py -- One-time-code dispatcher.

Issues numeric codes for an (email, purpose) pair, persists the challenge and
hands the message to a delivery channel. Verification lives in
auth.verifiers.OneTimeCodeVerifier; this module never checks codes.

Rules:
  - Only one challenge per (email, purpose) exists. Issuing replaces the old
    one, so an earlier code stops working the moment a new one is stored.
  - A new code for a pair whose live challenge is younger than the resend
    cooldown raises RateLimited.
  - email-verification and password-reset codes are only issued for
    registered emails. For unknown emails issue() returns None without error so
    the endpoint does not reveal which addresses have accounts.
  - If delivery fails the fresh challenge is deleted and DeliveryFailure
    propagates; the caller may retry immediately.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.config import AuthConfig
from auth.delivery import DeliveryChannel
from auth.errors import DeliveryFailure, RateLimited
from auth.models import Challenge, ChallengePurpose
from auth.store import CredentialStore, normalize_email, utcnow
from auth.tokens import generate_code, hash_code

logger = logging.getLogger("warden.auth.otp")

_SUBJECTS: dict[ChallengePurpose, str] = {
    ChallengePurpose.sign_in: "Your sign-in code",
    ChallengePurpose.email_verification: "Verify your email address",
    ChallengePurpose.password_reset: "Reset your password",
}


def render_message(code: str, purpose: ChallengePurpose, expiry_seconds: int) -> tuple[str, str]:
    """Return (subject, html body) for a code."""
    minutes = max(1, expiry_seconds // 60)
    body = (
        f"<p>Your verification code is:</p>"
        f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
        f"<p>It expires in {minutes} minute(s) and can be used once. "
        f"If you did not request it, you can ignore this email.</p>"
    )
    return _SUBJECTS[purpose], body


class OneTimeCodeDispatcher:
    def __init__(
        self,
        store: CredentialStore,
        channel: DeliveryChannel,
        config: AuthConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.channel = channel
        self.config = config
        self.clock = clock

    def issue(self, email: str, purpose: ChallengePurpose | str) -> Challenge | None:
        """Create, store and deliver a fresh code. See module docstring for rules."""
        email = normalize_email(email)
        purpose = ChallengePurpose(purpose)
        now = self.clock()

        if purpose is not ChallengePurpose.sign_in and self.store.get_user_by_email(email) is None:
            logger.info("Skipped %s code for unregistered email", purpose.value)
            return None

        self._check_cooldown(email, purpose, now)

        code = generate_code(self.config.otp_length)
        challenge = self.store.replace_challenge(
            Challenge(
                email=email,
                purpose=purpose,
                code_hash=hash_code(code, self.config.secret_key),
                expires_at=now + timedelta(seconds=self.config.otp_expiry_seconds),
                attempts_remaining=self.config.otp_allowed_attempts,
                created_at=now,
            )
        )

        subject, body = render_message(code, purpose, self.config.otp_expiry_seconds)
        try:
            self.channel.send(email, subject, body)
        except DeliveryFailure:
            self.store.delete_challenge(challenge.id)
            raise
        logger.info("Issued %s code to %s", purpose.value, email)
        return challenge

    def _check_cooldown(self, email: str, purpose: ChallengePurpose, now: datetime) -> None:
        cooldown = self.config.otp_resend_cooldown_seconds
        if cooldown <= 0:
            return
        existing = self.store.get_challenge(email, purpose)
        if existing is None or existing.attempts_remaining <= 0 or now >= existing.expires_at:
            return
        ready_at = existing.created_at + timedelta(seconds=cooldown)
        if now < ready_at:
            raise RateLimited(retry_after=math.ceil((ready_at - now).total_seconds()))
