"""Unit tests for one-time-code issue and verification.

Covers:
- sign-in code creates a verified user on first use, reuses it afterwards
- three wrong codes exhaust the challenge; a fourth try fails even when correct
- wrong code reports the attempts left
- a second code for the same (email, purpose) invalidates the first
- resend inside the cooldown -> RateLimited with retry_after
- expired code -> NoActiveChallenge; codes are single use
- delivery failure leaves no usable challenge and can be retried at once
- email-verification / password-reset codes are never issued for unknown emails
- password reset sets the new password and revokes every session
- password-reset codes cannot be spent on sign-in and vice versa
"""

import pytest

from auth.errors import (
    AttemptsExhausted,
    CodeMismatch,
    DeliveryFailure,
    Forbidden,
    InvalidCredentials,
    NoActiveChallenge,
    RateLimited,
    SessionRevoked,
)
from auth.models import ChallengePurpose
from auth.service import AuthService


def _wrong(code: str) -> str:
    """Return a code of the same length that is guaranteed not to match."""
    return "".join("1" if c != "1" else "2" for c in code)


class TestSignInCodes:
    def test_first_code_registers_verified_user(self, service: AuthService, channel) -> None:
        service.send_otp("new@example.com")
        code = channel.last_code("new@example.com")
        assert len(code) == 6

        issued = service.verify_otp("new@example.com", code)
        assert issued.is_new_user is True
        assert issued.user.email_verified is True
        assert issued.user.hashed_password is None

    def test_returning_user_is_resolved(self, service: AuthService, channel, clock) -> None:
        service.sign_up("a@example.com", "pw123456", "A")
        service.send_otp("a@example.com")
        issued = service.verify_otp("a@example.com", channel.last_code("a@example.com"))
        assert issued.is_new_user is False
        assert issued.user.email_verified is True

    def test_code_is_single_use(self, service: AuthService, channel) -> None:
        service.send_otp("a@example.com")
        code = channel.last_code("a@example.com")
        service.verify_otp("a@example.com", code)
        with pytest.raises(NoActiveChallenge):
            service.verify_otp("a@example.com", code)

    def test_no_challenge(self, service: AuthService) -> None:
        with pytest.raises(NoActiveChallenge):
            service.verify_otp("a@example.com", "123456")


class TestAttempts:
    def test_wrong_code_reports_remaining(self, service: AuthService, channel) -> None:
        service.send_otp("a@example.com")
        code = channel.last_code("a@example.com")
        with pytest.raises(CodeMismatch) as exc:
            service.verify_otp("a@example.com", _wrong(code))
        assert exc.value.attempts_remaining == 2

    def test_three_wrong_codes_exhaust_the_challenge(self, service: AuthService, channel) -> None:
        """Third failure is AttemptsExhausted; a fourth try with the right code still fails."""
        service.send_otp("a@example.com")
        code = channel.last_code("a@example.com")

        with pytest.raises(CodeMismatch):
            service.verify_otp("a@example.com", _wrong(code))
        with pytest.raises(CodeMismatch):
            service.verify_otp("a@example.com", _wrong(code))
        with pytest.raises(AttemptsExhausted):
            service.verify_otp("a@example.com", _wrong(code))
        with pytest.raises(AttemptsExhausted):
            service.verify_otp("a@example.com", code)

    def test_new_code_after_exhaustion_works(self, service: AuthService, channel) -> None:
        service.send_otp("a@example.com")
        code = channel.last_code("a@example.com")
        for _ in range(3):
            with pytest.raises((CodeMismatch, AttemptsExhausted)):
                service.verify_otp("a@example.com", _wrong(code))

        # Exhausted challenges do not hold the resend cooldown.
        service.send_otp("a@example.com")
        assert service.verify_otp("a@example.com", channel.last_code("a@example.com")).user.email == "a@example.com"


class TestReissue:
    def test_second_code_invalidates_first(self, service: AuthService, channel, clock) -> None:
        service.send_otp("a@example.com")
        first = channel.last_code("a@example.com")
        clock.advance(seconds=61)
        service.send_otp("a@example.com")
        second = channel.last_code("a@example.com")

        if first != second:
            with pytest.raises(CodeMismatch):
                service.verify_otp("a@example.com", first)
        assert service.verify_otp("a@example.com", second).user.email == "a@example.com"

    def test_resend_inside_cooldown_is_rate_limited(self, service: AuthService, channel, clock) -> None:
        service.send_otp("a@example.com")
        clock.advance(seconds=20)
        with pytest.raises(RateLimited) as exc:
            service.send_otp("a@example.com")
        assert exc.value.retry_after == 40
        assert len(channel.messages) == 1

    def test_cooldown_is_per_purpose(self, service: AuthService, channel) -> None:
        service.sign_up("a@example.com", "pw123456", "A")
        service.send_otp("a@example.com", ChallengePurpose.sign_in)
        service.send_otp("a@example.com", ChallengePurpose.password_reset)
        assert len(channel.messages) == 2

    def test_expired_code_is_rejected(self, service: AuthService, channel, clock) -> None:
        service.send_otp("a@example.com")
        code = channel.last_code("a@example.com")
        clock.advance(seconds=301)
        with pytest.raises(NoActiveChallenge):
            service.verify_otp("a@example.com", code)


class TestDelivery:
    def test_failed_delivery_leaves_no_challenge(self, service: AuthService, channel) -> None:
        channel.fail = True
        with pytest.raises(DeliveryFailure):
            service.send_otp("a@example.com")
        assert service.store.get_challenge("a@example.com", ChallengePurpose.sign_in) is None

        # Retry is allowed straight away; the failed attempt holds no cooldown.
        channel.fail = False
        service.send_otp("a@example.com")
        assert len(channel.messages) == 1

    def test_unknown_email_gets_no_verification_or_reset_code(self, service: AuthService, channel) -> None:
        service.send_otp("ghost@example.com", ChallengePurpose.email_verification)
        service.send_otp("ghost@example.com", ChallengePurpose.password_reset)
        assert channel.messages == []
        assert service.store.get_user_by_email("ghost@example.com") is None


class TestPasswordReset:
    def test_reset_sets_password_and_revokes_sessions(self, service: AuthService, channel) -> None:
        old = service.sign_up("a@example.com", "pw123456", "A")
        service.send_otp("a@example.com", ChallengePurpose.password_reset)

        service.reset_password("a@example.com", channel.last_code("a@example.com"), "new-password-1")

        with pytest.raises(SessionRevoked):
            service.get_session(old.token)
        with pytest.raises(InvalidCredentials):
            service.sign_in_password("a@example.com", "pw123456")
        assert service.sign_in_password("a@example.com", "new-password-1").user.id == old.user.id

    def test_reset_code_cannot_sign_in(self, service: AuthService, channel) -> None:
        service.sign_up("a@example.com", "pw123456", "A")
        service.send_otp("a@example.com", ChallengePurpose.password_reset)
        code = channel.last_code("a@example.com")

        with pytest.raises(Forbidden):
            service.verify_otp("a@example.com", code, ChallengePurpose.password_reset)
        with pytest.raises(NoActiveChallenge):
            service.verify_otp("a@example.com", code, ChallengePurpose.sign_in)

    def test_sign_in_code_cannot_reset_password(self, service: AuthService, channel) -> None:
        service.sign_up("a@example.com", "pw123456", "A")
        service.send_otp("a@example.com", ChallengePurpose.sign_in)
        with pytest.raises(NoActiveChallenge):
            service.reset_password("a@example.com", channel.last_code("a@example.com"), "new-password-1")
