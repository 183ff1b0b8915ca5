"""
auth/errors.py -- The error taxonomy of the identity core.

Every failure that leaves auth/ is one of these classes. The API layer renders
them through a single exception handler (api/main.py) into the standard error
envelope, so route handlers never build auth error responses by hand.

Authentication failures share one generic message on purpose: the caller must
not learn whether the email or the password was wrong [C1]. Ban and forbidden
errors carry specific, user-readable detail.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class. Subclasses set code, status_code and a default message."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class NoActiveChallenge(AuthError):
    code = "no_active_challenge"
    status_code = 400
    message = "No active verification code. Request a new one."


class CodeMismatch(AuthError):
    code = "code_mismatch"
    status_code = 400
    message = "Invalid verification code."

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(detail=f"{attempts_remaining} attempt(s) remaining")
        self.attempts_remaining = attempts_remaining


class AttemptsExhausted(AuthError):
    code = "attempts_exhausted"
    status_code = 400
    message = "Too many failed attempts. Request a new code."


class SessionExpired(AuthError):
    code = "session_expired"
    status_code = 401
    message = "Session expired. Please sign in again."


class SessionRevoked(AuthError):
    code = "session_revoked"
    status_code = 401
    message = "Session is no longer valid. Please sign in again."


class UserBanned(AuthError):
    """Raised for any request backed by a currently banned account.

    reason and expires_at are surfaced to the user; expires_at None means the
    ban is permanent.
    """

    code = "user_banned"
    status_code = 403
    message = "Your account has been suspended. Please contact support."

    def __init__(self, reason: str | None, expires_at: datetime | None = None, message: str | None = None) -> None:
        until = expires_at.isoformat() if expires_at else "permanent"
        super().__init__(message, detail=f"reason: {reason or 'unspecified'}; until: {until}")
        self.reason = reason
        self.expires_at = expires_at


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "You do not have permission to perform this action."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Not found."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "A record with that identity already exists."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many requests."

    def __init__(self, retry_after: int) -> None:
        super().__init__(detail=f"retry after {retry_after}s")
        self.retry_after = retry_after


class DeliveryFailure(AuthError):
    code = "delivery_failed"
    status_code = 502
    message = "Could not deliver the verification email. Please try again."


class UpstreamProviderError(AuthError):
    code = "oauth_failed"
    status_code = 502
    message = "Sign-in with the identity provider failed. Please try again."
