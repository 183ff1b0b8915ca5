"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, verifiers and
the session manager do the work; these types only carry shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Account roles, lowest privilege first. Ordering lives in auth.policy."""

    user = "user"
    admin = "admin"
    super_admin = "super-admin"


class ChallengePurpose(str, Enum):
    sign_in = "sign-in"
    email_verification = "email-verification"
    password_reset = "password-reset"


@dataclass
class User:
    """A registered identity.

    email is stored lower-cased and is unique across the users table.
    hashed_password is None for accounts created through OAuth or a one-time
    code; such users can only sign in through those methods until they set a
    password via the reset flow.

    ban_expires None with banned=True means a permanent ban. An expired ban
    leaves banned=True in the row for audit; auth.policy.is_banned() decides.
    """

    email: str
    name: str
    role: Role = Role.user
    id: str | None = None
    image: str | None = None
    email_verified: bool = False
    hashed_password: str | None = None
    banned: bool = False
    ban_reason: str | None = None
    ban_expires: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """A time-bounded proof of authentication owned by exactly one user.

    impersonated_by is the admin user id when the session was minted through
    impersonation. revoked_at is set the moment a session is signed out or
    revoked; a revoked row is dead even if expires_at is still in the future.
    """

    user_id: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    impersonated_by: str | None = None
    revoked_at: datetime | None = None


@dataclass
class LinkedAccount:
    """A third-party identity bound to a user.

    (provider, provider_account_id) is unique: one provider identity maps to
    at most one user. Tokens are refreshed on every successful OAuth login.
    """

    user_id: str
    provider: str  # "google", "github"
    provider_account_id: str  # provider's stable subject id
    id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    access_token_expires_at: datetime | None = None
    scope: str | None = None
    created_at: datetime | None = None


@dataclass
class Challenge:
    """An ephemeral one-time-code record for an (email, purpose) pair.

    code_hash is HMAC-SHA256(secret_key, code); the raw code is never stored.
    """

    email: str
    purpose: ChallengePurpose
    code_hash: str
    expires_at: datetime
    attempts_remaining: int
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ClientInfo:
    """Transport metadata captured when a session is created."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class VerifiedIdentity:
    """Common result of every credential verifier."""

    user_id: str
    is_new_user: bool = False


@dataclass(frozen=True)
class OAuthProfile:
    """Provider claims normalised across Google and GitHub."""

    provider: str
    subject: str
    email: str
    email_verified: bool
    name: str = ""
    image: str | None = None


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None


@dataclass
class SessionContext:
    """A validated session together with the live owning user record.

    Built fresh on every read by the session manager, so role and ban state
    always reflect the users table at the moment of the request.
    """

    session: Session
    user: User

    @property
    def is_impersonation(self) -> bool:
        return self.session.impersonated_by is not None


@dataclass
class IssuedSession:
    """What a successful sign-in hands back to the transport layer."""

    token: str
    session: Session
    user: User
    is_new_user: bool = False
