"""
auth/verifiers.py -- Credential verifiers.

Each verifier turns one kind of raw credential into a VerifiedIdentity
(user_id, is_new_user) or raises an error from auth.errors. They share one
interface so AuthService can hold any combination of them and dispatch on the
credential's type:

  PasswordVerifier        PasswordCredential, SignUpCredential
  OneTimeCodeVerifier     OneTimeCodeCredential
  OAuthVerifier           OAuthCredential

Verifiers never create sessions and never look at ban state; AuthService does
both after a successful verification.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from auth.config import AuthConfig
from auth.errors import (
    AttemptsExhausted,
    CodeMismatch,
    Conflict,
    Forbidden,
    InvalidCredentials,
    NoActiveChallenge,
)
from auth.models import (
    ChallengePurpose,
    LinkedAccount,
    OAuthProfile,
    OAuthTokens,
    Role,
    User,
    VerifiedIdentity,
)
from auth.store import CredentialStore, normalize_email, utcnow
from auth.tokens import burn_password_check, code_matches, hash_password, verify_password

logger = logging.getLogger("warden.auth")

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordCredential:
    email: str
    password: str


@dataclass(frozen=True)
class SignUpCredential:
    email: str
    password: str
    name: str
    image: str | None = None


@dataclass(frozen=True)
class OneTimeCodeCredential:
    email: str
    code: str
    purpose: ChallengePurpose = ChallengePurpose.sign_in


@dataclass(frozen=True)
class OAuthCredential:
    profile: OAuthProfile
    tokens: OAuthTokens


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class CredentialVerifier(ABC):
    method: str = ""
    credential_types: tuple[type, ...] = ()

    @abstractmethod
    def verify(self, credential) -> VerifiedIdentity:
        """Verify `credential` and resolve it to a user, creating one if allowed."""


# ---------------------------------------------------------------------------
# Email + password
# ---------------------------------------------------------------------------


class PasswordVerifier(CredentialVerifier):
    """Email/password sign-in and sign-up.

    Sign-in failures are indistinguishable: unknown email, OAuth-only account
    and wrong password all raise the same InvalidCredentials after one bcrypt
    check each [C1].
    """

    method = "password"
    credential_types = (PasswordCredential, SignUpCredential)

    def __init__(self, store: CredentialStore, config: AuthConfig) -> None:
        self.store = store
        self.config = config

    def verify(self, credential: PasswordCredential | SignUpCredential) -> VerifiedIdentity:
        if isinstance(credential, SignUpCredential):
            return self._sign_up(credential)
        return self._sign_in(credential)

    def _sign_in(self, credential: PasswordCredential) -> VerifiedIdentity:
        user = self.store.get_user_by_email(credential.email)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            burn_password_check(credential.password)
            logger.info("Password sign-in failed")
            raise InvalidCredentials()
        if not verify_password(credential.password, user.hashed_password):
            logger.info("Password sign-in failed")
            raise InvalidCredentials()
        if self.config.require_email_verification and not user.email_verified:
            raise Forbidden("Email not verified. Check your inbox for a verification code.")
        return VerifiedIdentity(user_id=user.id)

    def _sign_up(self, credential: SignUpCredential) -> VerifiedIdentity:
        user = self.store.create_user(
            User(
                email=credential.email,
                name=credential.name,
                image=credential.image,
                role=Role.user,
                hashed_password=hash_password(credential.password),
            )
        )
        logger.info("User %s registered with password", user.id)
        return VerifiedIdentity(user_id=user.id, is_new_user=True)


# ---------------------------------------------------------------------------
# One-time code
# ---------------------------------------------------------------------------


class OneTimeCodeVerifier(CredentialVerifier):
    """Checks a submitted code against the live challenge for (email, purpose).

    Outcomes:
      no challenge / expired       -> NoActiveChallenge
      attempts already at zero     -> AttemptsExhausted
      wrong code                   -> one attempt spent; CodeMismatch, or
                                      AttemptsExhausted if that was the last
      right code                   -> challenge consumed, user resolved

    Resolution by purpose:
      sign-in             existing user (email marked verified) or a new one
      email-verification  existing user, email_verified set
      password-reset      existing user only; the caller sets the password
    """

    method = "one-time-code"
    credential_types = (OneTimeCodeCredential,)

    def __init__(
        self,
        store: CredentialStore,
        config: AuthConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    def verify(self, credential: OneTimeCodeCredential) -> VerifiedIdentity:
        email = normalize_email(credential.email)
        purpose = ChallengePurpose(credential.purpose)

        challenge = self.store.get_challenge(email, purpose)
        if challenge is None:
            raise NoActiveChallenge()
        if self.clock() >= challenge.expires_at:
            self.store.delete_challenge(challenge.id)
            raise NoActiveChallenge()
        if challenge.attempts_remaining <= 0:
            raise AttemptsExhausted()

        if not code_matches(credential.code.strip(), challenge.code_hash, self.config.secret_key):
            remaining = self.store.decrement_attempts(challenge.id)
            if not remaining:
                logger.info("Challenge for %s (%s) exhausted", email, purpose.value)
                raise AttemptsExhausted()
            raise CodeMismatch(attempts_remaining=remaining)

        if not self.store.consume_challenge(challenge.id):
            # A concurrent request consumed or exhausted it first.
            raise NoActiveChallenge()
        return self._resolve(email, purpose)

    def _resolve(self, email: str, purpose: ChallengePurpose) -> VerifiedIdentity:
        user = self.store.get_user_by_email(email)
        if purpose is not ChallengePurpose.sign_in:
            if user is None:
                # Deleted between issue and verify.
                raise NoActiveChallenge()
            if purpose is ChallengePurpose.email_verification and not user.email_verified:
                self.store.update_user(user.id, email_verified=True)
            return VerifiedIdentity(user_id=user.id)

        if user is not None:
            if not user.email_verified:
                self.store.update_user(user.id, email_verified=True)
            return VerifiedIdentity(user_id=user.id)

        try:
            user = self.store.create_user(User(email=email, name="", email_verified=True))
        except Conflict:
            # Concurrent first sign-in for the same email created the row.
            user = self.store.get_user_by_email(email)
            if user is None:
                raise
            return VerifiedIdentity(user_id=user.id)
        logger.info("User %s registered with one-time code", user.id)
        return VerifiedIdentity(user_id=user.id, is_new_user=True)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthVerifier(CredentialVerifier):
    """Resolves provider claims to a user.

    Order: linked account (provider, subject) -> existing user with the same
    email, only when the provider vouches for the email -> new user plus new
    linked account. Repeated logins with the same provider identity always
    land on the same user and never add a second linked account.

    The token exchange itself happens in auth.oauth; this class only sees the
    normalised OAuthProfile and OAuthTokens.
    """

    method = "oauth"
    credential_types = (OAuthCredential,)

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def verify(self, credential: OAuthCredential) -> VerifiedIdentity:
        try:
            return self._resolve(credential.profile, credential.tokens)
        except Conflict:
            # Lost a race with a concurrent first login for the same identity;
            # the winner's rows are visible now.
            return self._resolve(credential.profile, credential.tokens)

    def _resolve(self, profile: OAuthProfile, tokens: OAuthTokens) -> VerifiedIdentity:
        account = self.store.get_account(profile.provider, profile.subject)
        if account is not None:
            self.store.update_account_tokens(
                account.id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                id_token=tokens.id_token,
                access_token_expires_at=tokens.expires_at,
                scope=tokens.scope,
            )
            return VerifiedIdentity(user_id=account.user_id)

        user = self.store.get_user_by_email(profile.email)
        if user is not None:
            if not profile.email_verified:
                raise Conflict(
                    "An account with this email already exists. "
                    "Sign in with your existing method to link this provider."
                )
            self._link(user.id, profile, tokens)
            if not user.email_verified:
                self.store.update_user(user.id, email_verified=True)
            logger.info("Linked %s account to existing user %s", profile.provider, user.id)
            return VerifiedIdentity(user_id=user.id)

        user = self.store.create_user(
            User(
                email=profile.email,
                name=profile.name,
                image=profile.image,
                email_verified=profile.email_verified,
            )
        )
        self._link(user.id, profile, tokens)
        logger.info("User %s registered with %s", user.id, profile.provider)
        return VerifiedIdentity(user_id=user.id, is_new_user=True)

    def _link(self, user_id: str, profile: OAuthProfile, tokens: OAuthTokens) -> None:
        self.store.create_account(
            LinkedAccount(
                user_id=user_id,
                provider=profile.provider,
                provider_account_id=profile.subject,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                id_token=tokens.id_token,
                access_token_expires_at=tokens.expires_at,
                scope=tokens.scope,
            )
        )
