"""
auth/service.py -- AuthService, the single entry point into the identity core.

Composition is explicit: the service is handed a list of credential
verifiers, a SessionManager and an AdminPolicy, and checks at construction
that the combination is usable (no two verifiers claim the same credential
type, a one-time-code verifier comes with a dispatcher). There is no load
order to get wrong.

Flow for every sign-in method:

    credential --verifier--> VerifiedIdentity --_issue()--> IssuedSession

_issue() re-reads the user and refuses banned accounts, so a ban blocks new
sessions through every method, not just existing ones.

AuthService.build() wires the default set (password, one-time code, OAuth)
from an AuthConfig; tests and the API both use it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from auth.admin import AdminOperations
from auth.config import AuthConfig
from auth.delivery import DeliveryChannel
from auth.errors import AuthError, Forbidden, InvalidCredentials
from auth.models import ChallengePurpose, ClientInfo, IssuedSession, Role, SessionContext, VerifiedIdentity
from auth.otp import OneTimeCodeDispatcher
from auth.policy import AdminPolicy
from auth.sessions import SessionManager
from auth.store import CredentialStore, utcnow
from auth.tokens import hash_password
from auth.verifiers import (
    CredentialVerifier,
    OAuthCredential,
    OAuthVerifier,
    OneTimeCodeCredential,
    OneTimeCodeVerifier,
    PasswordCredential,
    PasswordVerifier,
    SignUpCredential,
)

logger = logging.getLogger("warden.auth")


class AuthService:
    def __init__(
        self,
        store: CredentialStore,
        config: AuthConfig,
        verifiers: Iterable[CredentialVerifier],
        sessions: SessionManager,
        policy: AdminPolicy,
        dispatcher: OneTimeCodeDispatcher | None = None,
    ) -> None:
        if sessions is None or policy is None:
            raise ValueError("AuthService requires a SessionManager and an AdminPolicy")
        self.store = store
        self.config = config
        self.sessions = sessions
        self.policy = policy
        self.dispatcher = dispatcher
        self.verifiers: list[CredentialVerifier] = list(verifiers)
        self._by_type: dict[type, CredentialVerifier] = {}

        if not self.verifiers:
            raise ValueError("AuthService requires at least one credential verifier")
        methods = [v.method for v in self.verifiers]
        if len(set(methods)) != len(methods):
            raise ValueError(f"Duplicate verifier methods: {methods}")
        for verifier in self.verifiers:
            for credential_type in verifier.credential_types:
                if credential_type in self._by_type:
                    raise ValueError(f"{credential_type.__name__} is handled by more than one verifier")
                self._by_type[credential_type] = verifier
        if OneTimeCodeCredential in self._by_type and dispatcher is None:
            raise ValueError("A one-time-code verifier needs a OneTimeCodeDispatcher")

        self.admin = AdminOperations(store, sessions, policy, config)

    @classmethod
    def build(
        cls,
        store: CredentialStore,
        config: AuthConfig,
        channel: DeliveryChannel,
        clock: Callable[[], datetime] = utcnow,
        permissions: Mapping | None = None,
    ) -> AuthService:
        """Wire the standard verifiers around one store, config and clock."""
        sessions = SessionManager(store, config, clock)
        return cls(
            store,
            config,
            verifiers=[
                PasswordVerifier(store, config),
                OneTimeCodeVerifier(store, config, clock),
                OAuthVerifier(store),
            ],
            sessions=sessions,
            policy=AdminPolicy(permissions),
            dispatcher=OneTimeCodeDispatcher(store, channel, config, clock),
        )

    # ------------------------------------------------------------------
    # Core dispatch
    # ------------------------------------------------------------------

    def verifier_for(self, credential) -> CredentialVerifier:
        try:
            return self._by_type[type(credential)]
        except KeyError:
            raise ValueError(f"No verifier registered for {type(credential).__name__}") from None

    def authenticate(self, credential, client: ClientInfo | None = None) -> IssuedSession:
        """Verify any supported credential and open a session for its user."""
        identity = self.verifier_for(credential).verify(credential)
        return self._issue(identity, client)

    def _issue(self, identity: VerifiedIdentity, client: ClientInfo | None) -> IssuedSession:
        user = self.store.get_user(identity.user_id)
        if user is None:
            raise InvalidCredentials()
        self.sessions.ensure_not_banned(user)
        session, token = self.sessions.create(user.id, client)
        logger.info("User %s signed in (session %s, new=%s)", user.id, session.id, identity.is_new_user)
        return IssuedSession(token=token, session=session, user=user, is_new_user=identity.is_new_user)

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def sign_up(
        self,
        email: str,
        password: str,
        name: str,
        image: str | None = None,
        client: ClientInfo | None = None,
    ) -> IssuedSession | None:
        """Register with email and password.

        Returns the new session, or None when email verification is required;
        in that case a verification code has been sent instead.
        """
        credential = SignUpCredential(email=email, password=password, name=name, image=image)
        if not self.config.require_email_verification:
            return self.authenticate(credential, client)
        self.verifier_for(credential).verify(credential)
        if self.dispatcher is not None:
            self.dispatcher.issue(email, ChallengePurpose.email_verification)
        return None

    def sign_in_password(self, email: str, password: str, client: ClientInfo | None = None) -> IssuedSession:
        return self.authenticate(PasswordCredential(email=email, password=password), client)

    def send_otp(self, email: str, purpose: ChallengePurpose | str = ChallengePurpose.sign_in) -> None:
        if self.dispatcher is None:
            raise ValueError("One-time codes are not configured")
        self.dispatcher.issue(email, purpose)

    def verify_otp(
        self,
        email: str,
        code: str,
        purpose: ChallengePurpose | str = ChallengePurpose.sign_in,
        client: ClientInfo | None = None,
    ) -> IssuedSession:
        purpose = ChallengePurpose(purpose)
        if purpose is ChallengePurpose.password_reset:
            raise Forbidden("Password reset codes can only be used to set a new password.")
        return self.authenticate(OneTimeCodeCredential(email=email, code=code, purpose=purpose), client)

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        """Consume a password-reset code, store the new password, end all sessions."""
        credential = OneTimeCodeCredential(email=email, code=code, purpose=ChallengePurpose.password_reset)
        identity = self.verifier_for(credential).verify(credential)
        self.store.update_user(identity.user_id, hashed_password=hash_password(new_password))
        revoked = self.sessions.revoke_all(identity.user_id)
        logger.info("Password reset for user %s; %d session(s) revoked", identity.user_id, revoked)

    def oauth_sign_in(self, credential: OAuthCredential, client: ClientInfo | None = None) -> IssuedSession:
        return self.authenticate(credential, client)

    def get_session(self, token: str | None) -> SessionContext:
        return self.sessions.validate(token)

    def sign_out(self, token: str | None) -> bool:
        """Revoke the session behind `token`.

        Works for expired sessions and banned users too: signing out never
        needs the session to still be authorized.
        """
        session = self.sessions.lookup(token)
        if session is None:
            return False
        return self.sessions.revoke(session.id)

    # ------------------------------------------------------------------
    # Authorization checks by token
    # ------------------------------------------------------------------

    def has_role(self, token: str | None, minimum: Role | str) -> bool:
        try:
            ctx = self.sessions.validate(token)
        except AuthError:
            return False
        return self.policy.has_role(ctx, minimum)

    def check_permission(self, token: str | None, resource: str, action: str) -> bool:
        try:
            ctx = self.sessions.validate(token)
        except AuthError:
            return False
        return self.policy.check_permission(ctx, resource, action)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        counts = self.store.purge_expired(self.sessions.clock())
        logger.info("Purged %d session(s) and %d challenge(s)", counts["sessions"], counts["challenges"])
        return counts
