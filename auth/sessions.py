"""
auth/sessions.py -- Session issue, validation and revocation.

State machine per session row:

    absent --create()--> active --(time)--> expired
                           |
                           +--revoke()/revoke_all()--> revoked

Every validate() re-derives the state from scratch: signature, row present,
not revoked, not expired, owner still exists, owner not banned, and for an
impersonation session the admin behind it still an unbanned admin. Nothing about
the owner is cached on the row, so role changes and bans apply on the very next
request without touching the session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.config import AuthConfig
from auth.errors import InvalidCredentials, SessionExpired, SessionRevoked, UserBanned
from auth.models import ClientInfo, Role, Session, SessionContext, User
from auth.policy import is_banned, role_rank
from auth.store import CredentialStore, utcnow
from auth.tokens import create_session_token, decode_session_token

logger = logging.getLogger("warden.auth.sessions")


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        config: AuthConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        client: ClientInfo | None = None,
        impersonated_by: str | None = None,
        ttl_seconds: int | None = None,
    ) -> tuple[Session, str]:
        """Insert a session row and return it with its signed token."""
        now = self.clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.config.session_ttl_seconds
        client = client or ClientInfo()
        session = self.store.create_session(
            Session(
                user_id=user_id,
                expires_at=now + timedelta(seconds=ttl),
                created_at=now,
                updated_at=now,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                impersonated_by=impersonated_by,
            )
        )
        token = create_session_token(session.id, user_id, now, self.config.secret_key)
        logger.debug("Session %s created for user %s (ttl=%ds)", session.id, user_id, ttl)
        return session, token

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str | None) -> SessionContext:
        """Resolve a token to a live session and its current user record.

        Raises InvalidCredentials (no/garbled token), SessionRevoked,
        SessionExpired or UserBanned.
        """
        payload = decode_session_token(token, self.config.secret_key) if token else None
        if payload is None:
            raise InvalidCredentials("Authentication required.")

        session = self.store.get_session(payload["sid"])
        if session is None or session.user_id != payload["sub"] or session.revoked_at is not None:
            raise SessionRevoked()

        now = self.clock()
        if now >= session.expires_at:
            raise SessionExpired()

        user = self.store.get_user(session.user_id)
        if user is None:
            raise SessionRevoked()
        self.ensure_not_banned(user, now)
        if session.impersonated_by is not None:
            self._ensure_impersonator(session.impersonated_by, now)

        self._maybe_slide(session, now)
        return SessionContext(session=session, user=user)

    def ensure_not_banned(self, user: User, now: datetime | None = None) -> None:
        if is_banned(user, now or self.clock()):
            raise UserBanned(user.ban_reason, user.ban_expires, message=self.config.banned_user_message)

    def _ensure_impersonator(self, admin_id: str, now: datetime) -> None:
        # The session borrows the admin's authority; it ends when that does.
        admin = self.store.get_user(admin_id)
        if admin is None or is_banned(admin, now) or role_rank(admin.role) < role_rank(Role.admin):
            raise SessionRevoked()

    def _maybe_slide(self, session: Session, now: datetime) -> None:
        update_age = self.config.session_update_age_seconds
        if update_age <= 0 or session.impersonated_by is not None:
            return
        last = session.updated_at or session.created_at or now
        if now - last < timedelta(seconds=update_age):
            return
        new_expiry = now + timedelta(seconds=self.config.session_ttl_seconds)
        if self.store.extend_session(session.id, new_expiry, now):
            session.expires_at = new_expiry
            session.updated_at = now

    # ------------------------------------------------------------------
    # Revoke / list
    # ------------------------------------------------------------------

    def is_active(self, session: Session, now: datetime | None = None) -> bool:
        return session.revoked_at is None and (now or self.clock()) < session.expires_at

    def get(self, session_id: str) -> Session | None:
        return self.store.get_session(session_id)

    def lookup(self, token: str | None) -> Session | None:
        """Return the row a correctly signed token points at, valid or not."""
        payload = decode_session_token(token, self.config.secret_key) if token else None
        if payload is None:
            return None
        session = self.store.get_session(payload["sid"])
        if session is None or session.user_id != payload["sub"]:
            return None
        return session

    def list_active(self, user_id: str) -> list[Session]:
        now = self.clock()
        return [s for s in self.store.list_sessions(user_id) if self.is_active(s, now)]

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, self.clock())
        if revoked:
            logger.debug("Session %s revoked", session_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id, self.clock())
        logger.debug("Revoked %d session(s) for user %s", count, user_id)
        return count
