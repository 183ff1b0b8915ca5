"""
auth/admin.py -- Administrative operations on other users' accounts and sessions.

Every method takes the caller's SessionContext (already validated by the
session manager) and authorizes it before touching the store:

  1. The caller must not be inside an impersonation session.
  2. Coarse gate: role >= admin.
  3. Fine gate: the caller's role holds the (resource, action) statement.
  4. Target rules: a caller may not act on a user whose role outranks its
     own, may not grant a role above its own, and may not ban, remove or
     re-role itself.

Side effects on live sessions are deliberately lazy for role and ban changes:
nothing is revoked, the session manager re-reads the user on the next request.
Revocation and removal take effect immediately in the store.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.config import AuthConfig
from auth.errors import Forbidden, NotFound
from auth.models import ClientInfo, Role, Session, SessionContext, User
from auth.policy import AdminPolicy, is_banned, outranks
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import hash_password

logger = logging.getLogger("warden.auth.admin")


class AdminOperations:
    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        policy: AdminPolicy,
        config: AuthConfig,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.policy = policy
        self.config = config

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    def _authorize(self, ctx: SessionContext, resource: str, action: str) -> None:
        if ctx.is_impersonation:
            raise Forbidden("Stop impersonating before using admin operations.")
        self.policy.require_role(ctx, Role.admin)
        self.policy.require_permission(ctx, resource, action)

    def _target(self, ctx: SessionContext, user_id: str, self_action: str | None = None) -> User:
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFound("User not found.")
        if self_action and target.id == ctx.user.id:
            raise Forbidden(f"You cannot {self_action} yourself.")
        if outranks(target.role, ctx.user.role):
            raise Forbidden("You cannot manage a user with a higher role than your own.")
        return target

    def _require_assignable(self, ctx: SessionContext, role: Role) -> None:
        if not self.policy.can_assign(ctx, role):
            raise Forbidden(f"You cannot assign the {role.value} role.")

    def _reload(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def list_users(self, ctx: SessionContext) -> list[User]:
        self._authorize(ctx, "user", "list")
        return self.store.list_users()

    def create_user(
        self,
        ctx: SessionContext,
        email: str,
        name: str,
        password: str | None = None,
        role: Role | str = Role.user,
    ) -> User:
        self._authorize(ctx, "user", "create")
        role = Role(role)
        self._require_assignable(ctx, role)
        user = self.store.create_user(
            User(
                email=email,
                name=name,
                role=role,
                hashed_password=hash_password(password) if password else None,
            )
        )
        logger.info("Admin %s created user %s (role=%s)", ctx.user.id, user.id, role.value)
        return user

    def set_role(self, ctx: SessionContext, user_id: str, role: Role | str) -> User:
        """Change a user's role. Existing sessions pick it up on their next read."""
        self._authorize(ctx, "user", "set-role")
        role = Role(role)
        target = self._target(ctx, user_id, self_action="change the role of")
        self._require_assignable(ctx, role)
        self.store.update_user(target.id, role=role)
        logger.info("Admin %s set role of %s: %s -> %s", ctx.user.id, target.id, target.role.value, role.value)
        return self._reload(target.id)

    def ban_user(
        self,
        ctx: SessionContext,
        user_id: str,
        reason: str | None = None,
        expires_in_seconds: int | None = None,
    ) -> User:
        """Ban a user. Their sessions fail on next use; none are revoked here."""
        self._authorize(ctx, "user", "ban")
        target = self._target(ctx, user_id, self_action="ban")
        expires = None
        if expires_in_seconds:
            expires = self.sessions.clock() + timedelta(seconds=expires_in_seconds)
        self.store.update_user(
            target.id,
            banned=True,
            ban_reason=reason or self.config.default_ban_reason,
            ban_expires=expires,
        )
        logger.info(
            "Admin %s banned user %s (until=%s)",
            ctx.user.id,
            target.id,
            expires.isoformat() if expires else "permanent",
        )
        return self._reload(target.id)

    def unban_user(self, ctx: SessionContext, user_id: str) -> User:
        self._authorize(ctx, "user", "ban")
        target = self._target(ctx, user_id)
        self.store.update_user(target.id, banned=False, ban_reason=None, ban_expires=None)
        logger.info("Admin %s unbanned user %s", ctx.user.id, target.id)
        return self._reload(target.id)

    def remove_user(self, ctx: SessionContext, user_id: str) -> None:
        """Delete a user with its sessions and linked accounts. Irreversible."""
        self._authorize(ctx, "user", "delete")
        target = self._target(ctx, user_id, self_action="remove")
        self.store.delete_user(target.id)
        logger.info("Admin %s removed user %s", ctx.user.id, target.id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_user_sessions(self, ctx: SessionContext, user_id: str) -> list[Session]:
        self._authorize(ctx, "session", "list")
        target = self._target(ctx, user_id)
        return self.sessions.list_active(target.id)

    def revoke_session(self, ctx: SessionContext, session_id: str) -> None:
        self._authorize(ctx, "session", "revoke")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found.")
        self._target(ctx, session.user_id)
        self.sessions.revoke(session_id)
        logger.info("Admin %s revoked session %s of user %s", ctx.user.id, session_id, session.user_id)

    def revoke_all_sessions(self, ctx: SessionContext, user_id: str) -> int:
        self._authorize(ctx, "session", "revoke")
        target = self._target(ctx, user_id)
        count = self.sessions.revoke_all(target.id)
        logger.info("Admin %s revoked %d session(s) of user %s", ctx.user.id, count, target.id)
        return count

    # ------------------------------------------------------------------
    # Impersonation
    # ------------------------------------------------------------------

    def impersonate_user(
        self,
        ctx: SessionContext,
        user_id: str,
        client: ClientInfo | None = None,
    ) -> tuple[Session, str]:
        """Mint a short fixed-expiry session owned by the target.

        The admin's own session is untouched; impersonated_by on the new row
        records who started it.
        """
        self._authorize(ctx, "user", "impersonate")
        target = self._target(ctx, user_id, self_action="impersonate")
        if is_banned(target, self.sessions.clock()):
            raise Forbidden("You cannot impersonate a banned user.")
        session, token = self.sessions.create(
            target.id,
            client,
            impersonated_by=ctx.user.id,
            ttl_seconds=self.config.impersonation_ttl_seconds,
        )
        logger.info("Admin %s started impersonating user %s (session %s)", ctx.user.id, target.id, session.id)
        return session, token

    def stop_impersonating(self, ctx: SessionContext) -> str:
        """End the current impersonation session. Returns the admin's user id."""
        admin_id = ctx.session.impersonated_by
        if admin_id is None:
            raise Forbidden("This session is not an impersonation session.")
        self.sessions.revoke(ctx.session.id)
        logger.info("Admin %s stopped impersonating user %s (session %s)", admin_id, ctx.user.id, ctx.session.id)
        return admin_id

    def abandon_impersonation(self, token: str | None) -> str | None:
        """Close an impersonation session that no longer validates.

        Covers a session that expired, or whose target or admin was banned or
        demoted meanwhile, so the admin can still get back to their own
        session. Returns the admin's user id, or None if `token` does not
        point at an impersonation session.
        """
        session = self.sessions.lookup(token)
        if session is None or session.impersonated_by is None:
            return None
        self.sessions.revoke(session.id)
        logger.info("Admin %s abandoned impersonation session %s", session.impersonated_by, session.id)
        return session.impersonated_by

    # ------------------------------------------------------------------
    # Permission introspection
    # ------------------------------------------------------------------

    def has_permission(self, ctx: SessionContext, resource: str, action: str) -> bool:
        """Open to every signed-in user; answers for the caller's own role."""
        return self.policy.check_permission(ctx, resource, action)
