"""
auth/policy.py -- Role-based access control.

Two independent checks are offered and gated operations pick one:

  Coarse: has_role(ctx, minimum) -- roles are totally ordered
          user < admin < super-admin and the check is a threshold.

  Fine:   check_permission(ctx, resource, action) -- each role maps to an
          explicit set of (resource, action) pairs. There is no implicit
          inheritance: super-admin holds exactly what its entry lists.

Both checks take a SessionContext produced by the session manager, which has
already proven the session valid and re-read the user record. Role is never
cached on the session row, so a role change applies on the next request.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from auth.errors import Forbidden
from auth.models import Role, SessionContext, User

_RANK: dict[Role, int] = {
    Role.user: 0,
    Role.admin: 1,
    Role.super_admin: 2,
}

_ADMIN_STATEMENTS: frozenset[tuple[str, str]] = frozenset(
    [("user", action) for action in ("create", "list", "set-role", "ban", "impersonate", "delete", "set-password")]
    + [("session", action) for action in ("list", "revoke", "delete")]
)

DEFAULT_PERMISSIONS: dict[Role, frozenset[tuple[str, str]]] = {
    Role.user: frozenset(),
    Role.admin: _ADMIN_STATEMENTS,
    Role.super_admin: _ADMIN_STATEMENTS,
}


def role_rank(role: Role | str) -> int:
    return _RANK[Role(role)]


def outranks(role: Role | str, other: Role | str) -> bool:
    """True if `role` is strictly above `other`."""
    return role_rank(role) > role_rank(other)


def is_banned(user: User, now: datetime) -> bool:
    """Return True if the ban on `user` is in force at `now`.

    A ban whose expiry has passed is treated as lifted for authorization. The
    banned flag stays set in the row for audit until an admin clears it.
    """
    if not user.banned:
        return False
    return user.ban_expires is None or user.ban_expires > now


class AdminPolicy:
    """Answers authorization questions for a validated session."""

    def __init__(self, permissions: Mapping[Role, Iterable[tuple[str, str]]] | None = None) -> None:
        source = DEFAULT_PERMISSIONS if permissions is None else permissions
        self.permissions: dict[Role, frozenset[tuple[str, str]]] = {
            Role(role): frozenset(pairs) for role, pairs in source.items()
        }

    def has_role(self, ctx: SessionContext, minimum: Role | str) -> bool:
        return role_rank(ctx.user.role) >= role_rank(minimum)

    def require_role(self, ctx: SessionContext, minimum: Role | str) -> None:
        if not self.has_role(ctx, minimum):
            raise Forbidden(f"This action requires the {Role(minimum).value} role.")

    def check_permission(self, ctx: SessionContext, resource: str, action: str) -> bool:
        return (resource, action) in self.permissions.get(Role(ctx.user.role), frozenset())

    def require_permission(self, ctx: SessionContext, resource: str, action: str) -> None:
        if not self.check_permission(ctx, resource, action):
            raise Forbidden(f"Missing permission {resource}:{action}.")

    def can_assign(self, ctx: SessionContext, role: Role | str) -> bool:
        """A caller may grant any role up to and including its own."""
        return not outranks(role, ctx.user.role)
