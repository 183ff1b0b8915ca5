#!/usr/bin/env python3
"""
Warden -- operator command line.

Usage:
  python main.py create-admin --email admin@example.com --password '...' --name Admin
  python main.py create-admin --email root@example.com --password '...' --name Root --role super-admin
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: warden_auth.db).
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
from typing import Optional

from auth.config import AuthConfig
from auth.delivery import LogEmailChannel
from auth.errors import Conflict
from auth.models import Role, User
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import get_settings

MIN_PASSWORD_LENGTH = 8


def create_admin(store: CredentialStore, email: str, password: str, name: str, role: str) -> int:
    """Create an admin-level account with a verified email. Returns an exit code.

    An existing account with the same email is promoted instead, so the
    command can be re-run to recover a locked-out deployment.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return 2

    try:
        user = store.create_user(
            User(
                email=email,
                name=name,
                role=Role(role),
                email_verified=True,
                hashed_password=hash_password(password),
            )
        )
    except Conflict:
        existing = store.get_user_by_email(email)
        if existing is None:
            raise
        store.update_user(existing.id, role=Role(role), hashed_password=hash_password(password))
        print(f"  Existing user {existing.email} promoted to {role}.")
        return 0

    print(f"  Created {role} {user.email} (id {user.id}).")
    return 0


def purge(auth: AuthService) -> int:
    counts = auth.purge_expired()
    print(f"  Purged {counts['sessions']} session(s) and {counts['challenges']} challenge(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Warden operator commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com --name Admin
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create or promote an administrator account")
    create.add_argument("--email", required=True, help="Account email address")
    create.add_argument("--name", default="Administrator", help="Display name (default: Administrator)")
    create.add_argument(
        "--password",
        default=None,
        help="Account password. Prompted for when omitted, which keeps it out of shell history.",
    )
    create.add_argument(
        "--role",
        choices=[Role.admin.value, Role.super_admin.value],
        default=Role.admin.value,
        help="Role to assign (default: admin)",
    )

    sub.add_parser("purge", help="Delete expired or revoked sessions and stale one-time codes")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    settings = get_settings()
    store = CredentialStore(db_url=settings.database_url)
    try:
        if args.command == "create-admin":
            password = args.password or getpass.getpass("Password: ")
            return create_admin(store, args.email, password, args.name, args.role)
        auth = AuthService.build(store, AuthConfig.from_settings(settings), LogEmailChannel())
        return purge(auth)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
