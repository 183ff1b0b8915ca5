"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_session / _row_to_account / _row_to_challenge are the
mappers. Verifiers, the session manager and the admin facade never touch SQL.

Atomicity contract (relied on by the layers above):
  - decrement_attempts() is a single conditional UPDATE. Two concurrent wrong
    guesses can never both spend the last attempt.
  - consume_challenge() is a conditional DELETE; its rowcount decides which of
    two concurrent correct guesses wins.
  - update_user() writes only the named columns, so a ban and a role change
    issued by two admins at once do not overwrite each other.
  - delete_user() removes the user, sessions and linked accounts in one
    transaction.

Uniqueness:
  users.email, accounts(provider, provider_account_id) and
  challenges(email, purpose) are UNIQUE in SQL. IntegrityError from an insert
  is translated to auth.errors.Conflict so no driver error escapes auth/.

Timestamps are fixed-width UTC ISO-8601 strings, so string comparison in SQL
matches chronological order (used by purge_expired()).

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import Conflict
from auth.models import Challenge, ChallengePurpose, LinkedAccount, Role, Session, User

logger = logging.getLogger("warden.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # stored lower-cased
    Column("name", String(255), nullable=False, server_default=""),
    Column("image", Text),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("hashed_password", Text),  # NULL for OAuth / one-time-code only users
    Column("role", String(20), nullable=False, server_default="user"),
    Column("banned", Integer, nullable=False, server_default="0"),
    Column("ban_reason", Text),
    Column("ban_expires", String(32)),  # NULL = permanent
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("impersonated_by", String(32)),
    Column("revoked_at", String(32)),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("id_token", Text),
    Column("access_token_expires_at", String(32)),
    Column("scope", Text),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_account_provider_subject"),
)

_challenges = Table(
    "challenges",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("attempts_remaining", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("email", "purpose", name="uq_challenge_email_purpose"),
)

Index("ix_sessions_expires_at", _sessions.c.expires_at)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    # timespec pins the width so lexical order == chronological order
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, Session, LinkedAccount and Challenge records.

    Usage:
        store = CredentialStore("sqlite:///warden_auth.db")
        user = store.create_user(User(email="a@x.com", name="A"))
        store.get_user_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(1)).scalar() == 1
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises Conflict if the email is already registered.
        """
        user.id = user.id or _new_id()
        user.email = normalize_email(user.email)
        user.created_at = user.created_at or utcnow()
        user.updated_at = user.updated_at or user.created_at
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user.id,
                        email=user.email,
                        name=user.name,
                        image=user.image,
                        email_verified=1 if user.email_verified else 0,
                        hashed_password=user.hashed_password,
                        role=Role(user.role).value,
                        banned=1 if user.banned else 0,
                        ban_reason=user.ban_reason,
                        ban_expires=_to_iso(user.ban_expires),
                        created_at=_to_iso(user.created_at),
                        updated_at=_to_iso(user.updated_at),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("An account with that email already exists.") from exc
        return user

    def get_user(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup (emails are stored lower-cased)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Write only the given columns. Returns False if user_id does not exist.

        Accepted fields: name, image, email_verified, hashed_password, role,
        banned, ban_reason, ban_expires.
        """
        values: dict = {}
        for key, value in fields.items():
            if key in ("email_verified", "banned"):
                values[key] = 1 if value else 0
            elif key == "role":
                values[key] = Role(value).value
            elif key == "ban_expires":
                values[key] = _to_iso(value)
            elif key in ("name", "image", "hashed_password", "ban_reason"):
                values[key] = value
            else:
                raise ValueError(f"Unknown user field: {key!r}")
        values["updated_at"] = _to_iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Delete a user and cascade to its sessions and linked accounts."""
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_accounts.delete().where(_accounts.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        session.id = session.id or _new_id()
        session.created_at = session.created_at or utcnow()
        session.updated_at = session.updated_at or session.created_at
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    expires_at=_to_iso(session.expires_at),
                    created_at=_to_iso(session.created_at),
                    updated_at=_to_iso(session.updated_at),
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    impersonated_by=session.impersonated_by,
                )
            )
        return session

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: str) -> list[Session]:
        """Return every session row owned by user_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def extend_session(self, session_id: str, expires_at: datetime, now: datetime) -> bool:
        """Slide the expiry of a live session forward."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None)))
                .values(expires_at=_to_iso(expires_at), updated_at=_to_iso(now))
            )
        return result.rowcount > 0

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        """Mark one session dead. Returns False if missing or already revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(now), updated_at=_to_iso(now))
            )
        return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        """Mark every live session of user_id dead. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(now), updated_at=_to_iso(now))
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def create_account(self, account: LinkedAccount) -> LinkedAccount:
        """Insert a linked account. Raises Conflict if the provider identity is taken."""
        account.id = account.id or _new_id()
        account.created_at = account.created_at or utcnow()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account.id,
                        user_id=account.user_id,
                        provider=account.provider,
                        provider_account_id=account.provider_account_id,
                        access_token=account.access_token,
                        refresh_token=account.refresh_token,
                        id_token=account.id_token,
                        access_token_expires_at=_to_iso(account.access_token_expires_at),
                        scope=account.scope,
                        created_at=_to_iso(account.created_at),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("That provider account is already linked to another user.") from exc
        return account

    def get_account(self, provider: str, provider_account_id: str) -> LinkedAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, user_id: str) -> list[LinkedAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().where(_accounts.c.user_id == user_id)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account_tokens(
        self,
        account_id: str,
        access_token: str | None,
        refresh_token: str | None,
        id_token: str | None,
        access_token_expires_at: datetime | None,
        scope: str | None,
    ) -> None:
        """Store fresh provider tokens. A missing refresh token keeps the old one."""
        values: dict = {
            "access_token": access_token,
            "id_token": id_token,
            "access_token_expires_at": _to_iso(access_token_expires_at),
            "scope": scope,
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))

    # ------------------------------------------------------------------
    # One-time-code challenges
    # ------------------------------------------------------------------

    def replace_challenge(self, challenge: Challenge) -> Challenge:
        """Store a challenge, discarding any earlier one for the same (email, purpose)."""
        challenge.id = challenge.id or _new_id()
        challenge.email = normalize_email(challenge.email)
        challenge.created_at = challenge.created_at or utcnow()
        purpose = ChallengePurpose(challenge.purpose).value
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _challenges.delete().where(
                        (_challenges.c.email == challenge.email) & (_challenges.c.purpose == purpose)
                    )
                )
                conn.execute(
                    _challenges.insert().values(
                        id=challenge.id,
                        email=challenge.email,
                        purpose=purpose,
                        code_hash=challenge.code_hash,
                        expires_at=_to_iso(challenge.expires_at),
                        attempts_remaining=challenge.attempts_remaining,
                        created_at=_to_iso(challenge.created_at),
                    )
                )
        except IntegrityError as exc:
            # A concurrent request for the same pair won the insert.
            raise Conflict("A verification code was just issued. Please retry.") from exc
        return challenge

    def get_challenge(self, email: str, purpose: ChallengePurpose) -> Challenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _challenges.select().where(
                    (_challenges.c.email == normalize_email(email))
                    & (_challenges.c.purpose == ChallengePurpose(purpose).value)
                )
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def decrement_attempts(self, challenge_id: str) -> int | None:
        """Spend one attempt atomically.

        Returns the attempts left after the decrement, or None when the
        challenge is gone or already had no attempts left.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _challenges.update()
                .where((_challenges.c.id == challenge_id) & (_challenges.c.attempts_remaining > 0))
                .values(attempts_remaining=_challenges.c.attempts_remaining - 1)
            )
            if result.rowcount == 0:
                return None
            return conn.execute(
                select(_challenges.c.attempts_remaining).where(_challenges.c.id == challenge_id)
            ).scalar()

    def consume_challenge(self, challenge_id: str) -> bool:
        """Delete a challenge that still has attempts left. True for exactly one caller."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.id == challenge_id) & (_challenges.c.attempts_remaining > 0)
                )
            )
        return result.rowcount > 0

    def delete_challenge(self, challenge_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_challenges.delete().where(_challenges.c.id == challenge_id))

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> dict[str, int]:
        """Delete expired or revoked sessions and dead challenges.

        Not correctness-critical: every read re-checks validity. This only
        keeps the tables small.
        """
        cutoff = _to_iso(now)
        with self.engine.begin() as conn:
            sessions = conn.execute(
                _sessions.delete().where((_sessions.c.expires_at <= cutoff) | (_sessions.c.revoked_at.is_not(None)))
            ).rowcount
            challenges = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.expires_at <= cutoff) | (_challenges.c.attempts_remaining <= 0)
                )
            ).rowcount
        return {"sessions": sessions, "challenges": challenges}

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        email_verified=bool(row.email_verified),
        hashed_password=row.hashed_password,
        role=Role(row.role),
        banned=bool(row.banned),
        ban_reason=row.ban_reason,
        ban_expires=_from_iso(row.ban_expires),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        impersonated_by=row.impersonated_by,
        revoked_at=_from_iso(row.revoked_at),
    )


def _row_to_account(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        id_token=row.id_token,
        access_token_expires_at=_from_iso(row.access_token_expires_at),
        scope=row.scope,
        created_at=_from_iso(row.created_at),
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        id=row.id,
        email=row.email,
        purpose=ChallengePurpose(row.purpose),
        code_hash=row.code_hash,
        expires_at=_from_iso(row.expires_at),
        attempts_remaining=row.attempts_remaining,
        created_at=_from_iso(row.created_at),
    )
