"""
auth/tokens.py -- Password hashing, session tokens and one-time-code hashing.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Its cost factor makes
       brute-force of low-entropy secrets expensive. _DUMMY_HASH enables timing
       equalization in the password verifier so response time does not reveal
       whether an email is registered [C1].

  Session tokens: python-jose HS256. A token carries only the session id
       (sid) and owner (sub). It is a signed pointer, not a bearer of
       authority: the session manager re-reads the session row and the user
       record on every request, so revocation, bans and role changes apply
       immediately. Expiry is therefore not encoded in the token.

  One-time codes: secrets.randbelow() per digit (CSPRNG). Stored as
       HMAC-SHA256(secret_key, code) so a leaked challenges table does not
       hand out live codes; compared with hmac.compare_digest.

No function here reads configuration. The secret is always an argument.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime

import bcrypt
from jose import JWTError, jwt

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only uses the first 72 bytes and newer releases raise on longer
    input, so the encoded password is cut to 72 bytes on both hash and verify.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the row -- treat as a failed match.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("warden_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification against the dummy hash [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_session_token(session_id: str, user_id: str, issued_at: datetime, secret_key: str) -> str:
    """Encode a signed token pointing at a session row."""
    payload = {
        "sid": session_id,
        "sub": user_id,
        "iat": int(issued_at.timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str, secret_key: str) -> dict | None:
    """Verify the signature and return the payload, or None on any failure."""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "sid" not in payload or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code(length: int) -> str:
    """Return a numeric code of exactly `length` digits from the OS CSPRNG."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_code(code: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, code) as a hex string."""
    return hmac.new(secret_key.encode(), code.encode(), hashlib.sha256).hexdigest()


def code_matches(code: str, code_hash: str, secret_key: str) -> bool:
    """Constant-time comparison of a submitted code against a stored hash."""
    return hmac.compare_digest(hash_code(code, secret_key), code_hash)
