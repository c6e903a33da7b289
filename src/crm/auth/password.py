"""Password hashing utilities.

Uses bcrypt, which salts automatically and produces "$2b$" hashes.
The work factor comes from CRM_BCRYPT_ROUNDS (default 12, roughly
100ms per hash). Lower it in tests, raise it as hardware gets faster.

Whether a value on the write path is plaintext or an existing hash is
stated by the caller with PasswordForm; it is never guessed from the
shape of the string.
"""

import enum
from functools import lru_cache

import bcrypt

from crm.config import settings


class PasswordForm(enum.Enum):
    PLAINTEXT = "plaintext"
    HASHED = "hashed"


def hash_password(password: str) -> str:
    """Hash a password with bcrypt.

    Passwords are truncated to 72 bytes (bcrypt's limit).
    """
    pw_bytes = password.encode("utf-8")[:72]
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(pw_bytes, salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its bcrypt hash."""
    try:
        pw_bytes = password.encode("utf-8")[:72]
        hash_bytes = password_hash.encode("utf-8")
        return bcrypt.checkpw(pw_bytes, hash_bytes)
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    return bcrypt.hashpw(
        b"dummy-password", bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    )


def burn_password_check(password: str) -> None:
    """Spend a bcrypt check's worth of time without a real hash.

    Called when the email is unknown so that a failed login takes the
    same time whether or not the account exists.
    """
    bcrypt.checkpw(password.encode("utf-8")[:72], _dummy_hash())


def stored_password(value: str, form: PasswordForm) -> str:
    """Return the value to persist in ``User.password_hash``.

    PLAINTEXT values are hashed. HASHED values must already be a bcrypt
    hash and are stored unchanged.
    """
    if form is PasswordForm.PLAINTEXT:
        return hash_password(value)
    try:
        bcrypt.checkpw(b"", value.encode("utf-8"))
    except ValueError:
        raise ValueError("Value is not a bcrypt hash")
    return value
