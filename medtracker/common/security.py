"""Password hashing helpers."""

from __future__ import annotations

from functools import lru_cache

from passlib.context import CryptContext


@lru_cache
def get_password_context(rounds: int = 29000) -> CryptContext:
    """Return the shared hashing context (pbkdf2_sha256)."""

    return CryptContext(
        schemes=["pbkdf2_sha256"],
        default="pbkdf2_sha256",
        pbkdf2_sha256__default_rounds=rounds,
    )


def hash_password(password: str, *, rounds: int = 29000) -> str:
    return get_password_context(rounds).hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Check ``plain_password`` against a stored hash.

    Malformed or missing hashes count as a mismatch rather than an error.
    """

    if not plain_password or not hashed_password:
        return False
    try:
        return get_password_context().verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False
