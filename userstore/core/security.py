"""Password hashing (Argon2id, PHC string format)."""

import logging

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a password with a fresh random salt."""
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """
    Check a password against a stored hash.

    A stored value that is not an Argon2 hash never matches.
    """
    try:
        return _hasher.verify(password_hash, password)
    except VerificationError:
        return False
    except InvalidHashError:
        logger.warning("Stored password hash is not a valid Argon2 hash")
        return False
