"""
Gatekeeper - Password Hashing Utilities

Password hashing using bcrypt.
Work factor comes from AuthPolicy; defaults to 12.

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- bcrypt only reads 72 bytes, so longer passwords are rejected up front
"""

from typing import Optional

import bcrypt


# Work factor for bcrypt (2^12 = 4096 iterations)
BCRYPT_WORK_FACTOR = 12

BCRYPT_MAX_BYTES = 72

# Hash compared against when the account does not exist, so the
# response time does not reveal whether the email is registered.
_DUMMY_HASH = bcrypt.hashpw(b"gatekeeper-dummy-password", bcrypt.gensalt(rounds=4)).decode("utf-8")


def hash_password(password: str, rounds: int = BCRYPT_WORK_FACTOR) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plaintext password
        rounds: bcrypt cost factor

    Returns:
        bcrypt hash string (includes salt)

    Raises:
        ValueError: If the password is longer than bcrypt can process
    """
    password_bytes = password.encode("utf-8")
    if len(password_bytes) > BCRYPT_MAX_BYTES:
        raise ValueError("Password must be at most 72 bytes")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password_bytes, salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a password against a bcrypt hash.

    Uses constant-time comparison to prevent timing attacks.
    A missing hash (passwordless account) never matches, but still pays
    for one bcrypt comparison.

    Example:
        >>> hashed = hash_password("SecureP@ss123")
        >>> verify_password("SecureP@ss123", hashed)
        True
    """
    if not hashed_password:
        burn_password_check(plain_password)
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        # Invalid hash format or over-long password
        return False


def burn_password_check(plain_password: str) -> None:
    """Run a throwaway comparison to equalize timing for unknown accounts."""
    try:
        bcrypt.checkpw(plain_password.encode("utf-8")[:BCRYPT_MAX_BYTES], _DUMMY_HASH.encode("utf-8"))
    except ValueError:
        pass
