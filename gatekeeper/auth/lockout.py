"""
Gatekeeper - Lockout Guard

Per-account consecutive failure counter and temporary lock window.
Wrong passwords and wrong step-up codes climb the same ladder.
"""

import logging
import math
from datetime import datetime

from gatekeeper.auth.models import Account
from gatekeeper.config import AuthPolicy
from gatekeeper.errors import AccountLockedError


logger = logging.getLogger(__name__)


def remaining_lock_minutes(account: Account, now: datetime) -> int:
    """Whole minutes (rounded up) until the lock lifts; 0 if not locked."""
    if account.locked_until is None or now >= account.locked_until:
        return 0
    return math.ceil((account.locked_until - now).total_seconds() / 60)


def is_locked(account: Account, now: datetime) -> bool:
    return account.locked_until is not None and now < account.locked_until


def ensure_not_locked(account: Account, now: datetime) -> None:
    """
    Raises:
        AccountLockedError: With the remaining wait, while locked
    """
    if is_locked(account, now):
        raise AccountLockedError(remaining_lock_minutes(account, now))


def register_failure(account: Account, policy: AuthPolicy, now: datetime) -> bool:
    """
    Count one failed attempt; lock the account on reaching the threshold.

    A lock window that has already elapsed restarts the ladder.
    Mutates the account; the caller commits.

    Returns:
        True if this failure locked the account
    """
    if account.locked_until is not None and now >= account.locked_until:
        account.failed_login_attempts = 0
        account.locked_until = None

    account.failed_login_attempts += 1
    if account.failed_login_attempts >= policy.max_failed_attempts:
        account.locked_until = now + policy.lockout_duration
        logger.warning(
            "Account %s locked after %d failed attempts",
            account.id, account.failed_login_attempts,
        )
        return True
    return False


def reset_failures(account: Account) -> None:
    account.failed_login_attempts = 0
    account.locked_until = None
