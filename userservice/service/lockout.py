"""Brute-force lockout rules for password logins.

All helpers are pure: they take a user snapshot and return an updated copy.
Stores apply them inside ``update_user_locked`` so the read-modify-write is
atomic with respect to concurrent logins for the same account.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from userservice.storage.models import User

if TYPE_CHECKING:
    from userservice.config import Settings


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "LockoutPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )


def is_locked(user: User, now: datetime) -> bool:
    return user.account_locked_until is not None and now < user.account_locked_until


def lock_remaining(user: User, now: datetime) -> timedelta:
    if not is_locked(user, now):
        return timedelta(0)
    return user.account_locked_until - now


def on_failure(
    user: User, max_attempts: int, lockout_duration: timedelta, now: datetime
) -> User:
    """Count a failed password attempt, locking once the threshold is reached.

    The counter is not reset when the lock is set; only a successful login
    clears it.
    """
    attempts = user.failed_login_attempts + 1
    locked_until = user.account_locked_until
    if attempts >= max_attempts:
        locked_until = now + lockout_duration
    return replace(user, failed_login_attempts=attempts, account_locked_until=locked_until)


def on_success(user: User) -> User:
    return replace(user, failed_login_attempts=0, account_locked_until=None)


def record_failure(policy: LockoutPolicy, now: datetime):
    """Build the ``update_user_locked`` mutation for one failed attempt.

    A user who is already locked when the row lock is taken is returned
    unchanged, so concurrent failures cannot push the lock further out.
    """

    def _mutate(user: User) -> User:
        if is_locked(user, now):
            return user
        return on_failure(user, policy.max_attempts, policy.lockout_duration, now)

    return _mutate
