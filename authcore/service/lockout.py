"""Per-account brute-force lockout.

State is derived on read from ``(failed_attempts, lock_until, now)``; there
is no background job. An elapsed lock is treated as expired the next time a
failure arrives, which restarts the count at 1.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AccountLocked
from authcore.storage.models import Account, utcnow

logger = get_logger(__name__)


class LockState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    lock_duration: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.max_failed_attempts,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
        )


def is_locked(lock_until: Optional[datetime], now: datetime) -> bool:
    return lock_until is not None and lock_until > now


def lock_state(failed_attempts: int, lock_until: Optional[datetime], now: datetime) -> LockState:
    if is_locked(lock_until, now):
        return LockState.LOCKED
    if lock_until is not None:
        # Lock has elapsed; the next failure starts over
        return LockState.NORMAL
    return LockState.WARNING if failed_attempts > 0 else LockState.NORMAL


def remaining_lock_seconds(lock_until: Optional[datetime], now: datetime) -> int:
    if not is_locked(lock_until, now):
        return 0
    return max(1, math.ceil((lock_until - now).total_seconds()))


def register_failure(
    failed_attempts: int,
    lock_until: Optional[datetime],
    now: datetime,
    policy: LockoutPolicy,
) -> Tuple[int, Optional[datetime]]:
    """Return the counter and lock after one more failed attempt."""
    if is_locked(lock_until, now):
        return failed_attempts, lock_until
    if lock_until is not None:
        failed_attempts, lock_until = 0, None
    attempts = failed_attempts + 1
    if attempts >= policy.threshold:
        return attempts, now + policy.lock_duration
    return attempts, None


def register_success() -> Tuple[int, Optional[datetime]]:
    return 0, None


class LockoutGuard:
    """Binds the lockout state machine to account storage."""

    def __init__(self, store, policy: LockoutPolicy) -> None:
        self.store = store
        self.policy = policy

    def check(self, account: Account, *, now: datetime | None = None) -> None:
        now = now or utcnow()
        if is_locked(account.lock_until, now):
            raise AccountLocked(remaining_lock_seconds(account.lock_until, now))

    def record_failure(self, account: Account, *, now: datetime | None = None) -> LockState:
        now = now or utcnow()
        attempts, lock_until = register_failure(
            account.failed_attempts, account.lock_until, now, self.policy
        )
        self.store.update_lockout(account.id, attempts, lock_until)
        account.failed_attempts, account.lock_until = attempts, lock_until
        state = lock_state(attempts, lock_until, now)
        if state is LockState.LOCKED:
            logger.warning(
                "account_locked",
                account_id=account.id,
                attempts=attempts,
                lock_seconds=remaining_lock_seconds(lock_until, now),
            )
        return state

    def record_success(self, account: Account) -> None:
        if account.failed_attempts == 0 and account.lock_until is None:
            return
        attempts, lock_until = register_success()
        self.store.update_lockout(account.id, attempts, lock_until)
        account.failed_attempts, account.lock_until = attempts, lock_until
