"""Progressive account lockout.

Pure functions over ``UserLockoutState``; the caller loads and persists the
state. Durations double per consecutive lockout (15m, 30m, 60m, ...) up to
the configured maximum.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.services.repositories import UserLockoutState


@dataclass(frozen=True)
class LockoutConfig:
    threshold: int = 5
    base_duration: timedelta = timedelta(minutes=15)
    max_duration: timedelta = timedelta(hours=24)
    attempt_window: timedelta = timedelta(minutes=15)


DEFAULT_LOCKOUT_CONFIG = LockoutConfig()


@dataclass(frozen=True)
class LockoutCheckResult:
    is_locked: bool
    locked_until: Optional[datetime]
    retry_after_seconds: Optional[int]
    failed_attempts: int


@dataclass(frozen=True)
class FailedAttemptResult:
    should_lock: bool
    new_failed_attempts: int
    locked_until: Optional[datetime]
    lock_duration: Optional[timedelta]

    def to_state(self, now: datetime) -> UserLockoutState:
        """State to persist after this failure."""
        return UserLockoutState(
            failed_login_attempts=self.new_failed_attempts,
            locked_until=self.locked_until,
            last_failed_attempt_at=now,
        )


def calculate_lockout_duration(
    consecutive_lockouts: int,
    config: LockoutConfig = DEFAULT_LOCKOUT_CONFIG,
) -> timedelta:
    multiplier = 2 ** max(0, consecutive_lockouts - 1)
    return min(config.base_duration * multiplier, config.max_duration)


def calculate_consecutive_lockouts(failed_attempts: int, threshold: int) -> int:
    if failed_attempts < threshold:
        return 0
    return failed_attempts // threshold


def check_lockout(state: UserLockoutState, now: datetime) -> LockoutCheckResult:
    """Report whether the account is locked at ``now``.

    A lock that ends exactly at ``now`` is already released.
    """
    locked_until = state.locked_until
    if locked_until is None or locked_until <= now:
        return LockoutCheckResult(
            is_locked=False,
            locked_until=None,
            retry_after_seconds=None,
            failed_attempts=state.failed_login_attempts,
        )

    retry_after = math.ceil((locked_until - now) / timedelta(seconds=1))
    return LockoutCheckResult(
        is_locked=True,
        locked_until=locked_until,
        retry_after_seconds=retry_after,
        failed_attempts=state.failed_login_attempts,
    )


def record_failed_attempt(
    state: UserLockoutState,
    now: datetime,
    config: LockoutConfig = DEFAULT_LOCKOUT_CONFIG,
) -> FailedAttemptResult:
    """Count one more failure and decide whether to lock.

    Failures older than the attempt window are forgotten first; a failure
    exactly at the window boundary still counts.
    """
    failed = state.failed_login_attempts
    last = state.last_failed_attempt_at
    if last is not None and now - last > config.attempt_window:
        failed = 0

    new_failed = failed + 1
    if new_failed < config.threshold:
        return FailedAttemptResult(
            should_lock=False,
            new_failed_attempts=new_failed,
            locked_until=None,
            lock_duration=None,
        )

    consecutive = calculate_consecutive_lockouts(new_failed, config.threshold)
    duration = calculate_lockout_duration(consecutive, config)
    return FailedAttemptResult(
        should_lock=True,
        new_failed_attempts=new_failed,
        locked_until=now + duration,
        lock_duration=duration,
    )


def reset_on_success() -> UserLockoutState:
    return UserLockoutState(
        failed_login_attempts=0,
        locked_until=None,
        last_failed_attempt_at=None,
    )


def remaining_attempts(failed_attempts: int, threshold: int = DEFAULT_LOCKOUT_CONFIG.threshold) -> int:
    return max(0, threshold - failed_attempts)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


def format_lockout_duration(duration: timedelta) -> str:
    """Human-readable duration, e.g. "15 minutes" or "1 hour 1 minute"."""
    seconds = math.ceil(duration.total_seconds())
    minutes = math.ceil(seconds / 60)
    hours = minutes // 60

    if hours > 0:
        remaining_minutes = minutes % 60
        if remaining_minutes > 0:
            return f"{_plural(hours, 'hour')} {_plural(remaining_minutes, 'minute')}"
        return _plural(hours, "hour")

    if minutes > 0:
        return _plural(minutes, "minute")

    return _plural(seconds, "second")
