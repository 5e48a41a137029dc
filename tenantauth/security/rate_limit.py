"""Failed-attempt counting and temporary lockout.

State lives on the user row (``login_attempts``, ``last_failed_attempt``,
``locked_until``) so every check re-reads the store and no in-process state is
shared between requests.

Only :meth:`LockoutLimiter.record_failed_attempt` ever sets a lockout.
:meth:`LockoutLimiter.check_rate_limit` reports state; it clears expired
lockouts and stale windows but never creates a lock.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from tenantauth.core.config import Config
from tenantauth.security.errors import UserNotFoundError
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import User, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Attempt budget for one kind of check."""

    max_attempts: int
    window: timedelta
    lockout_duration: timedelta


# 2FA verification: 5 attempts per 15 minutes, then locked for 15 minutes
TWO_FA_RATE_LIMIT = RateLimitConfig(
    max_attempts=5,
    window=timedelta(minutes=15),
    lockout_duration=timedelta(minutes=15),
)

# Stricter policy for account-level lockout. Not wired to a call site.
ACCOUNT_LOCKOUT_CONFIG = RateLimitConfig(
    max_attempts=3,
    window=timedelta(hours=1),
    lockout_duration=timedelta(minutes=15),
)

PRESETS = {
    "two_factor": TWO_FA_RATE_LIMIT,
    "account_lockout": ACCOUNT_LOCKOUT_CONFIG,
}


def get_rate_limit_config(name: str, config: Optional[Config] = None) -> RateLimitConfig:
    """Look up a named policy, applying overrides from ``rate_limit.<name>``.

    Args:
        name: Preset name ("two_factor" or "account_lockout")
        config: Configuration to read overrides from

    Returns:
        The effective policy
    """
    preset = PRESETS[name]
    if config is None:
        return preset

    section = config.get(f"rate_limit.{name}", {}) or {}
    return RateLimitConfig(
        max_attempts=int(section.get("max_attempts", preset.max_attempts)),
        window=timedelta(
            minutes=int(section.get("window_minutes", preset.window.total_seconds() // 60))
        ),
        lockout_duration=timedelta(
            minutes=int(
                section.get("lockout_minutes", preset.lockout_duration.total_seconds() // 60)
            )
        ),
    )


@dataclass
class RateLimitResult:
    """Outcome of a rate-limit check or a recorded failure."""

    allowed: bool
    remaining: int
    is_locked: bool = False
    locked_until: Optional[datetime] = None
    reset_at: Optional[datetime] = None

    def retry_after_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        """Seconds until the caller may try again, if denied."""
        target = self.locked_until if self.is_locked else self.reset_at
        if self.allowed or target is None:
            return None
        return max(0, math.ceil((target - (now or utc_now())).total_seconds()))

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "isLocked": self.is_locked,
            "lockedUntil": self.locked_until.isoformat() if self.locked_until else None,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
        }


class LockoutLimiter:
    """Per-user attempt counter with a lockout clock."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def _get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _clear(self, user_id: str) -> None:
        self.store.update_rate_limit_state(user_id, 0, None, None)

    def is_user_locked(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Tuple[bool, Optional[datetime]]:
        """Check for an active lockout, clearing an expired one.

        Returns:
            Tuple of (is_locked, locked_until)
        """
        now = now or utc_now()
        user = self._get_user(user_id)

        if user.locked_until is None:
            return False, None

        if now < user.locked_until:
            return True, user.locked_until

        self._clear(user_id)
        logger.info(f"Lockout expired for user {user_id}")
        return False, None

    def check_rate_limit(
        self,
        user_id: str,
        config: RateLimitConfig = TWO_FA_RATE_LIMIT,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Report whether another attempt is allowed right now.

        Args:
            user_id: User being checked
            config: Attempt policy
            now: Current time (defaults to the clock)

        Returns:
            RateLimitResult describing the remaining budget

        Raises:
            UserNotFoundError: If the user does not exist
        """
        now = now or utc_now()
        user = self._get_user(user_id)

        if user.locked_until is not None:
            if now < user.locked_until:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    is_locked=True,
                    locked_until=user.locked_until,
                    reset_at=user.locked_until,
                )
            self._clear(user_id)
            return RateLimitResult(allowed=True, remaining=config.max_attempts)

        if user.last_failed_attempt is None or now - user.last_failed_attempt > config.window:
            if user.login_attempts:
                self._clear(user_id)
            return RateLimitResult(allowed=True, remaining=config.max_attempts)

        reset_at = user.last_failed_attempt + config.window
        remaining = config.max_attempts - user.login_attempts
        if remaining <= 0:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        return RateLimitResult(allowed=True, remaining=remaining, reset_at=reset_at)

    def record_failed_attempt(
        self,
        user_id: str,
        config: RateLimitConfig = TWO_FA_RATE_LIMIT,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Count one failure and lock the account once the budget is spent.

        An already-locked account is left untouched and the existing lockout
        is reported.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        now = now or utc_now()
        user = self._get_user(user_id)

        if user.locked_until is not None and now < user.locked_until:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                is_locked=True,
                locked_until=user.locked_until,
                reset_at=user.locked_until,
            )

        within_window = (
            user.locked_until is None
            and user.last_failed_attempt is not None
            and now - user.last_failed_attempt <= config.window
        )
        attempts = user.login_attempts + 1 if within_window else 1

        if attempts >= config.max_attempts:
            locked_until = now + config.lockout_duration
            self.store.update_rate_limit_state(user_id, attempts, now, locked_until)
            logger.warning(f"User {user_id} locked until {locked_until.isoformat()}")
            return RateLimitResult(
                allowed=False,
                remaining=0,
                is_locked=True,
                locked_until=locked_until,
                reset_at=locked_until,
            )

        self.store.update_rate_limit_state(user_id, attempts, now, None)
        return RateLimitResult(
            allowed=True,
            remaining=config.max_attempts - attempts,
            reset_at=now + config.window,
        )

    def reset_attempts(self, user_id: str) -> None:
        """Zero the counter and clear any lockout after a success."""
        self._clear(user_id)


def get_rate_limit_error_message(result: RateLimitResult, now: Optional[datetime] = None) -> str:
    """Human-readable explanation of a rate-limit result."""
    if result.is_locked and result.locked_until is not None:
        seconds = (result.locked_until - (now or utc_now())).total_seconds()
        minutes = max(1, math.ceil(seconds / 60))
        return (
            "Account locked due to too many failed attempts. "
            f"Please try again in {minutes} minute{'s' if minutes != 1 else ''}."
        )

    if result.remaining <= 0:
        return "Too many failed attempts. Please try again later."

    return (
        f"Invalid code. {result.remaining} attempt{'s' if result.remaining != 1 else ''} "
        "remaining before account lockout."
    )
