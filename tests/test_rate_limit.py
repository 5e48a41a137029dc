"""Tests for failed-attempt counting and lockout."""

from datetime import timedelta

import pytest

from tenantauth.core.config import Config
from tenantauth.security.errors import UserNotFoundError
from tenantauth.security.rate_limit import (
    ACCOUNT_LOCKOUT_CONFIG,
    TWO_FA_RATE_LIMIT,
    LockoutLimiter,
    RateLimitConfig,
    RateLimitResult,
    get_rate_limit_config,
    get_rate_limit_error_message,
)
from tenantauth.storage.models import utc_now


@pytest.fixture
def limiter(store):
    return LockoutLimiter(store)


@pytest.fixture
def user(make_user):
    return make_user()


class TestPresets:
    """Built-in policies."""

    def test_two_factor_policy(self):
        assert TWO_FA_RATE_LIMIT.max_attempts == 5
        assert TWO_FA_RATE_LIMIT.window == timedelta(minutes=15)
        assert TWO_FA_RATE_LIMIT.lockout_duration == timedelta(minutes=15)

    def test_account_lockout_policy(self):
        assert ACCOUNT_LOCKOUT_CONFIG.max_attempts == 3
        assert ACCOUNT_LOCKOUT_CONFIG.window == timedelta(hours=1)

    def test_config_overrides(self, temp_dir):
        config_file = temp_dir / "tenantauth.yaml"
        config_file.write_text(
            "rate_limit:\n  two_factor:\n    max_attempts: 7\n    lockout_minutes: 30\n"
        )
        policy = get_rate_limit_config("two_factor", Config(str(config_file)))
        assert policy.max_attempts == 7
        assert policy.window == timedelta(minutes=15)
        assert policy.lockout_duration == timedelta(minutes=30)

    def test_no_config_returns_preset(self):
        assert get_rate_limit_config("account_lockout") is ACCOUNT_LOCKOUT_CONFIG


class TestLockout:
    """Lockout lifecycle with an explicit clock."""

    def test_fresh_user_has_full_budget(self, limiter, user):
        result = limiter.check_rate_limit(user.user_id, TWO_FA_RATE_LIMIT, utc_now())
        assert result.allowed
        assert result.remaining == 5
        assert not result.is_locked

    def test_failures_count_down(self, limiter, user):
        now = utc_now()
        for expected in (4, 3, 2, 1):
            result = limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)
            assert result.allowed
            assert result.remaining == expected

        check = limiter.check_rate_limit(user.user_id, TWO_FA_RATE_LIMIT, now)
        assert check.allowed
        assert check.remaining == 1

    def test_fifth_failure_locks(self, limiter, user):
        now = utc_now()
        for _ in range(4):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        result = limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)
        assert not result.allowed
        assert result.is_locked
        assert result.remaining == 0
        assert result.locked_until == now + timedelta(minutes=15)

    def test_failure_while_locked_keeps_lock(self, limiter, user):
        """A sixth failure during the lockout does not extend it."""
        now = utc_now()
        for _ in range(5):
            first = limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        later = now + timedelta(minutes=5)
        result = limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, later)
        assert result.is_locked
        assert result.locked_until == first.locked_until

    def test_check_reports_active_lock(self, limiter, user):
        now = utc_now()
        for _ in range(5):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        result = limiter.check_rate_limit(
            user.user_id, TWO_FA_RATE_LIMIT, now + timedelta(minutes=14)
        )
        assert not result.allowed
        assert result.is_locked

        is_locked, locked_until = limiter.is_user_locked(user.user_id, now + timedelta(minutes=1))
        assert is_locked
        assert locked_until == now + timedelta(minutes=15)

    def test_budget_restored_after_lockout_expires(self, limiter, user, store):
        now = utc_now()
        for _ in range(5):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        after = now + timedelta(minutes=15, seconds=1)
        result = limiter.check_rate_limit(user.user_id, TWO_FA_RATE_LIMIT, after)
        assert result.allowed
        assert result.remaining == 5
        assert not result.is_locked

        stored = store.get_user(user.user_id)
        assert stored.locked_until is None
        assert stored.login_attempts == 0

    def test_is_user_locked_clears_expired_lock(self, limiter, user, store):
        now = utc_now()
        for _ in range(5):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        assert limiter.is_user_locked(user.user_id, now + timedelta(hours=1)) == (False, None)
        assert store.get_user(user.user_id).locked_until is None

    def test_window_expiry_restarts_count(self, limiter, user):
        now = utc_now()
        for _ in range(4):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        later = now + timedelta(minutes=16)
        result = limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, later)
        assert result.allowed
        assert result.remaining == 4

    def test_check_never_creates_lock(self, limiter, user, store):
        """Exhausting the budget through a stricter policy does not lock on check."""
        now = utc_now()
        policy = RateLimitConfig(
            max_attempts=2, window=timedelta(minutes=15), lockout_duration=timedelta(minutes=5)
        )
        limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)
        limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        result = limiter.check_rate_limit(user.user_id, policy, now)
        assert not result.allowed
        assert result.remaining == 0
        assert not result.is_locked
        assert store.get_user(user.user_id).locked_until is None

    def test_reset_attempts(self, limiter, user):
        now = utc_now()
        for _ in range(3):
            limiter.record_failed_attempt(user.user_id, TWO_FA_RATE_LIMIT, now)

        limiter.reset_attempts(user.user_id)
        assert limiter.check_rate_limit(user.user_id, TWO_FA_RATE_LIMIT, now).remaining == 5

    def test_unknown_user(self, limiter):
        with pytest.raises(UserNotFoundError):
            limiter.check_rate_limit("missing")
        with pytest.raises(UserNotFoundError):
            limiter.record_failed_attempt("missing")
        with pytest.raises(UserNotFoundError):
            limiter.is_user_locked("missing")


class TestRateLimitResult:
    """Result helpers and messages."""

    def test_locked_message_rounds_up_minutes(self):
        now = utc_now()
        result = RateLimitResult(
            allowed=False,
            remaining=0,
            is_locked=True,
            locked_until=now + timedelta(minutes=14, seconds=10),
        )
        assert get_rate_limit_error_message(result, now) == (
            "Account locked due to too many failed attempts. Please try again in 15 minutes."
        )

    def test_locked_message_singular(self):
        now = utc_now()
        result = RateLimitResult(
            allowed=False, remaining=0, is_locked=True, locked_until=now + timedelta(seconds=30)
        )
        assert get_rate_limit_error_message(result, now).endswith("in 1 minute.")

    def test_exhausted_message(self):
        result = RateLimitResult(allowed=False, remaining=0)
        assert get_rate_limit_error_message(result) == (
            "Too many failed attempts. Please try again later."
        )

    def test_remaining_message(self):
        assert get_rate_limit_error_message(RateLimitResult(allowed=True, remaining=3)) == (
            "Invalid code. 3 attempts remaining before account lockout."
        )
        assert get_rate_limit_error_message(RateLimitResult(allowed=True, remaining=1)) == (
            "Invalid code. 1 attempt remaining before account lockout."
        )

    def test_retry_after_and_dict(self):
        now = utc_now()
        locked_until = now + timedelta(minutes=10)
        result = RateLimitResult(
            allowed=False, remaining=0, is_locked=True, locked_until=locked_until
        )
        assert result.retry_after_seconds(now) == 600
        assert RateLimitResult(allowed=True, remaining=2).retry_after_seconds(now) is None

        data = result.to_dict()
        assert data["isLocked"] is True
        assert data["lockedUntil"] == locked_until.isoformat()
        assert data["remaining"] == 0
