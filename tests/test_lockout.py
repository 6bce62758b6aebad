"""Tests for the lockout state machine and its store binding."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.errors import AccountLocked
from authcore.service.lockout import (
    LockoutGuard,
    LockoutPolicy,
    LockState,
    lock_state,
    register_failure,
    register_success,
    remaining_lock_seconds,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
POLICY = LockoutPolicy(threshold=5, lock_duration=timedelta(minutes=30))


class TestPureFunctions:
    def test_fresh_account_is_normal(self):
        assert lock_state(0, None, NOW) is LockState.NORMAL

    def test_failures_below_threshold_warn(self):
        assert lock_state(3, None, NOW) is LockState.WARNING

    def test_future_lock_is_locked(self):
        assert lock_state(5, NOW + timedelta(minutes=1), NOW) is LockState.LOCKED

    def test_elapsed_lock_reads_as_normal(self):
        assert lock_state(5, NOW - timedelta(seconds=1), NOW) is LockState.NORMAL

    def test_threshold_failure_sets_lock(self):
        attempts, lock_until = 0, None
        for _ in range(5):
            attempts, lock_until = register_failure(attempts, lock_until, NOW, POLICY)

        assert attempts == 5
        assert lock_until == NOW + timedelta(minutes=30)

    def test_failure_while_locked_does_not_extend_or_count(self):
        lock_until = NOW + timedelta(minutes=10)

        attempts, new_lock = register_failure(5, lock_until, NOW, POLICY)

        assert attempts == 5
        assert new_lock == lock_until

    def test_failure_after_lock_elapsed_restarts_at_one(self):
        attempts, lock_until = register_failure(5, NOW - timedelta(minutes=1), NOW, POLICY)

        assert attempts == 1
        assert lock_until is None

    def test_success_resets(self):
        assert register_success() == (0, None)

    def test_remaining_seconds_rounds_up(self):
        assert remaining_lock_seconds(NOW + timedelta(seconds=90, milliseconds=1), NOW) == 91
        assert remaining_lock_seconds(NOW + timedelta(milliseconds=10), NOW) == 1
        assert remaining_lock_seconds(None, NOW) == 0
        assert remaining_lock_seconds(NOW - timedelta(seconds=5), NOW) == 0


class TestLockoutGuard:
    @pytest.fixture
    def account(self, memory_store):
        return memory_store.create_account("locky", "locky@example.com", "hash")

    def test_record_failure_persists(self, memory_store, account):
        guard = LockoutGuard(memory_store, POLICY)

        state = guard.record_failure(account, now=NOW)

        assert state is LockState.WARNING
        assert memory_store.get_account(account.id).failed_attempts == 1

    def test_lock_after_threshold_and_check_raises(self, memory_store, account):
        guard = LockoutGuard(memory_store, POLICY)
        for _ in range(5):
            state = guard.record_failure(account, now=NOW)

        assert state is LockState.LOCKED
        with pytest.raises(AccountLocked) as exc_info:
            guard.check(memory_store.get_account(account.id), now=NOW + timedelta(minutes=1))
        assert exc_info.value.remaining_seconds == 29 * 60
        assert exc_info.value.detail == {"remaining_seconds": 29 * 60}

    def test_check_passes_once_lock_elapsed(self, memory_store, account):
        guard = LockoutGuard(memory_store, POLICY)
        for _ in range(5):
            guard.record_failure(account, now=NOW)

        guard.check(account, now=NOW + timedelta(minutes=31))

    def test_record_success_clears_counter(self, memory_store, account):
        guard = LockoutGuard(memory_store, POLICY)
        guard.record_failure(account, now=NOW)
        guard.record_failure(account, now=NOW)

        guard.record_success(account)

        stored = memory_store.get_account(account.id)
        assert stored.failed_attempts == 0
        assert stored.lock_until is None

    def test_policy_from_settings(self, settings):
        policy = LockoutPolicy.from_settings(settings)

        assert policy.threshold == 5
        assert policy.lock_duration == timedelta(minutes=30)
