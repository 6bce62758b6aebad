"""Tests for argon2id hashing and the password strength policy."""

import pytest

from authcore.service.errors import WeakPassword
from authcore.service.passwords import (
    PasswordHasher,
    check_password_strength,
    password_strength_failures,
)


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordHasher:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        digest = hasher.hash("Correct-Horse-42")

        assert digest.startswith("$argon2id$")
        assert "Correct-Horse-42" not in digest

    def test_same_password_produces_different_hashes(self, hasher):
        assert hasher.hash("Correct-Horse-42") != hasher.hash("Correct-Horse-42")

    def test_verify_accepts_correct_password(self, hasher):
        digest = hasher.hash("Correct-Horse-42")

        assert hasher.verify("Correct-Horse-42", digest) is True

    def test_verify_rejects_wrong_password(self, hasher):
        digest = hasher.hash("Correct-Horse-42")

        assert hasher.verify("correct-horse-42", digest) is False

    def test_verify_returns_false_for_malformed_digest(self, hasher):
        assert hasher.verify("Correct-Horse-42", "not-a-hash") is False
        assert hasher.verify("Correct-Horse-42", None) is False
        assert hasher.verify("Correct-Horse-42", "") is False

    def test_needs_rehash_when_parameters_change(self, hasher):
        digest = hasher.hash("Correct-Horse-42")
        stronger = PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1)

        assert hasher.needs_rehash(digest) is False
        assert stronger.needs_rehash(digest) is True

    def test_needs_rehash_for_garbage(self, hasher):
        assert hasher.needs_rehash("garbage") is True

    def test_matches_any_finds_entry_in_history(self, hasher):
        history = [hasher.hash(p) for p in ("First-Pass-1", "Second-Pass-2", "Third-Pass-3")]

        assert hasher.matches_any("Second-Pass-2", history) is True
        assert hasher.matches_any("Fourth-Pass-4", history) is False
        assert hasher.matches_any("Fourth-Pass-4", []) is False

    def test_burn_does_not_raise(self, hasher):
        hasher.burn("anything")
        hasher.burn("")


class TestStrengthPolicy:
    def test_strong_password_has_no_failures(self):
        assert password_strength_failures("Correct-Horse-42") == []

    def test_too_short(self):
        failures = password_strength_failures("Ab1!", min_length=8)

        assert "min_length:8" in failures

    def test_too_long(self):
        failures = password_strength_failures("Aa1!" * 40, max_length=128)

        assert failures == ["max_length:128"]

    def test_three_of_four_classes_is_enough(self):
        assert password_strength_failures("lowercase123!") == []
        assert password_strength_failures("UPPERlower123") == []

    def test_two_classes_is_not_enough(self):
        assert password_strength_failures("lowercaseonly1") == ["character_classes:3"]

    def test_check_raises_weak_password_with_failures(self):
        with pytest.raises(WeakPassword) as exc_info:
            check_password_strength("short")

        assert exc_info.value.error_code == "weak_password"
        assert "min_length:8" in exc_info.value.detail["failures"]
        assert "character_classes:3" in exc_info.value.detail["failures"]

    def test_check_treats_none_as_empty(self):
        with pytest.raises(WeakPassword):
            check_password_strength(None)
