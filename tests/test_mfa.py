"""Tests for TOTP verification, replay protection and backup codes."""

import re
from urllib.parse import parse_qs, urlparse

import pytest

from authcore.service.errors import InvalidSecondFactor
from authcore.service.mfa import MFAVerifier, hash_backup_code, normalize_backup_code

# RFC 6238 appendix B secret (ASCII "12345678901234567890")
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def verifier(memory_store):
    return MFAVerifier(memory_store, issuer="AuthCore")


@pytest.fixture
def mfa_account(memory_store, verifier):
    account = memory_store.create_account("totpuser", "totp@example.com", "hash")
    memory_store.set_mfa_secret(account.id, RFC_SECRET)
    _plain, records = verifier.generate_backup_codes()
    memory_store.enable_mfa(account.id, records)
    return memory_store.get_account(account.id)


class TestTOTP:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1111111111, "050471"),
            (1234567890, "005924"),
        ],
    )
    def test_rfc6238_vectors(self, verifier, timestamp, expected):
        assert verifier.generate_totp(RFC_SECRET, timestamp) == expected

    def test_new_secret_is_160_bit_base32(self, verifier):
        secret = verifier.new_secret()

        assert re.fullmatch(r"[A-Z2-7]{32}", secret)
        assert verifier.new_secret() != secret

    def test_provisioning_uri(self, verifier):
        uri = verifier.provisioning_uri("SECRET", "alice@example.com")
        parsed = urlparse(uri)
        query = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert "AuthCore%3Aalice%40example.com" in parsed.path
        assert query["secret"] == ["SECRET"]
        assert query["issuer"] == ["AuthCore"]
        assert query["digits"] == ["6"]
        assert query["period"] == ["30"]

    def test_match_step_allows_one_step_drift(self, verifier):
        ts = 1111111111
        previous = verifier.generate_totp(RFC_SECRET, ts - 30)
        following = verifier.generate_totp(RFC_SECRET, ts + 30)

        assert verifier.match_step(RFC_SECRET, previous, ts) == ts // 30 - 1
        assert verifier.match_step(RFC_SECRET, following, ts) == ts // 30 + 1

    def test_match_step_rejects_outside_window(self, verifier):
        ts = 1111111111
        stale = verifier.generate_totp(RFC_SECRET, ts - 90)

        assert verifier.match_step(RFC_SECRET, stale, ts) is None

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_match_step_rejects_malformed(self, verifier, code):
        assert verifier.match_step(RFC_SECRET, code, 59) is None

    def test_verify_totp_records_step_and_rejects_replay(self, verifier, mfa_account):
        ts = 1234567890
        code = verifier.generate_totp(RFC_SECRET, ts)

        assert verifier.verify_totp(mfa_account, code, timestamp=ts) is True
        assert verifier.verify_totp(mfa_account, code, timestamp=ts) is False

    def test_older_step_rejected_after_newer_accepted(self, verifier, mfa_account):
        ts = 1234567890
        newer = verifier.generate_totp(RFC_SECRET, ts + 30)
        older = verifier.generate_totp(RFC_SECRET, ts)

        assert verifier.verify_totp(mfa_account, newer, timestamp=ts) is True
        assert verifier.verify_totp(mfa_account, older, timestamp=ts) is False

    def test_next_step_accepted_after_previous(self, verifier, mfa_account):
        ts = 1234567890

        assert verifier.verify_totp(
            mfa_account, verifier.generate_totp(RFC_SECRET, ts), timestamp=ts
        )
        assert verifier.verify_totp(
            mfa_account, verifier.generate_totp(RFC_SECRET, ts + 30), timestamp=ts + 30
        )

    def test_verify_totp_without_secret(self, verifier, memory_store):
        account = memory_store.create_account("nosecret", "nosecret@example.com", "hash")

        assert verifier.verify_totp(account, "123456") is False


class TestBackupCodes:
    def test_generated_codes_format_and_count(self, verifier):
        plain, records = verifier.generate_backup_codes()

        assert len(plain) == 10
        assert len(set(plain)) == 10
        assert all(re.fullmatch(r"[0-9A-F]{5}-[0-9A-F]{5}", code) for code in plain)
        assert [r.code_hash for r in records] == [hash_backup_code(c) for c in plain]
        assert not any(r.used for r in records)

    def test_normalization_ignores_case_and_separators(self):
        assert normalize_backup_code("ab12c-d34ef") == "AB12CD34EF"
        assert hash_backup_code("ab12c d34ef") == hash_backup_code("AB12C-D34EF")

    def test_backup_code_consumed_once(self, verifier, memory_store):
        account = memory_store.create_account("backup", "backup@example.com", "hash")
        memory_store.set_mfa_secret(account.id, RFC_SECRET)
        plain, records = verifier.generate_backup_codes()
        memory_store.enable_mfa(account.id, records)
        account = memory_store.get_account(account.id)

        assert verifier.verify_backup_code(account, plain[0]) is True
        assert verifier.verify_backup_code(account, plain[0]) is False
        assert verifier.verify_backup_code(account, plain[0].lower()) is False
        assert verifier.remaining_backup_codes(account.id) == 9

    def test_unknown_backup_code_rejected(self, verifier, mfa_account):
        assert verifier.verify_backup_code(mfa_account, "00000-00000") is False
        assert verifier.verify_backup_code(mfa_account, "--") is False


class TestSecondFactor:
    def test_totp_result(self, verifier, mfa_account):
        code = verifier.generate_totp(RFC_SECRET)

        result = verifier.verify_second_factor(mfa_account, code=code)

        assert result.method == "totp"
        assert result.backup_codes_remaining == 10
        assert result.regenerate_recommended is False

    def test_backup_code_result_recommends_regeneration_when_low(
        self, verifier, memory_store
    ):
        account = memory_store.create_account("lowcodes", "low@example.com", "hash")
        memory_store.set_mfa_secret(account.id, RFC_SECRET)
        plain, records = verifier.generate_backup_codes()
        memory_store.enable_mfa(account.id, records)
        account = memory_store.get_account(account.id)

        for code in plain[:7]:
            result = verifier.verify_second_factor(account, backup_code=code)

        assert result.method == "backup_code"
        assert result.backup_codes_remaining == 3
        assert result.regenerate_recommended is False

        result = verifier.verify_second_factor(account, backup_code=plain[7])
        assert result.backup_codes_remaining == 2
        assert result.regenerate_recommended is True

    def test_invalid_inputs_raise(self, verifier, mfa_account):
        with pytest.raises(InvalidSecondFactor):
            verifier.verify_second_factor(mfa_account)
        with pytest.raises(InvalidSecondFactor):
            verifier.verify_second_factor(mfa_account, code="abcdef", backup_code="nope")

    def test_status(self, verifier, memory_store, mfa_account):
        status = verifier.status(mfa_account)
        assert status.enabled is True
        assert status.pending_enrollment is False
        assert status.backup_codes_remaining == 10

        fresh = memory_store.create_account("fresh", "fresh@example.com", "hash")
        memory_store.set_mfa_secret(fresh.id, RFC_SECRET)
        status = verifier.status(memory_store.get_account(fresh.id))
        assert status.enabled is False
        assert status.pending_enrollment is True
        assert status.regenerate_recommended is False
