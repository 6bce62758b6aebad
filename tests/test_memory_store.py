import json
from datetime import timedelta
from pathlib import Path

import pytest

from authcore.service.devices import fingerprint
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import ActionToken, BackupCode, PendingSession, RefreshToken, utcnow

KEY = "memory-store-test-key-material-0123456789"


def _refresh(account_id, token="digest-1", family="family-1"):
    device = fingerprint("pytest", "10.0.0.1")
    return RefreshToken(
        token=token,
        account_id=account_id,
        device_id=device.device_id,
        family=family,
        expires_at=utcnow() + timedelta(days=7),
        device=device,
    )


def test_memory_store_persists_accounts_and_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    account = store.create_account("persist", "persist@example.com", "hash", roles=["admin"])
    store.insert_refresh_token(_refresh(account.id))
    store.create_pending_session(PendingSession.new("pending-1", account.id, 10))
    store.create_action_token(
        ActionToken("reset-1", account.id, "password_reset", utcnow() + timedelta(minutes=10))
    )

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)

    assert reloaded.get_account(account.id).roles == ["admin"]
    token = reloaded.get_refresh_token("digest-1")
    assert token.family == "family-1"
    assert token.device.ip_addr == "10.0.0.1"
    assert reloaded.get_pending_session("pending-1").account_id == account.id
    assert reloaded.consume_action_token("reset-1", "password_reset").account_id == account.id


def test_mfa_secret_is_encrypted_in_state_file(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    account = store.create_account("secret", "secret@example.com", "hash")

    store.set_mfa_secret(account.id, "JBSWY3DPEHPK3PXP")

    raw = (Path(tmp_path) / "state" / "authcore_state.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert json.loads(raw)["accounts"][0]["mfa_secret"]
    assert store.get_account(account.id).mfa_secret == "JBSWY3DPEHPK3PXP"
    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    assert reloaded.get_account(account.id).mfa_secret == "JBSWY3DPEHPK3PXP"


def test_persisted_store_requires_key_material(tmp_path, monkeypatch):
    monkeypatch.delenv("MFA_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("JWT_SECRET", raising=False)

    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path))


def test_unreadable_state_file_starts_empty(tmp_path):
    state = Path(tmp_path) / "state"
    state.mkdir()
    (state / "authcore_state.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)

    assert store.accounts == {}


def test_returned_records_are_copies(memory_store):
    account = memory_store.create_account("copy", "copy@example.com", "hash")

    account.roles.append("admin")

    assert memory_store.get_account(account.id).roles == ["user"]


def test_duplicate_identifiers_are_rejected(memory_store):
    memory_store.create_account("dupe", "dupe@example.com", "hash")

    with pytest.raises(ConstraintViolation) as exc_info:
        memory_store.create_account("other", "DUPE@example.com", "hash")
    assert exc_info.value.detail == {"field": "email"}


def test_backup_code_consumed_once(memory_store):
    account = memory_store.create_account("codes", "codes@example.com", "hash")
    memory_store.set_mfa_secret(account.id, "JBSWY3DPEHPK3PXP")
    memory_store.enable_mfa(account.id, [BackupCode("hash-a"), BackupCode("hash-b")])

    assert memory_store.consume_backup_code(account.id, "hash-a", utcnow()) is True
    assert memory_store.consume_backup_code(account.id, "hash-a", utcnow()) is False
    assert memory_store.get_account(account.id).unused_backup_codes() == 1


def test_enable_mfa_requires_pending_secret(memory_store):
    account = memory_store.create_account("nosecret", "nosecret@example.com", "hash")

    with pytest.raises(ConstraintViolation):
        memory_store.enable_mfa(account.id, [])


def test_mfa_step_only_moves_forward(memory_store):
    account = memory_store.create_account("steps", "steps@example.com", "hash")

    assert memory_store.advance_mfa_step(account.id, 10) is True
    assert memory_store.advance_mfa_step(account.id, 10) is False
    assert memory_store.advance_mfa_step(account.id, 9) is False
    assert memory_store.advance_mfa_step(account.id, 11) is True


def test_action_token_purpose_must_match(memory_store):
    account = memory_store.create_account("purpose", "purpose@example.com", "hash")
    memory_store.create_action_token(
        ActionToken("tok", account.id, "email_verification", utcnow() + timedelta(hours=1))
    )

    assert memory_store.consume_action_token("tok", "password_reset") is None
    assert memory_store.consume_action_token("tok", "email_verification") is not None
    assert memory_store.consume_action_token("tok", "email_verification") is None


def test_action_token_lookup_does_not_consume(memory_store):
    account = memory_store.create_account("lookup", "lookup@example.com", "hash")
    memory_store.create_action_token(
        ActionToken("tok", account.id, "password_reset", utcnow() + timedelta(hours=1))
    )

    assert memory_store.get_action_token("tok", "email_verification") is None
    assert memory_store.get_action_token("tok", "password_reset").account_id == account.id
    assert memory_store.consume_action_token("tok", "password_reset") is not None
    assert memory_store.get_action_token("tok", "password_reset") is None


def test_sweeps_drop_only_expired_rows(memory_store):
    account = memory_store.create_account("sweep", "sweep@example.com", "hash")
    past = utcnow() - timedelta(minutes=1)
    memory_store.insert_refresh_token(_refresh(account.id, "live"))
    expired = _refresh(account.id, "old", family="family-2")
    expired.expires_at = past
    memory_store.insert_refresh_token(expired)
    memory_store.create_pending_session(
        PendingSession("stale", account.id, expires_at=past)
    )
    memory_store.create_action_token(ActionToken("gone", account.id, "password_reset", past))

    now = utcnow()
    assert memory_store.delete_expired_refresh_tokens(now) == 1
    assert memory_store.delete_expired_pending_sessions(now) == 1
    assert memory_store.delete_expired_action_tokens(now) == 1
    assert memory_store.get_refresh_token("live") is not None
