from __future__ import annotations

import copy
import json
import os
import secrets
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.common import (
    derive_mfa_cipher,
    deserialize_account,
    deserialize_action_token,
    deserialize_pending_session,
    deserialize_refresh_token,
    normalize_identifier,
    serialize_account,
    serialize_action_token,
    serialize_pending_session,
    serialize_refresh_token,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    ActionToken,
    BackupCode,
    PendingSession,
    RefreshToken,
    new_account_id,
    utcnow,
)


class MemoryStore:
    """In-process store for development and tests.

    Every read and write happens under one re-entrant lock, which is what
    makes the conditional operations (rotation, backup code consumption,
    TOTP step advancement, pending session consumption) atomic. State is
    mirrored to ``<fs_root>/state/authcore_state.json`` when ``fs_root`` is
    given. Records handed out are copies; callers mutate state only through
    store methods.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.pending_sessions: Dict[str, PendingSession] = {}
        self.action_tokens: Dict[str, ActionToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "authcore_state.json"

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            # Ephemeral key: only acceptable when nothing is persisted
            if self.fs_root is not None:
                raise RuntimeError(
                    "MFA encryption key required when memory store state is persisted"
                )
            material = secrets.token_urlsafe(64)
        return derive_mfa_cipher(material)

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted") from None

    def _account_view(self, account: Account) -> Account:
        view = copy.deepcopy(account)
        view.mfa_secret = self._decrypt_mfa_secret(account.mfa_secret)
        return view

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        handle: str,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        status: str = "active",
        email_verified: bool = False,
    ) -> Account:
        handle = normalize_identifier(handle)
        email = normalize_identifier(email)
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.handle == handle:
                    raise ConstraintViolation("handle already exists", {"field": "handle"})
            now = utcnow()
            account = Account(
                id=new_account_id(),
                handle=handle,
                email=email,
                password_hash=password_hash,
                roles=list(roles or ["user"]),
                status=status,
                email_verified=email_verified,
                password_changed_at=now,
                created_at=now,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._account_view(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._account_view(account) if account else None

    def get_account_by_identifier(self, identifier: str) -> Optional[Account]:
        key = normalize_identifier(identifier)
        if not key:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.handle == key or account.email == key:
                    return self._account_view(account)
        return None

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        password_history: List[str],
        changed_at: datetime,
    ) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_hash = password_hash
            account.password_history = list(password_history)
            account.password_changed_at = changed_at
            self._persist_state()

    def update_lockout(
        self, account_id: str, failed_attempts: int, lock_until: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.failed_attempts = failed_attempts
            account.lock_until = lock_until
            self._persist_state()

    def record_login(self, account_id: str, at: datetime, ip_addr: Optional[str]) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.last_login_at = at
            account.last_login_ip = ip_addr
            self._persist_state()

    def set_account_status(
        self, account_id: str, status: str, *, email_verified: Optional[bool] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = status
            if email_verified is not None:
                account.email_verified = email_verified
            self._persist_state()
            return self._account_view(account)

    def set_mfa_secret(self, account_id: str, secret: str) -> None:
        """Store an unconfirmed secret; MFA stays disabled until enabled."""
        with self._data_lock:
            account = self._require_account(account_id)
            account.mfa_secret = self._encrypt_mfa_secret(secret)
            account.mfa_enabled = False
            account.mfa_last_step = None
            account.backup_codes = []
            self._persist_state()

    def enable_mfa(self, account_id: str, backup_codes: List[BackupCode]) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            if not account.mfa_secret:
                raise ConstraintViolation("no pending mfa secret", {"account_id": account_id})
            account.mfa_enabled = True
            account.backup_codes = copy.deepcopy(backup_codes)
            self._persist_state()

    def clear_mfa(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.mfa_enabled = False
            account.mfa_secret = None
            account.mfa_last_step = None
            account.backup_codes = []
            self._persist_state()

    def replace_backup_codes(self, account_id: str, backup_codes: List[BackupCode]) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.backup_codes = copy.deepcopy(backup_codes)
            self._persist_state()

    def consume_backup_code(self, account_id: str, code_hash: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            for code in account.backup_codes:
                if code.code_hash == code_hash and not code.used:
                    code.used = True
                    code.used_at = now
                    self._persist_state()
                    return True
            return False

    def advance_mfa_step(self, account_id: str, step: int) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if account.mfa_last_step is not None and step <= account.mfa_last_step:
                return False
            account.mfa_last_step = step
            self._persist_state()
            return True

    # -- refresh tokens -----------------------------------------------------

    def insert_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return copy.deepcopy(record) if record else None

    def rotate_refresh_token(
        self, old_token: str, new_record: RefreshToken, now: datetime
    ) -> bool:
        with self._data_lock:
            old = self.refresh_tokens.get(old_token)
            if not old or not old.active:
                return False
            if new_record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            old.active = False
            old.revoked_at = now
            old.revoked_reason = "rotation"
            old.revoked_by = "system"
            self.refresh_tokens[new_record.token] = copy.deepcopy(new_record)
            self._persist_state()
            return True

    def _revoke(self, record: RefreshToken, reason: str, actor: str, now: datetime) -> None:
        record.active = False
        record.revoked_at = now
        record.revoked_reason = reason
        record.revoked_by = actor

    def revoke_refresh_token(
        self, token: str, reason: str, actor: str, now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or not record.active:
                return False
            self._revoke(record, reason, actor, now)
            self._persist_state()
            return True

    def revoke_family(self, family: str, reason: str, actor: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.family == family and record.active:
                    self._revoke(record, reason, actor, now)
                    count += 1
            if count:
                self._persist_state()
            return count

    def revoke_account_tokens(
        self,
        account_id: str,
        reason: str,
        actor: str,
        now: datetime,
        *,
        device_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.account_id != account_id or not record.active:
                    continue
                if device_id is not None and record.device_id != device_id:
                    continue
                self._revoke(record, reason, actor, now)
                count += 1
            if count:
                self._persist_state()
            return count

    def list_refresh_tokens(
        self, account_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        with self._data_lock:
            return [
                copy.deepcopy(record)
                for record in self.refresh_tokens.values()
                if record.account_id == account_id and (record.active or not active_only)
            ]

    def set_device_trust(self, account_id: str, device_id: str, trusted: bool) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.account_id == account_id and record.device_id == device_id:
                    record.trusted = trusted
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [key for key, record in self.refresh_tokens.items() if record.expires_at <= now]
            for key in expired:
                del self.refresh_tokens[key]
            if expired:
                self._persist_state()
            return len(expired)

    # -- pending second-factor sessions -------------------------------------

    def create_pending_session(self, pending: PendingSession) -> None:
        with self._data_lock:
            self.pending_sessions[pending.handle] = copy.deepcopy(pending)
            self._persist_state()

    def get_pending_session(self, handle: str) -> Optional[PendingSession]:
        with self._data_lock:
            pending = self.pending_sessions.get(handle)
            return copy.deepcopy(pending) if pending else None

    def consume_pending_session(self, handle: str) -> Optional[PendingSession]:
        with self._data_lock:
            pending = self.pending_sessions.pop(handle, None)
            if pending:
                self._persist_state()
            return pending

    def delete_pending_sessions_for_account(self, account_id: str) -> int:
        with self._data_lock:
            doomed = [h for h, p in self.pending_sessions.items() if p.account_id == account_id]
            for handle in doomed:
                del self.pending_sessions[handle]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_pending_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [h for h, p in self.pending_sessions.items() if p.expires_at <= now]
            for handle in expired:
                del self.pending_sessions[handle]
            if expired:
                self._persist_state()
            return len(expired)

    # -- single-use emailed tokens ------------------------------------------

    def create_action_token(self, token: ActionToken) -> None:
        with self._data_lock:
            self.action_tokens[token.token] = copy.deepcopy(token)
            self._persist_state()

    def get_action_token(self, token: str, purpose: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.get(token)
            if not record or record.purpose != purpose:
                return None
            return copy.deepcopy(record)

    def consume_action_token(self, token: str, purpose: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.get(token)
            if not record or record.purpose != purpose:
                return None
            del self.action_tokens[token]
            self._persist_state()
            return record

    def delete_expired_action_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, t in self.action_tokens.items() if t.expires_at <= now]
            for key in expired:
                del self.action_tokens[key]
            if expired:
                self._persist_state()
            return len(expired)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "accounts": [serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "pending_sessions": [
                serialize_pending_session(p) for p in self.pending_sessions.values()
            ],
            "action_tokens": [
                serialize_action_token(t) for t in self.action_tokens.values()
            ],
        }
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        self.accounts = {a["id"]: deserialize_account(a) for a in data.get("accounts", [])}
        self.refresh_tokens = {
            r["token"]: deserialize_refresh_token(r) for r in data.get("refresh_tokens", [])
        }
        self.pending_sessions = {
            p["handle"]: deserialize_pending_session(p)
            for p in data.get("pending_sessions", [])
        }
        self.action_tokens = {
            t["token"]: deserialize_action_token(t) for t in data.get("action_tokens", [])
        }
        return True
