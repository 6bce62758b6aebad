from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from cryptography.fernet import InvalidToken
from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import (
    derive_mfa_cipher,
    deserialize_backup_codes,
    normalize_identifier,
    serialize_backup_codes,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    Account,
    ActionToken,
    BackupCode,
    DeviceInfo,
    PendingSession,
    RefreshToken,
    new_account_id,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        handle TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
        roles JSONB NOT NULL DEFAULT '["user"]'::jsonb,
        status TEXT NOT NULL DEFAULT 'active',
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        mfa_last_step BIGINT,
        backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        password_changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        device_id TEXT NOT NULL,
        family TEXT NOT NULL,
        parent TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        use_count INTEGER NOT NULL DEFAULT 0,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        revoked_by TEXT,
        device JSONB,
        trusted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family)",
    # At most one live token per family, enforced by the database as well
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_family_active_idx
        ON refresh_token (family) WHERE active
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_session (
        handle TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        expires_at TIMESTAMPTZ NOT NULL,
        device JSONB,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS action_token (
        token TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REFRESH_COLUMNS = (
    "token, account_id, device_id, family, parent, active, expires_at, created_at, "
    "last_used_at, use_count, revoked_at, revoked_reason, revoked_by, device, trusted"
)


class PostgresStore:
    """Postgres-backed store for accounts, refresh tokens and pending sessions."""

    def __init__(
        self, dsn: str, *, mfa_encryption_key: str, ensure_schema: bool = True
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = derive_mfa_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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

    @staticmethod
    def _json(value: Any) -> Optional[str]:
        return json.dumps(value) if value is not None else None

    @staticmethod
    def _load_json(value: Any) -> Any:
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            handle=row["handle"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_history=list(self._load_json(row.get("password_history")) or []),
            roles=list(self._load_json(row.get("roles")) or ["user"]),
            status=row.get("status") or "active",
            failed_attempts=int(row.get("failed_attempts") or 0),
            lock_until=row.get("lock_until"),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_secret=self._decrypt_mfa_secret(row.get("mfa_secret")),
            mfa_last_step=row.get("mfa_last_step"),
            backup_codes=deserialize_backup_codes(self._load_json(row.get("backup_codes"))),
            password_changed_at=row["password_changed_at"],
            created_at=row["created_at"],
            email_verified=bool(row.get("email_verified")),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            meta=self._load_json(row.get("meta")),
        )

    def _refresh_from_row(self, row: Dict[str, Any]) -> RefreshToken:
        device = self._load_json(row.get("device"))
        return RefreshToken(
            token=row["token"],
            account_id=row["account_id"],
            device_id=row["device_id"],
            family=row["family"],
            parent=row.get("parent"),
            active=bool(row["active"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            use_count=int(row.get("use_count") or 0),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            revoked_by=row.get("revoked_by"),
            device=DeviceInfo.from_dict(device) if device else None,
            trusted=bool(row.get("trusted")),
        )

    def _pending_from_row(self, row: Dict[str, Any]) -> PendingSession:
        device = self._load_json(row.get("device"))
        return PendingSession(
            handle=row["handle"],
            account_id=row["account_id"],
            expires_at=row["expires_at"],
            device=DeviceInfo.from_dict(device) if device else None,
            remember_me=bool(row.get("remember_me")),
            attempts=int(row.get("attempts") or 0),
            created_at=row["created_at"],
        )

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
        account_id = new_account_id()
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, handle, email, password_hash, roles, status,
                                         email_verified, password_changed_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        handle,
                        email,
                        password_hash,
                        self._json(list(roles or ["user"])),
                        status,
                        email_verified,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            field = "handle" if "handle" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_identifier(self, identifier: str) -> Optional[Account]:
        key = normalize_identifier(identifier)
        if not key:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE handle = %s OR email = %s LIMIT 1",
                (key, key),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        password_history: List[str],
        changed_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                   SET password_hash = %s, password_history = %s, password_changed_at = %s
                 WHERE id = %s
                """,
                (password_hash, self._json(list(password_history)), changed_at, account_id),
            )

    def update_lockout(
        self, account_id: str, failed_attempts: int, lock_until: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET failed_attempts = %s, lock_until = %s WHERE id = %s",
                (failed_attempts, lock_until, account_id),
            )

    def record_login(self, account_id: str, at: datetime, ip_addr: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s, last_login_ip = %s WHERE id = %s",
                (at, ip_addr, account_id),
            )

    def set_account_status(
        self, account_id: str, status: str, *, email_verified: Optional[bool] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                   SET status = %s, email_verified = COALESCE(%s, email_verified)
                 WHERE id = %s
                RETURNING *
                """,
                (status, email_verified, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_mfa_secret(self, account_id: str, secret: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                   SET mfa_secret = %s, mfa_enabled = FALSE, mfa_last_step = NULL,
                       backup_codes = '[]'::jsonb
                 WHERE id = %s
                """,
                (self._encrypt_mfa_secret(secret), account_id),
            )

    def enable_mfa(self, account_id: str, backup_codes: List[BackupCode]) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET mfa_enabled = TRUE, backup_codes = %s
                 WHERE id = %s AND mfa_secret IS NOT NULL
                """,
                (self._json(serialize_backup_codes(backup_codes)), account_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("no pending mfa secret", {"account_id": account_id})

    def clear_mfa(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                   SET mfa_enabled = FALSE, mfa_secret = NULL, mfa_last_step = NULL,
                       backup_codes = '[]'::jsonb
                 WHERE id = %s
                """,
                (account_id,),
            )

    def replace_backup_codes(self, account_id: str, backup_codes: List[BackupCode]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET backup_codes = %s WHERE id = %s",
                (self._json(serialize_backup_codes(backup_codes)), account_id),
            )

    def consume_backup_code(self, account_id: str, code_hash: str, now: datetime) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT backup_codes FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not row:
                return False
            codes = deserialize_backup_codes(self._load_json(row["backup_codes"]))
            for code in codes:
                if code.code_hash == code_hash and not code.used:
                    code.used = True
                    code.used_at = now
                    break
            else:
                return False
            conn.execute(
                "UPDATE account SET backup_codes = %s WHERE id = %s",
                (self._json(serialize_backup_codes(codes)), account_id),
            )
            return True

    def advance_mfa_step(self, account_id: str, step: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET mfa_last_step = %s
                 WHERE id = %s AND (mfa_last_step IS NULL OR mfa_last_step < %s)
                """,
                (step, account_id, step),
            )
            return result.rowcount > 0

    # -- refresh tokens -----------------------------------------------------

    def _insert_refresh(self, conn, record: RefreshToken) -> None:
        conn.execute(
            f"""
            INSERT INTO refresh_token ({_REFRESH_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.account_id,
                record.device_id,
                record.family,
                record.parent,
                record.active,
                record.expires_at,
                record.created_at,
                record.last_used_at,
                record.use_count,
                record.revoked_at,
                record.revoked_reason,
                record.revoked_by,
                self._json(record.device.to_dict()) if record.device else None,
                record.trusted,
            ),
        )

    def insert_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, new_record: RefreshToken, now: datetime
    ) -> bool:
        """Retire ``old_token`` and insert ``new_record`` in one transaction.

        The retirement is conditional on the old row still being active; when
        it matches zero rows nothing is written and ``False`` is returned.
        """
        try:
            with self._connect() as conn, conn.transaction():
                retired = conn.execute(
                    """
                    UPDATE refresh_token
                       SET active = FALSE, revoked_at = %s,
                           revoked_reason = 'rotation', revoked_by = 'system'
                     WHERE token = %s AND active
                    RETURNING token
                    """,
                    (now, old_token),
                ).fetchone()
                if retired is None:
                    return False
                self._insert_refresh(conn, new_record)
                return True
        except errors.UniqueViolation:
            # A concurrent rotation of the same family won the race
            return False

    def revoke_refresh_token(
        self, token: str, reason: str, actor: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                   SET active = FALSE, revoked_at = %s, revoked_reason = %s, revoked_by = %s
                 WHERE token = %s AND active
                """,
                (now, reason, actor, token),
            )
            return result.rowcount > 0

    def revoke_family(self, family: str, reason: str, actor: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                   SET active = FALSE, revoked_at = %s, revoked_reason = %s, revoked_by = %s
                 WHERE family = %s AND active
                """,
                (now, reason, actor, family),
            )
            return result.rowcount

    def revoke_account_tokens(
        self,
        account_id: str,
        reason: str,
        actor: str,
        now: datetime,
        *,
        device_id: Optional[str] = None,
    ) -> int:
        query = """
            UPDATE refresh_token
               SET active = FALSE, revoked_at = %s, revoked_reason = %s, revoked_by = %s
             WHERE account_id = %s AND active
        """
        params: list = [now, reason, actor, account_id]
        if device_id is not None:
            query += " AND device_id = %s"
            params.append(device_id)
        with self._connect() as conn:
            return conn.execute(query, params).rowcount

    def list_refresh_tokens(
        self, account_id: str, *, active_only: bool = False
    ) -> List[RefreshToken]:
        query = "SELECT * FROM refresh_token WHERE account_id = %s"
        if active_only:
            query += " AND active"
        query += " ORDER BY last_used_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def set_device_trust(self, account_id: str, device_id: str, trusted: bool) -> int:
        with self._connect() as conn:
            return conn.execute(
                "UPDATE refresh_token SET trusted = %s WHERE account_id = %s AND device_id = %s",
                (trusted, account_id, device_id),
            ).rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
            ).rowcount

    # -- pending second-factor sessions -------------------------------------

    def create_pending_session(self, pending: PendingSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_session (handle, account_id, expires_at, device,
                                             remember_me, attempts, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    pending.handle,
                    pending.account_id,
                    pending.expires_at,
                    self._json(pending.device.to_dict()) if pending.device else None,
                    pending.remember_me,
                    pending.attempts,
                    pending.created_at,
                ),
            )

    def get_pending_session(self, handle: str) -> Optional[PendingSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_session WHERE handle = %s", (handle,)
            ).fetchone()
        return self._pending_from_row(row) if row else None

    def consume_pending_session(self, handle: str) -> Optional[PendingSession]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM pending_session WHERE handle = %s RETURNING *", (handle,)
            ).fetchone()
        return self._pending_from_row(row) if row else None

    def delete_pending_sessions_for_account(self, account_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM pending_session WHERE account_id = %s", (account_id,)
            ).rowcount

    def delete_expired_pending_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM pending_session WHERE expires_at <= %s", (now,)
            ).rowcount

    # -- single-use emailed tokens ------------------------------------------

    def create_action_token(self, token: ActionToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO action_token (token, account_id, purpose, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (token.token, token.account_id, token.purpose, token.expires_at, token.created_at),
            )

    def _action_token_from_row(self, row: Dict[str, Any]) -> ActionToken:
        return ActionToken(
            token=row["token"],
            account_id=row["account_id"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def get_action_token(self, token: str, purpose: str) -> Optional[ActionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM action_token WHERE token = %s AND purpose = %s",
                (token, purpose),
            ).fetchone()
        return self._action_token_from_row(row) if row else None

    def consume_action_token(self, token: str, purpose: str) -> Optional[ActionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM action_token WHERE token = %s AND purpose = %s RETURNING *",
                (token, purpose),
            ).fetchone()
        return self._action_token_from_row(row) if row else None

    def delete_expired_action_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM action_token WHERE expires_at <= %s", (now,)
            ).rowcount
