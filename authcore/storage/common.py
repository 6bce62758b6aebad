"""Serialization helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet

from authcore.storage.models import (
    Account,
    ActionToken,
    BackupCode,
    DeviceInfo,
    PendingSession,
    RefreshToken,
)


def digest_token(raw: str) -> str:
    """Return the lookup key under which an opaque client credential is stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_identifier(value: str) -> str:
    return (value or "").strip().lower()


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_backup_codes(codes: List[BackupCode]) -> List[Dict[str, Any]]:
    return [
        {"code_hash": c.code_hash, "used": c.used, "used_at": to_iso(c.used_at)}
        for c in codes
    ]


def deserialize_backup_codes(raw: Optional[List[Dict[str, Any]]]) -> List[BackupCode]:
    return [
        BackupCode(
            code_hash=entry["code_hash"],
            used=bool(entry.get("used")),
            used_at=from_iso(entry.get("used_at")),
        )
        for entry in raw or []
    ]


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "handle": account.handle,
        "email": account.email,
        "password_hash": account.password_hash,
        "password_history": list(account.password_history),
        "roles": list(account.roles),
        "status": account.status,
        "failed_attempts": account.failed_attempts,
        "lock_until": to_iso(account.lock_until),
        "mfa_enabled": account.mfa_enabled,
        "mfa_secret": account.mfa_secret,
        "mfa_last_step": account.mfa_last_step,
        "backup_codes": serialize_backup_codes(account.backup_codes),
        "password_changed_at": to_iso(account.password_changed_at),
        "created_at": to_iso(account.created_at),
        "email_verified": account.email_verified,
        "last_login_at": to_iso(account.last_login_at),
        "last_login_ip": account.last_login_ip,
        "meta": account.meta,
    }


def deserialize_account(data: Dict[str, Any]) -> Account:
    return Account(
        id=data["id"],
        handle=data["handle"],
        email=data["email"],
        password_hash=data["password_hash"],
        password_history=list(data.get("password_history") or []),
        roles=list(data.get("roles") or ["user"]),
        status=data.get("status", "active"),
        failed_attempts=int(data.get("failed_attempts") or 0),
        lock_until=from_iso(data.get("lock_until")),
        mfa_enabled=bool(data.get("mfa_enabled")),
        mfa_secret=data.get("mfa_secret"),
        mfa_last_step=data.get("mfa_last_step"),
        backup_codes=deserialize_backup_codes(data.get("backup_codes")),
        password_changed_at=from_iso(data.get("password_changed_at")),
        created_at=from_iso(data.get("created_at")),
        email_verified=bool(data.get("email_verified")),
        last_login_at=from_iso(data.get("last_login_at")),
        last_login_ip=data.get("last_login_ip"),
        meta=data.get("meta"),
    )


def serialize_refresh_token(record: RefreshToken) -> Dict[str, Any]:
    return {
        "token": record.token,
        "account_id": record.account_id,
        "device_id": record.device_id,
        "family": record.family,
        "parent": record.parent,
        "active": record.active,
        "expires_at": to_iso(record.expires_at),
        "created_at": to_iso(record.created_at),
        "last_used_at": to_iso(record.last_used_at),
        "use_count": record.use_count,
        "revoked_at": to_iso(record.revoked_at),
        "revoked_reason": record.revoked_reason,
        "revoked_by": record.revoked_by,
        "device": record.device.to_dict() if record.device else None,
        "trusted": record.trusted,
    }


def deserialize_refresh_token(data: Dict[str, Any]) -> RefreshToken:
    device = data.get("device")
    return RefreshToken(
        token=data["token"],
        account_id=data["account_id"],
        device_id=data["device_id"],
        family=data["family"],
        parent=data.get("parent"),
        active=bool(data.get("active")),
        expires_at=from_iso(data["expires_at"]),
        created_at=from_iso(data.get("created_at")),
        last_used_at=from_iso(data.get("last_used_at")),
        use_count=int(data.get("use_count") or 0),
        revoked_at=from_iso(data.get("revoked_at")),
        revoked_reason=data.get("revoked_reason"),
        revoked_by=data.get("revoked_by"),
        device=DeviceInfo.from_dict(device) if device else None,
        trusted=bool(data.get("trusted")),
    )


def serialize_pending_session(pending: PendingSession) -> Dict[str, Any]:
    return {
        "handle": pending.handle,
        "account_id": pending.account_id,
        "expires_at": to_iso(pending.expires_at),
        "device": pending.device.to_dict() if pending.device else None,
        "remember_me": pending.remember_me,
        "attempts": pending.attempts,
        "created_at": to_iso(pending.created_at),
    }


def deserialize_pending_session(data: Dict[str, Any]) -> PendingSession:
    device = data.get("device")
    return PendingSession(
        handle=data["handle"],
        account_id=data["account_id"],
        expires_at=from_iso(data["expires_at"]),
        device=DeviceInfo.from_dict(device) if device else None,
        remember_me=bool(data.get("remember_me")),
        attempts=int(data.get("attempts") or 0),
        created_at=from_iso(data.get("created_at")),
    )


def serialize_action_token(token: ActionToken) -> Dict[str, Any]:
    return {
        "token": token.token,
        "account_id": token.account_id,
        "purpose": token.purpose,
        "expires_at": to_iso(token.expires_at),
        "created_at": to_iso(token.created_at),
    }


def deserialize_action_token(data: Dict[str, Any]) -> ActionToken:
    return ActionToken(
        token=data["token"],
        account_id=data["account_id"],
        purpose=data["purpose"],
        expires_at=from_iso(data["expires_at"]),
        created_at=from_iso(data.get("created_at")),
    )


def derive_mfa_cipher(key_material: str) -> Fernet:
    """Build the Fernet cipher that protects TOTP secrets at rest."""
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)
