from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

ACCOUNT_STATUSES = ("active", "pending", "suspended", "inactive")
REVOKE_ACTORS = ("user", "admin", "system")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class Account:
    id: str
    handle: str
    email: str
    password_hash: str
    password_history: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=lambda: ["user"])
    status: str = "active"
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_last_step: Optional[int] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    password_changed_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def unused_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)


@dataclass
class DeviceInfo:
    """Client device descriptor derived from connection metadata."""

    device_id: str
    name: str = "Unknown Device"
    type: str = "desktop"
    os: str = "Unknown"
    browser: str = "Unknown"
    location: str = "Unknown"
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "type": self.type,
            "os": self.os,
            "browser": self.browser,
            "location": self.location,
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DeviceInfo":
        return cls(
            device_id=data["device_id"],
            name=data.get("name") or "Unknown Device",
            type=data.get("type") or "desktop",
            os=data.get("os") or "Unknown",
            browser=data.get("browser") or "Unknown",
            location=data.get("location") or "Unknown",
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class RefreshToken:
    """Persisted refresh token record.

    ``token`` and ``parent`` hold SHA-256 digests of the client-side values;
    the raw credential only ever exists in the response that issued it.
    """

    token: str
    account_id: str
    device_id: str
    family: str
    expires_at: datetime
    parent: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    use_count: int = 0
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    revoked_by: Optional[str] = None
    device: Optional[DeviceInfo] = None
    trusted: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_usable(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)


@dataclass
class PendingSession:
    """First factor passed, second factor outstanding."""

    handle: str
    account_id: str
    expires_at: datetime
    device: Optional[DeviceInfo] = None
    remember_me: bool = False
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        handle: str,
        account_id: str,
        ttl_minutes: int,
        *,
        device: DeviceInfo | None = None,
        remember_me: bool = False,
    ) -> "PendingSession":
        now = utcnow()
        return cls(
            handle=handle,
            account_id=account_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device=device,
            remember_me=remember_me,
            created_at=now,
        )


@dataclass
class ActionToken:
    """Single-use emailed token (password reset, email verification)."""

    token: str
    account_id: str
    purpose: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


def new_account_id() -> str:
    return str(uuid.uuid4())
