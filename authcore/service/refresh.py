from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import TokenExpired, TokenInvalid, TokenReused, ValidationError
from authcore.storage.common import digest_token
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import REVOKE_ACTORS, DeviceInfo, RefreshToken, utcnow

logger = get_logger(__name__)

_TOKEN_BYTES = 40  # 320 bits
_FAMILY_BYTES = 16


def check_actor(actor: str) -> None:
    if actor not in REVOKE_ACTORS:
        raise ValidationError("Unknown revocation actor", detail={"actor": actor})


@dataclass
class IssuedRefreshToken:
    """A refresh credential as handed to the client, plus its stored record."""

    raw: str
    record: RefreshToken

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class RefreshRotationManager:
    """Issues, rotates and revokes refresh tokens organised in families.

    Every family has at most one active member. Rotation retires the
    presented token and creates its successor in one conditional store
    operation. Presenting a token that is already revoked is treated as
    theft: the whole family is revoked and ``TokenReused`` is raised.
    """

    def __init__(
        self,
        store,
        *,
        ttl: timedelta = timedelta(days=7),
        remember_ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.remember_ttl = remember_ttl

    @classmethod
    def from_settings(cls, store, settings: Settings) -> "RefreshRotationManager":
        return cls(
            store,
            ttl=timedelta(days=settings.refresh_token_ttl_days),
            remember_ttl=timedelta(days=settings.refresh_token_remember_days),
        )

    @staticmethod
    def _new_raw_token() -> str:
        return secrets.token_hex(_TOKEN_BYTES)

    def issue(
        self,
        account_id: str,
        device: DeviceInfo,
        *,
        remember_me: bool = False,
        trusted: bool = False,
        now: datetime | None = None,
    ) -> IssuedRefreshToken:
        now = now or utcnow()
        raw = self._new_raw_token()
        record = RefreshToken(
            token=digest_token(raw),
            account_id=account_id,
            device_id=device.device_id,
            family=secrets.token_hex(_FAMILY_BYTES),
            parent=None,
            active=True,
            expires_at=now + (self.remember_ttl if remember_me else self.ttl),
            created_at=now,
            last_used_at=now,
            device=device,
            trusted=trusted,
        )
        self.store.insert_refresh_token(record)
        logger.info(
            "refresh_family_started",
            account_id=account_id,
            device_id=device.device_id,
            family=record.family,
        )
        return IssuedRefreshToken(raw=raw, record=record)

    def lookup(self, raw_token: str) -> Optional[RefreshToken]:
        if not raw_token:
            return None
        return self.store.get_refresh_token(digest_token(raw_token))

    def rotate(
        self,
        raw_token: str,
        *,
        device: DeviceInfo | None = None,
        now: datetime | None = None,
    ) -> IssuedRefreshToken:
        now = now or utcnow()
        current = self.lookup(raw_token)
        if current is None:
            raise TokenInvalid()
        if not current.active:
            revoked = self.store.revoke_family(current.family, "reuse_detected", "system", now)
            logger.warning(
                "refresh_token_reuse_detected",
                account_id=current.account_id,
                family=current.family,
                device_id=current.device_id,
                previous_reason=current.revoked_reason,
                revoked=revoked,
            )
            raise TokenReused(current.family)
        if current.is_expired(now):
            raise TokenExpired()

        raw = self._new_raw_token()
        successor = RefreshToken(
            token=digest_token(raw),
            account_id=current.account_id,
            device_id=current.device_id,
            family=current.family,
            parent=current.token,
            active=True,
            # Family lifetime is fixed at login; rotation never extends it
            expires_at=current.expires_at,
            created_at=now,
            last_used_at=now,
            use_count=current.use_count + 1,
            device=self._merge_device(current.device, device),
            trusted=current.trusted,
        )
        try:
            rotated = self.store.rotate_refresh_token(current.token, successor, now)
        except ConstraintViolation:
            rotated = False
        if not rotated:
            # Another caller retired this token between our read and write
            logger.warning(
                "refresh_rotation_conflict",
                account_id=current.account_id,
                family=current.family,
            )
            raise TokenInvalid()
        return IssuedRefreshToken(raw=raw, record=successor)

    @staticmethod
    def _merge_device(
        stored: DeviceInfo | None, presented: DeviceInfo | None
    ) -> DeviceInfo | None:
        if stored is None:
            return presented
        if presented is None:
            return stored
        # Keep the family's device identity; refresh network details only
        return DeviceInfo(
            device_id=stored.device_id,
            name=stored.name,
            type=stored.type,
            os=stored.os,
            browser=stored.browser,
            location=presented.location,
            ip_addr=presented.ip_addr,
            user_agent=stored.user_agent,
        )

    def revoke(
        self,
        raw_token: str,
        *,
        reason: str = "logout",
        actor: str = "user",
        now: datetime | None = None,
    ) -> Optional[RefreshToken]:
        """Revoke one token; unknown or already revoked tokens are a no-op."""
        check_actor(actor)
        record = self.lookup(raw_token)
        if record is None:
            return None
        self.store.revoke_refresh_token(record.token, reason, actor, now or utcnow())
        return record

    def revoke_family(
        self, family: str, *, reason: str, actor: str = "system", now: datetime | None = None
    ) -> int:
        check_actor(actor)
        return self.store.revoke_family(family, reason, actor, now or utcnow())

    def revoke_all_for_account(
        self,
        account_id: str,
        *,
        reason: str = "logout_all",
        actor: str = "user",
        now: datetime | None = None,
    ) -> int:
        check_actor(actor)
        count = self.store.revoke_account_tokens(account_id, reason, actor, now or utcnow())
        if count:
            logger.info("refresh_tokens_revoked", account_id=account_id, reason=reason, count=count)
        return count

    def revoke_all_for_device(
        self,
        account_id: str,
        device_id: str,
        *,
        reason: str = "device_logout",
        actor: str = "user",
        now: datetime | None = None,
    ) -> int:
        check_actor(actor)
        count = self.store.revoke_account_tokens(
            account_id, reason, actor, now or utcnow(), device_id=device_id
        )
        if count:
            logger.info(
                "refresh_tokens_revoked",
                account_id=account_id,
                device_id=device_id,
                reason=reason,
                count=count,
            )
        return count

    def sweep_expired(self, *, now: datetime | None = None) -> int:
        removed = self.store.delete_expired_refresh_tokens(now or utcnow())
        if removed:
            logger.info("refresh_tokens_swept", removed=removed)
        return removed
