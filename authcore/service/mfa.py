from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidSecondFactor
from authcore.storage.models import Account, BackupCode, utcnow

logger = get_logger(__name__)

_SECRET_BYTES = 20  # 160 bits, the RFC 4226 recommended key size
_BACKUP_CODE_BYTES = 5
_DIGITS = 6


@dataclass
class SecondFactorResult:
    method: str
    backup_codes_remaining: int
    regenerate_recommended: bool


@dataclass
class MFAStatus:
    enabled: bool
    pending_enrollment: bool
    backup_codes_remaining: int
    regenerate_recommended: bool


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


class MFAVerifier:
    """TOTP (RFC 6238, HMAC-SHA1) and single-use backup codes.

    An accepted TOTP step is recorded per account and any step at or before
    it is refused, so a code cannot be replayed inside the drift window.
    """

    def __init__(
        self,
        store,
        *,
        issuer: str = "AuthCore",
        step_seconds: int = 30,
        window: int = 1,
        backup_code_count: int = 10,
        low_watermark: int = 3,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.step_seconds = step_seconds
        self.window = window
        self.backup_code_count = backup_code_count
        self.low_watermark = low_watermark

    @classmethod
    def from_settings(cls, store, settings: Settings) -> "MFAVerifier":
        return cls(
            store,
            issuer=settings.mfa_issuer,
            step_seconds=settings.totp_step_seconds,
            window=settings.totp_window,
            backup_code_count=settings.backup_code_count,
            low_watermark=settings.backup_code_low_watermark,
        )

    # -- TOTP ---------------------------------------------------------------

    @staticmethod
    def new_secret() -> str:
        return base64.b32encode(secrets.token_bytes(_SECRET_BYTES)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}", safe="")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": _DIGITS,
                "period": self.step_seconds,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def _step_for(self, timestamp: float) -> int:
        return int(timestamp // self.step_seconds)

    @staticmethod
    def _code_for_step(secret: str, step: int) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**_DIGITS
        )
        return str(code_int).zfill(_DIGITS)

    def generate_totp(self, secret: str, timestamp: float | None = None) -> str:
        ts = time.time() if timestamp is None else timestamp
        return self._code_for_step(secret, self._step_for(ts))

    def match_step(
        self, secret: str, code: str, timestamp: float | None = None
    ) -> Optional[int]:
        """Return the time step ``code`` belongs to, within the drift window."""
        candidate = (code or "").strip().replace(" ", "")
        if len(candidate) != _DIGITS or not candidate.isdigit():
            return None
        current = self._step_for(time.time() if timestamp is None else timestamp)
        matched: Optional[int] = None
        for offset in range(-self.window, self.window + 1):
            generated = self._code_for_step(secret, current + offset)
            if generated and hmac.compare_digest(generated, candidate):
                matched = current + offset
        return matched

    def verify_totp(
        self, account: Account, code: str, *, timestamp: float | None = None
    ) -> bool:
        if not account.mfa_secret:
            return False
        step = self.match_step(account.mfa_secret, code, timestamp)
        if step is None:
            return False
        if not self.store.advance_mfa_step(account.id, step):
            logger.warning("totp_replay_rejected", account_id=account.id, step=step)
            return False
        account.mfa_last_step = step
        return True

    # -- backup codes -------------------------------------------------------

    def generate_backup_codes(self) -> Tuple[List[str], List[BackupCode]]:
        plain: List[str] = []
        records: List[BackupCode] = []
        for _ in range(self.backup_code_count):
            raw = secrets.token_hex(_BACKUP_CODE_BYTES).upper()
            plain.append(f"{raw[:5]}-{raw[5:]}")
            records.append(BackupCode(code_hash=hash_backup_code(raw)))
        return plain, records

    def verify_backup_code(self, account: Account, code: str) -> bool:
        if not normalize_backup_code(code):
            return False
        return self.store.consume_backup_code(account.id, hash_backup_code(code), utcnow())

    # -- combined -----------------------------------------------------------

    def remaining_backup_codes(self, account_id: str) -> int:
        account = self.store.get_account(account_id)
        return account.unused_backup_codes() if account else 0

    def verify_second_factor(
        self,
        account: Account,
        *,
        code: str | None = None,
        backup_code: str | None = None,
    ) -> SecondFactorResult:
        if code and self.verify_totp(account, code):
            method = "totp"
        elif backup_code and self.verify_backup_code(account, backup_code):
            method = "backup_code"
            logger.info("backup_code_consumed", account_id=account.id)
        else:
            raise InvalidSecondFactor()
        remaining = self.remaining_backup_codes(account.id)
        return SecondFactorResult(
            method=method,
            backup_codes_remaining=remaining,
            regenerate_recommended=remaining < self.low_watermark,
        )

    def status(self, account: Account) -> MFAStatus:
        remaining = account.unused_backup_codes() if account.mfa_enabled else 0
        return MFAStatus(
            enabled=account.mfa_enabled,
            pending_enrollment=bool(account.mfa_secret) and not account.mfa_enabled,
            backup_codes_remaining=remaining,
            regenerate_recommended=account.mfa_enabled and remaining < self.low_watermark,
        )
