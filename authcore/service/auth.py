from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Set

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.credentials import CredentialStore
from authcore.service.devices import DeviceRegistry, SessionView, fingerprint
from authcore.service.email import EmailService
from authcore.service.errors import (
    AccountLocked,
    AccountNotActive,
    ConflictError,
    InvalidSecondFactor,
    NotFoundError,
    SecondFactorRequired,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from authcore.service.lockout import LockoutGuard, LockoutPolicy
from authcore.service.mfa import MFAStatus, MFAVerifier
from authcore.service.passwords import PasswordHasher
from authcore.service.rate_limit import RateLimiter
from authcore.service.refresh import IssuedRefreshToken, RefreshRotationManager
from authcore.service.tokens import AccessClaims, TokenIssuer
from authcore.storage.common import digest_token
from authcore.storage.models import (
    Account,
    ActionToken,
    DeviceInfo,
    PendingSession,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class AuthResult:
    account_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    device_id: str
    token_type: str = "bearer"
    mfa_method: Optional[str] = None
    backup_codes_remaining: Optional[int] = None
    regenerate_backup_codes: bool = False


@dataclass
class MFAEnrollment:
    secret: str
    provisioning_uri: str


class AuthService:
    """Transport-agnostic entry points for the credential and session core.

    Public operations are coroutines so a web layer can await them directly;
    store calls are synchronous. Notifications are fire-and-forget and their
    failures never affect the outcome of the security operation.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        rate_limiter: RateLimiter | None = None,
        email_service: EmailService | None = None,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self.rate_limiter = rate_limiter or RateLimiter()
        self.email_service = email_service
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.lockout = LockoutGuard(store, LockoutPolicy.from_settings(settings))
        self.refresh_manager = RefreshRotationManager.from_settings(store, settings)
        self.tokens = TokenIssuer.from_settings(settings)
        self.mfa = MFAVerifier.from_settings(store, settings)
        self.devices = DeviceRegistry(store)
        self.credentials = CredentialStore.from_settings(
            store,
            settings,
            hasher=self.hasher,
            lockout=self.lockout,
            refresh=self.refresh_manager,
        )
        self._pending_ttl = timedelta(minutes=settings.pending_session_ttl_minutes)
        self._notifications: Set[asyncio.Task] = set()

    # -- helpers ------------------------------------------------------------

    def _notify(self, kind: str, *args, **kwargs) -> None:
        if self.email_service is None:
            return
        send = getattr(self.email_service, f"send_{kind}")

        def _run() -> None:
            try:
                send(*args, **kwargs)
            except Exception as exc:
                self.logger.error("notification_failed", kind=kind, error=str(exc))

        task = asyncio.get_running_loop().create_task(asyncio.to_thread(_run))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def wait_for_notifications(self) -> None:
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    async def _limit(self, scope: str, subject: Optional[str], limit: int, window: int) -> None:
        if subject:
            await self.rate_limiter.enforce(f"{scope}:{subject}", limit, window)

    def _resolve_device(
        self,
        device: DeviceInfo | None,
        user_agent: Optional[str],
        ip_addr: Optional[str],
    ) -> DeviceInfo:
        return device or fingerprint(user_agent, ip_addr)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def _issue_session(
        self,
        account: Account,
        device: DeviceInfo,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
    ) -> AuthResult:
        now = utcnow()
        standing = self.devices.standing(account.id, device.device_id)
        issued: IssuedRefreshToken = self.refresh_manager.issue(
            account.id, device, remember_me=remember_me, trusted=standing.trusted, now=now
        )
        access = self.tokens.issue(account, now=now)
        self.store.record_login(account.id, now, ip_addr or device.ip_addr)
        if standing.has_history and not standing.known:
            self._notify("new_device_login", account.email, device)
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            device_id=device.device_id,
            new_device=not standing.known,
        )
        return AuthResult(
            account_id=account.id,
            access_token=access.token,
            refresh_token=issued.raw,
            expires_in=access.expires_in,
            refresh_expires_at=issued.expires_at,
            device_id=device.device_id,
        )

    # -- registration -------------------------------------------------------

    async def register(
        self,
        handle: str,
        email: str,
        password: str,
        *,
        roles: Optional[List[str]] = None,
        ip_addr: Optional[str] = None,
    ) -> Account:
        await self._limit(
            "register",
            ip_addr,
            self.settings.register_rate_limit,
            self.settings.register_rate_window_seconds,
        )
        account = self.credentials.register(handle, email, password, roles=roles)
        if account.status == "pending":
            raw = secrets.token_hex(32)
            ttl_hours = self.settings.email_verification_ttl_hours
            self.store.create_action_token(
                ActionToken(
                    token=digest_token(raw),
                    account_id=account.id,
                    purpose="email_verification",
                    expires_at=utcnow() + timedelta(hours=ttl_hours),
                )
            )
            self._notify("email_verification", account.email, raw, ttl_hours=ttl_hours)
        return account

    async def verify_email(self, token: str) -> Account:
        record = self.store.consume_action_token(digest_token(token or ""), "email_verification")
        if record is None:
            raise TokenInvalid()
        if record.expires_at <= utcnow():
            raise TokenExpired()
        account = self.credentials.mark_email_verified(record.account_id)
        self.logger.info("email_verified", account_id=account.id)
        return account

    # -- login --------------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        device: DeviceInfo | None = None,
        remember_me: bool = False,
    ) -> AuthResult:
        """First-factor login.

        Returns tokens directly when MFA is off. With MFA on, raises
        ``SecondFactorRequired`` carrying a short-lived pending-session handle
        to be passed to ``verify_second_factor``.
        """
        await self._limit(
            "login", ip_addr, self.settings.login_rate_limit, self.settings.login_rate_window_seconds
        )
        account = self.credentials.authenticate(identifier, password)
        device = self._resolve_device(device, user_agent, ip_addr)
        if account.mfa_enabled:
            handle = secrets.token_urlsafe(32)
            self.store.create_pending_session(
                PendingSession.new(
                    digest_token(handle),
                    account.id,
                    self.settings.pending_session_ttl_minutes,
                    device=device,
                    remember_me=remember_me,
                )
            )
            self.logger.info("second_factor_pending", account_id=account.id)
            raise SecondFactorRequired(handle, int(self._pending_ttl.total_seconds()))
        return self._issue_session(account, device, remember_me=remember_me, ip_addr=ip_addr)

    async def verify_second_factor(
        self,
        pending_token: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        handle = digest_token(pending_token or "")
        # Claim the handle first so concurrent submissions cannot both spend a factor
        pending = self.store.consume_pending_session(handle)
        if pending is None:
            raise TokenInvalid()
        if pending.expires_at <= utcnow():
            raise TokenExpired()
        account = self.store.get_account(pending.account_id)
        if account is None:
            raise TokenInvalid()
        if not account.is_active:
            raise AccountNotActive(account.status)
        try:
            self.lockout.check(account)
            result = self.mfa.verify_second_factor(account, code=code, backup_code=backup_code)
        except AccountLocked:
            self.store.create_pending_session(pending)
            raise
        except InvalidSecondFactor:
            pending.attempts += 1
            self.logger.info(
                "second_factor_failed", account_id=account.id, attempts=pending.attempts
            )
            if pending.attempts < self.settings.pending_session_max_attempts:
                self.store.create_pending_session(pending)
            else:
                self.logger.warning("pending_session_exhausted", account_id=account.id)
            raise

        auth = self._issue_session(
            account,
            pending.device or fingerprint(None, ip_addr),
            remember_me=pending.remember_me,
            ip_addr=ip_addr,
        )
        auth.mfa_method = result.method
        auth.backup_codes_remaining = result.backup_codes_remaining
        auth.regenerate_backup_codes = result.regenerate_recommended
        return auth

    # -- refresh and logout -------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        presented = fingerprint(user_agent, ip_addr) if (user_agent or ip_addr) else None
        issued = self.refresh_manager.rotate(refresh_token, device=presented)
        record = issued.record
        account = self.store.get_account(record.account_id)
        if account is None or not account.is_active:
            self.refresh_manager.revoke_family(record.family, reason="account_not_active")
            if account is None:
                raise TokenInvalid()
            raise AccountNotActive(account.status)
        access = self.tokens.issue(account)
        return AuthResult(
            account_id=account.id,
            access_token=access.token,
            refresh_token=issued.raw,
            expires_in=access.expires_in,
            refresh_expires_at=record.expires_at,
            device_id=record.device_id,
        )

    async def logout(self, refresh_token: str) -> bool:
        record = self.refresh_manager.revoke(refresh_token, reason="logout", actor="user")
        if record is not None:
            self.logger.info("logout", account_id=record.account_id, device_id=record.device_id)
        return record is not None

    async def logout_all_devices(self, account_id: str) -> int:
        count = self.refresh_manager.revoke_all_for_account(account_id, reason="logout_all")
        self.store.delete_pending_sessions_for_account(account_id)
        return count

    async def logout_device(self, account_id: str, device_id: str) -> int:
        return self.refresh_manager.revoke_all_for_device(account_id, device_id)

    # -- sessions -----------------------------------------------------------

    async def list_sessions(
        self, account_id: str, *, current_refresh_token: Optional[str] = None
    ) -> List[SessionView]:
        current_device = None
        if current_refresh_token:
            record = self.refresh_manager.lookup(current_refresh_token)
            if record is not None and record.account_id == account_id:
                current_device = record.device_id
        return self.devices.list_sessions(account_id, current_device_id=current_device)

    async def trust_device(self, account_id: str, device_id: str, *, trusted: bool = True) -> None:
        if not self.devices.set_trusted(account_id, device_id, trusted):
            raise NotFoundError("Device not found")

    async def authenticate_access_token(self, token: str) -> AccessClaims:
        claims = self.tokens.decode(token)
        account = self.store.get_account(claims.sub)
        self.tokens.verify_for_account(claims, account)
        if not account.is_active:
            raise AccountNotActive(account.status)
        return claims

    # -- passwords ----------------------------------------------------------

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self.credentials.change_password(account_id, current_password, new_password)
        self._notify("password_changed", account.email, changed_at=account.password_changed_at)

    async def request_password_reset(self, email: str, *, ip_addr: Optional[str] = None) -> None:
        """Start a reset; silent for unknown addresses so accounts cannot be probed."""
        await self._limit(
            "password_reset",
            ip_addr or (email or "").strip().lower(),
            self.settings.password_reset_rate_limit,
            self.settings.password_reset_rate_window_seconds,
        )
        account = self.credentials.find(email)
        if account is None or account.status in {"suspended", "inactive"}:
            self.logger.info("password_reset_ignored")
            return
        raw = secrets.token_hex(32)
        ttl_minutes = self.settings.password_reset_ttl_minutes
        self.store.create_action_token(
            ActionToken(
                token=digest_token(raw),
                account_id=account.id,
                purpose="password_reset",
                expires_at=utcnow() + timedelta(minutes=ttl_minutes),
            )
        )
        self.logger.info("password_reset_requested", account_id=account.id)
        self._notify("password_reset", account.email, raw, ttl_minutes=ttl_minutes)

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        """Set a new password from an emailed reset link.

        The link survives a rejected password (too weak or found in history)
        and is spent only once the new password is accepted.
        """
        self.credentials.check_strength(new_password)
        digest = digest_token(token or "")
        record = self.store.get_action_token(digest, "password_reset")
        if record is None:
            raise TokenInvalid()
        if record.expires_at <= utcnow():
            self.store.consume_action_token(digest, "password_reset")
            raise TokenExpired()
        account = self.credentials.get(record.account_id)
        self.credentials.check_new_password(account, new_password)
        if self.store.consume_action_token(digest, "password_reset") is None:
            raise TokenInvalid()
        account = self.credentials.reset_password(record.account_id, new_password, checked=True)
        await self.rate_limiter.reset(f"password_reset:{account.email}")
        self._notify("password_changed", account.email, changed_at=account.password_changed_at)

    # -- MFA ----------------------------------------------------------------

    async def enroll_mfa(self, account_id: str) -> MFAEnrollment:
        account = self._require_account(account_id)
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = self.mfa.new_secret()
        self.store.set_mfa_secret(account.id, secret)
        self.logger.info("mfa_enrollment_started", account_id=account.id)
        return MFAEnrollment(
            secret=secret, provisioning_uri=self.mfa.provisioning_uri(secret, account.email)
        )

    async def confirm_mfa_enrollment(self, account_id: str, code: str) -> List[str]:
        """Activate MFA after one valid code; returns the plaintext backup codes once."""
        account = self._require_account(account_id)
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not account.mfa_secret:
            raise ValidationError("No MFA enrollment in progress")
        if not self.mfa.verify_totp(account, code):
            raise InvalidSecondFactor()
        plain, records = self.mfa.generate_backup_codes()
        self.store.enable_mfa(account.id, records)
        self.logger.info("mfa_enabled", account_id=account.id)
        return plain

    def _reauthenticate_with_both_factors(
        self,
        account: Account,
        password: str,
        code: Optional[str],
        backup_code: Optional[str],
    ) -> None:
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if not (code or backup_code):
            raise InvalidSecondFactor()
        self.credentials.verify_password(account, password)
        self.mfa.verify_second_factor(account, code=code, backup_code=backup_code)

    async def disable_mfa(
        self,
        account_id: str,
        password: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> None:
        account = self._require_account(account_id)
        self._reauthenticate_with_both_factors(account, password, code, backup_code)
        self.store.clear_mfa(account.id)
        self.logger.info("mfa_disabled", account_id=account.id)

    async def regenerate_backup_codes(
        self,
        account_id: str,
        password: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> List[str]:
        account = self._require_account(account_id)
        self._reauthenticate_with_both_factors(account, password, code, backup_code)
        plain, records = self.mfa.generate_backup_codes()
        self.store.replace_backup_codes(account.id, records)
        self.logger.info("backup_codes_regenerated", account_id=account.id)
        return plain

    async def mfa_status(self, account_id: str) -> MFAStatus:
        return self.mfa.status(self._require_account(account_id))

    # -- administration -----------------------------------------------------

    async def set_account_status(
        self, account_id: str, status: str, *, actor: str = "admin"
    ) -> Account:
        return self.credentials.set_status(account_id, status, actor=actor)

    async def sweep_expired(self) -> dict[str, int]:
        now = utcnow()
        return {
            "refresh_tokens": self.refresh_manager.sweep_expired(now=now),
            "pending_sessions": self.store.delete_expired_pending_sessions(now),
            "action_tokens": self.store.delete_expired_action_tokens(now),
        }
