from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountNotActive,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    PasswordReused,
    ValidationError,
)
from authcore.service.lockout import LockoutGuard
from authcore.service.passwords import PasswordHasher, check_password_strength
from authcore.service.refresh import RefreshRotationManager, check_actor
from authcore.service.tokens import ROLES
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import ACCOUNT_STATUSES, Account, utcnow

logger = get_logger(__name__)

_HANDLE_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CredentialStore:
    """Account identity, password lifecycle and first-factor authentication."""

    def __init__(
        self,
        store,
        hasher: PasswordHasher,
        lockout: LockoutGuard,
        refresh: RefreshRotationManager,
        *,
        history_size: int = 5,
        min_length: int = 8,
        max_length: int = 128,
        require_email_verification: bool = False,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.refresh = refresh
        self.history_size = history_size
        self.min_length = min_length
        self.max_length = max_length
        self.require_email_verification = require_email_verification

    @classmethod
    def from_settings(
        cls,
        store,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        lockout: LockoutGuard,
        refresh: RefreshRotationManager,
    ) -> "CredentialStore":
        return cls(
            store,
            hasher,
            lockout,
            refresh,
            history_size=settings.password_history_size,
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_email_verification=settings.require_email_verification,
        )

    def check_strength(self, password: str) -> None:
        check_password_strength(
            password, min_length=self.min_length, max_length=self.max_length
        )

    # -- registration and lookup --------------------------------------------

    def register(
        self,
        handle: str,
        email: str,
        password: str,
        *,
        roles: Optional[List[str]] = None,
    ) -> Account:
        handle = (handle or "").strip()
        email = (email or "").strip()
        if not _HANDLE_RE.match(handle):
            raise ValidationError(
                "Handle must be 3-30 characters of letters, digits or underscore",
                detail={"field": "handle"},
            )
        if len(email) > 254 or not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        roles = list(roles or ["user"])
        unknown = [role for role in roles if role not in ROLES]
        if unknown:
            raise ValidationError("Unknown role", detail={"roles": unknown})
        self.check_strength(password)
        status = "pending" if self.require_email_verification else "active"
        try:
            account = self.store.create_account(
                handle,
                email,
                self.hasher.hash(password),
                roles=roles,
                status=status,
                email_verified=False,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Account already exists", detail=exc.detail) from None
        logger.info("account_registered", account_id=account.id, status=status)
        return account

    def get(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def find(self, identifier: str) -> Optional[Account]:
        return self.store.get_account_by_identifier(identifier)

    # -- first factor -------------------------------------------------------

    def authenticate(self, identifier: str, password: str) -> Account:
        """Verify identifier and password.

        Unknown identifier and wrong password both raise
        ``InvalidCredentials``; a locked account raises ``AccountLocked``
        whether or not the password is right.
        """
        account = self.find(identifier)
        if account is None:
            self.hasher.burn(password or "")
            logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentials()

        self.lockout.check(account)
        if not self.hasher.verify(password or "", account.password_hash):
            state = self.lockout.record_failure(account)
            logger.info(
                "login_failed",
                account_id=account.id,
                reason="invalid_credentials",
                attempts=account.failed_attempts,
                lock_state=state.value,
            )
            raise InvalidCredentials()

        self.lockout.record_success(account)
        if not account.is_active:
            logger.info("login_refused", account_id=account.id, status=account.status)
            raise AccountNotActive(account.status)
        if self.hasher.needs_rehash(account.password_hash):
            new_hash = self.hasher.hash(password)
            self.store.update_password(
                account.id, new_hash, account.password_history, account.password_changed_at
            )
            account.password_hash = new_hash
        return account

    def verify_password(self, account: Account, password: str) -> None:
        """Re-authenticate an already identified account for sensitive changes."""
        self.lockout.check(account)
        if not self.hasher.verify(password or "", account.password_hash):
            self.lockout.record_failure(account)
            raise InvalidCredentials()
        self.lockout.record_success(account)

    # -- password mutation --------------------------------------------------

    def check_new_password(self, account: Account, new_password: str) -> None:
        """Raise ``WeakPassword`` or ``PasswordReused`` without changing anything."""
        self.check_strength(new_password)
        previous = [account.password_hash, *account.password_history]
        if self.hasher.matches_any(new_password, previous[: self.history_size + 1]):
            raise PasswordReused()

    def _apply_new_password(
        self,
        account: Account,
        new_password: str,
        *,
        reason: str,
        actor: str,
        checked: bool = False,
    ) -> datetime:
        if not checked:
            self.check_new_password(account, new_password)
        new_hash = self.hasher.hash(new_password)
        history = ([account.password_hash] + list(account.password_history))[: self.history_size]
        changed_at = utcnow()
        self.store.update_password(account.id, new_hash, history, changed_at)
        revoked = self.refresh.revoke_all_for_account(
            account.id, reason=reason, actor=actor, now=changed_at
        )
        self.store.delete_pending_sessions_for_account(account.id)
        account.password_hash = new_hash
        account.password_history = history
        account.password_changed_at = changed_at
        logger.info(
            "password_changed", account_id=account.id, reason=reason, sessions_revoked=revoked
        )
        return changed_at

    def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> Account:
        account = self.get(account_id)
        self.verify_password(account, current_password)
        self._apply_new_password(account, new_password, reason="password_change", actor="user")
        return account

    def reset_password(
        self, account_id: str, new_password: str, *, checked: bool = False
    ) -> Account:
        account = self.get(account_id)
        self._apply_new_password(
            account, new_password, reason="password_reset", actor="system", checked=checked
        )
        if account.lock_until is not None or account.failed_attempts:
            self.lockout.record_success(account)
        return account

    # -- status -------------------------------------------------------------

    def set_status(self, account_id: str, status: str, *, actor: str = "admin") -> Account:
        check_actor(actor)
        if status not in ACCOUNT_STATUSES:
            raise ValidationError("Unknown account status", detail={"status": status})
        account = self.store.set_account_status(account_id, status)
        if account is None:
            raise NotFoundError("Account not found")
        if status in {"suspended", "inactive"}:
            self.refresh.revoke_all_for_account(account_id, reason=f"account_{status}", actor=actor)
            self.store.delete_pending_sessions_for_account(account_id)
        logger.info("account_status_changed", account_id=account_id, status=status, actor=actor)
        return account

    def mark_email_verified(self, account_id: str) -> Account:
        current = self.get(account_id)
        status = "active" if current.status == "pending" else current.status
        account = self.store.set_account_status(account_id, status, email_verified=True)
        if account is None:
            raise NotFoundError("Account not found")
        return account
