from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import TokenExpired, TokenInvalid
from authcore.storage.models import Account, utcnow

logger = get_logger(__name__)

ROLES = ("user", "moderator", "admin", "super_admin")

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "user": ["read:products", "read:orders", "write:orders"],
    "moderator": [
        "read:users",
        "read:products",
        "write:products",
        "read:orders",
        "write:orders",
        "read:reports",
    ],
    "admin": [
        "read:users",
        "write:users",
        "read:products",
        "write:products",
        "delete:products",
        "read:orders",
        "write:orders",
        "delete:orders",
        "read:reports",
        "write:reports",
        "manage:users",
    ],
    "super_admin": [
        "read:users",
        "write:users",
        "delete:users",
        "read:products",
        "write:products",
        "delete:products",
        "read:orders",
        "write:orders",
        "delete:orders",
        "read:reports",
        "write:reports",
        "manage:system",
        "manage:users",
        "manage:roles",
    ],
}


def permissions_for_roles(roles: Iterable[str]) -> List[str]:
    granted = set()
    for role in roles:
        granted.update(ROLE_PERMISSIONS.get(role, ()))
    return sorted(granted)


@dataclass
class AccessClaims:
    sub: str
    roles: List[str]
    permissions: List[str]
    iat: float
    exp: int
    jti: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class IssuedAccessToken:
    token: str
    claims: AccessClaims
    expires_in: int


class TokenIssuer:
    """Signs and verifies short-lived HS256 access tokens.

    Verification is stateless except for ``verify_for_account``, which also
    rejects tokens minted before the account's last password change.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(minutes=15),
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise RuntimeError("signing key is not configured")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self._clock_skew_leeway = leeway

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, account: Account, *, now: datetime | None = None) -> IssuedAccessToken:
        now = now or utcnow()
        # Millisecond precision so a token minted right after a password
        # change is distinguishable from one minted just before it
        iat = round(now.timestamp(), 3)
        exp = int((now + self.ttl).timestamp())
        roles = list(account.roles)
        claims = AccessClaims(
            sub=account.id,
            roles=roles,
            permissions=permissions_for_roles(roles),
            iat=iat,
            exp=exp,
            jti=str(uuid.uuid4()),
        )
        payload = {
            "sub": claims.sub,
            "roles": claims.roles,
            "permissions": claims.permissions,
            "iat": claims.iat,
            "exp": claims.exp,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": claims.jti,
            "token_type": "access",
        }
        claims.raw = payload
        return IssuedAccessToken(
            token=self._encode_jwt(payload),
            claims=claims,
            expires_in=int(self.ttl.total_seconds()),
        )

    def decode(self, token: str, *, now: datetime | None = None) -> AccessClaims:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid() from None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid() from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalid()
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid() from None
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer or payload.get("token_type") != "access":
            raise TokenInvalid()
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenInvalid()
        try:
            exp_ts = float(payload["exp"])
            iat = float(payload["iat"])
            sub = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid() from None
        current = now.timestamp() if now else time.time()
        if exp_ts <= current - self._clock_skew_leeway.total_seconds():
            raise TokenExpired()
        return AccessClaims(
            sub=sub,
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
            iat=iat,
            exp=int(exp_ts),
            jti=str(payload.get("jti") or ""),
            raw=payload,
        )

    def verify_for_account(
        self, claims: AccessClaims, account: Optional[Account]
    ) -> AccessClaims:
        if account is None:
            raise TokenInvalid()
        changed_at = account.password_changed_at
        if changed_at is not None and claims.iat < round(changed_at.timestamp(), 3):
            logger.info("access_token_predates_password_change", account_id=account.id)
            raise TokenInvalid()
        return claims
