"""Tests for access token signing, verification and the role catalogue."""

import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import TokenExpired, TokenInvalid
from authcore.service.tokens import (
    ROLE_PERMISSIONS,
    TokenIssuer,
    permissions_for_roles,
)
from authcore.storage.models import Account, utcnow

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET, issuer="authcore", audience="authcore-clients")


@pytest.fixture
def account():
    return Account(
        id="acct-1",
        handle="alice",
        email="alice@example.com",
        password_hash="x",
        roles=["moderator"],
        password_changed_at=utcnow() - timedelta(days=1),
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_claims_round_trip(self, issuer, account):
        issued = issuer.issue(account)

        claims = issuer.decode(issued.token)

        assert claims.sub == "acct-1"
        assert claims.roles == ["moderator"]
        assert set(claims.permissions) == set(ROLE_PERMISSIONS["moderator"])
        assert claims.raw["token_type"] == "access"
        assert claims.raw["aud"] == "authcore-clients"
        assert claims.jti
        assert issued.expires_in == 15 * 60

    def test_iat_has_millisecond_precision(self, issuer, account):
        now = utcnow()

        issued = issuer.issue(account, now=now)

        assert issued.claims.iat == round(now.timestamp(), 3)
        assert issued.claims.exp == int((now + timedelta(minutes=15)).timestamp())

    def test_missing_secret_is_rejected(self):
        with pytest.raises(RuntimeError):
            TokenIssuer("", issuer="authcore", audience="authcore-clients")


class TestDecode:
    def test_expired_token(self, issuer, account):
        issued = issuer.issue(account, now=utcnow() - timedelta(hours=1))

        with pytest.raises(TokenExpired):
            issuer.decode(issued.token)

    def test_leeway_accepts_just_expired_token(self, issuer, account):
        issued = issuer.issue(account, now=utcnow() - timedelta(minutes=15, seconds=10))

        assert issuer.decode(issued.token).sub == "acct-1"

    def test_tampered_payload(self, issuer, account):
        header, _payload, signature = issuer.issue(account).token.split(".")
        forged = _b64({"sub": "acct-1", "roles": ["super_admin"]})

        with pytest.raises(TokenInvalid):
            issuer.decode(f"{header}.{forged}.{signature}")

    def test_wrong_secret(self, issuer, account):
        other = TokenIssuer("x" * 48, issuer="authcore", audience="authcore-clients")

        with pytest.raises(TokenInvalid):
            issuer.decode(other.issue(account).token)

    def test_alg_none_rejected(self, issuer, account):
        _header, payload, _signature = issuer.issue(account).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenInvalid):
            issuer.decode(f"{header}.{payload}.")

    def test_wrong_audience(self, issuer, account):
        other = TokenIssuer(SECRET, issuer="authcore", audience="someone-else")

        with pytest.raises(TokenInvalid):
            issuer.decode(other.issue(account).token)

    def test_wrong_issuer(self, issuer, account):
        other = TokenIssuer(SECRET, issuer="elsewhere", audience="authcore-clients")

        with pytest.raises(TokenInvalid):
            issuer.decode(other.issue(account).token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "###.###.###", None])
    def test_malformed(self, issuer, token):
        with pytest.raises(TokenInvalid):
            issuer.decode(token)

    def test_non_ascii_signature_is_invalid_not_crash(self, issuer, account):
        header, payload, _signature = issuer.issue(account).token.split(".")

        with pytest.raises(TokenInvalid):
            issuer.decode(f"{header}.{payload}.ééé")


class TestVerifyForAccount:
    def test_token_after_password_change_is_valid(self, issuer, account):
        claims = issuer.decode(issuer.issue(account).token)

        assert issuer.verify_for_account(claims, account) is claims

    def test_token_before_password_change_is_rejected(self, issuer, account):
        claims = issuer.decode(issuer.issue(account).token)
        account.password_changed_at = utcnow() + timedelta(seconds=1)

        with pytest.raises(TokenInvalid):
            issuer.verify_for_account(claims, account)

    def test_missing_account(self, issuer, account):
        claims = issuer.decode(issuer.issue(account).token)

        with pytest.raises(TokenInvalid):
            issuer.verify_for_account(claims, None)


class TestPermissions:
    def test_union_is_sorted_and_deduplicated(self):
        perms = permissions_for_roles(["user", "moderator"])

        assert perms == sorted(set(ROLE_PERMISSIONS["user"]) | set(ROLE_PERMISSIONS["moderator"]))

    def test_unknown_role_grants_nothing(self):
        assert permissions_for_roles(["ghost"]) == []

    def test_super_admin_can_manage_roles(self):
        assert "manage:roles" in permissions_for_roles(["super_admin"])
        assert "manage:roles" not in permissions_for_roles(["admin"])
