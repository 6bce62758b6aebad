from __future__ import annotations

from typing import Iterable, List

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.service.errors import WeakPassword

_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\"


class PasswordHasher:
    """argon2id hashing with a per-call random salt.

    ``verify`` never raises for a bad password or a malformed digest; it
    returns ``False``. Plaintext is never logged.
    """

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str | None) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of work against a throwaway digest.

        Used when the account does not exist so that response timing matches
        a wrong-password attempt.
        """
        if self._dummy_digest is None:
            self._dummy_digest = self._hasher.hash("authcore-timing-equalizer")
        self.verify(plaintext, self._dummy_digest)

    def matches_any(self, plaintext: str, digests: Iterable[str]) -> bool:
        # Check every entry so timing does not reveal the position of a match
        matched = False
        for digest in digests:
            if self.verify(plaintext, digest):
                matched = True
        return matched


def password_strength_failures(
    password: str, *, min_length: int = 8, max_length: int = 128
) -> List[str]:
    """Return the names of the strength rules ``password`` breaks."""
    failures: List[str] = []
    if len(password) < min_length:
        failures.append(f"min_length:{min_length}")
    if len(password) > max_length:
        failures.append(f"max_length:{max_length}")
    classes = [
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(c in _SPECIAL_CHARS or not c.isalnum() for c in password),
    ]
    if sum(classes) < 3:
        failures.append("character_classes:3")
    return failures


def check_password_strength(
    password: str, *, min_length: int = 8, max_length: int = 128
) -> None:
    failures = password_strength_failures(
        password or "", min_length=min_length, max_length=max_length
    )
    if failures:
        raise WeakPassword(failures)
