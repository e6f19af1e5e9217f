"""
Password hashing using argon2id.

Digests are salted per call and carry their own cost parameters, so a
digest produced under older settings still verifies and can be flagged
for an upgrade with :meth:`SecretHasher.needs_rehash`.
"""

from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from accountcore.config import Settings


class SecretHasher:
    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.password_hash_cost,
            memory_cost=settings.password_hash_memory_kib,
        )

    def hash(self, plaintext: str) -> str:
        """Hash a password. Returns the full encoded digest."""
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """
        Check a password against a stored digest.

        Never raises: a mismatch, an empty digest or a corrupt one all
        return False.
        """
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        """True when the digest was produced with different cost parameters."""
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return False
