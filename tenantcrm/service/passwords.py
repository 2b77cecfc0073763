from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantcrm.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with a precomputed decoy for unknown accounts."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against when no user matched so login timing stays flat
        self._decoy_hash = self._hasher.hash("decoy-password-for-timing")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_decoy(self, plaintext: str) -> bool:
        """Burn one verification's worth of time; always False."""
        self.verify(plaintext, self._decoy_hash)
        return False

