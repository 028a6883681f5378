from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustgate.logging import get_logger
from trustgate.storage.memory import MemoryStore

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordManager:
    """argon2id hashing and verification against the credential store."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self._hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown users so both paths cost the same
        self._dummy_hash = self._hasher.hash("trustgate-timing-equalizer")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def save(self, principal_id: str, password: str) -> None:
        digest, algo = self.hash(password)
        self.store.save_password(principal_id, digest, algo)

    def verify(self, principal_id: str, password: str) -> bool:
        record = self.store.get_password_record(principal_id)
        if not record:
            logger.warning("password_record_missing", principal_id=principal_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", principal_id=principal_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn_verification(self, password: str) -> None:
        """Spend one verification for a username that does not exist."""
        try:
            self._hasher.verify(self._dummy_hash, password)
        except (VerifyMismatchError, VerificationError):
            pass
