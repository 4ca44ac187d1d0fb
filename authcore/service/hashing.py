from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
SALT_BYTES = 16


class SecretHasher:
    """Slow, salted one-way hashing for passwords and MFA backup codes.

    Verification goes through argon2's own constant-time comparison; callers
    only ever see a boolean.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash_password(self, password: str) -> Tuple[str, str, str]:
        """Return ``(hash, salt, algo)``; the salt is also embedded in the hash."""
        salt = os.urandom(SALT_BYTES)
        digest = self._hasher.hash(password, salt=salt)
        return digest, base64.b64encode(salt).decode("ascii"), PASSWORD_ALGO

    def verify_password(
        self, stored_hash: Optional[str], password: str, *, algo: str = PASSWORD_ALGO
    ) -> bool:
        if not stored_hash:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def hash_code(self, code: str) -> str:
        return self._hasher.hash(code)

    def verify_code(self, stored_hash: str, code: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, code)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def random_password(self) -> str:
        return secrets.token_urlsafe(32)


def token_digest(token: str) -> str:
    """SHA-256 digest used to store emailed one-time tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
