from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError, DecryptionFailedError

logger = get_logger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
SALT_LENGTH = 64
KEY_LENGTH = 32
ENCRYPTED_PREFIX = "enc:v1:"

_HEADER_LENGTH = IV_LENGTH + TAG_LENGTH + SALT_LENGTH


class EncryptionCodec:
    """Authenticated field encryption for secrets and personal data at rest.

    Every value is sealed with AES-256-GCM under a key derived from the
    configured secret and a fresh random salt (scrypt), so two encryptions of
    the same plaintext never match. The stored form is::

        enc:v1:<base64(IV[16] | Tag[16] | Salt[64] | Ciphertext)>

    ``None`` and ``""`` pass through both directions unchanged. Anything that
    fails to authenticate raises :class:`DecryptionFailedError`; the codec
    never returns the ciphertext or a partial plaintext as a fallback.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        scrypt_n: int = 2**14,
        scrypt_r: int = 8,
        scrypt_p: int = 1,
    ) -> None:
        if not secret:
            raise ConfigurationError("ENCRYPTION_KEY is not configured")
        self._secret = secret.encode("utf-8")
        self._scrypt_n = scrypt_n
        self._scrypt_r = scrypt_r
        self._scrypt_p = scrypt_p

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = Scrypt(
            salt=salt,
            length=KEY_LENGTH,
            n=self._scrypt_n,
            r=self._scrypt_r,
            p=self._scrypt_p,
        )
        return kdf.derive(self._secret)

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None or plaintext == "":
            return plaintext
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(
            iv, plaintext.encode("utf-8"), None
        )
        # AESGCM appends the tag; the stored layout puts it up front
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        blob = iv + tag + salt + ciphertext
        return ENCRYPTED_PREFIX + base64.b64encode(blob).decode("ascii")

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        encoded = value[len(ENCRYPTED_PREFIX):] if self.is_encrypted(value) else value
        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("decrypt_malformed_value")
            raise DecryptionFailedError()
        if len(blob) <= _HEADER_LENGTH:
            logger.warning("decrypt_truncated_value", length=len(blob))
            raise DecryptionFailedError()
        iv = blob[:IV_LENGTH]
        tag = blob[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        salt = blob[IV_LENGTH + TAG_LENGTH:_HEADER_LENGTH]
        ciphertext = blob[_HEADER_LENGTH:]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            logger.warning("decrypt_authentication_failed")
            raise DecryptionFailedError()
