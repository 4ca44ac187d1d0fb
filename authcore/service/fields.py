"""Declared registry of model fields that are encrypted at rest.

Only the (type, field) pairs listed in ``ENCRYPTED_FIELDS`` pass through the
codec; nothing walks arbitrary object graphs looking for encryptable values.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, Tuple, Type, TypeVar

from authcore.service.crypto import EncryptionCodec
from authcore.storage.models import Account

T = TypeVar("T")

ENCRYPTED_FIELDS: Dict[Type, Tuple[str, ...]] = {
    Account: ("first_name", "last_name"),
}


def encrypted_fields_for(model_type: Type) -> Tuple[str, ...]:
    return ENCRYPTED_FIELDS.get(model_type, ())


class FieldEncryptor:
    def __init__(self, codec: EncryptionCodec) -> None:
        self.codec = codec

    def encrypt_value(self, value):
        if self.codec.is_encrypted(value):
            return value
        return self.codec.encrypt(value)

    def encrypt_fields(self, obj: T) -> T:
        """Return a copy of ``obj`` with its declared fields sealed."""
        names = encrypted_fields_for(type(obj))
        if not names:
            return obj
        updates = {name: self.encrypt_value(getattr(obj, name)) for name in names}
        return dataclasses.replace(obj, **updates)

    def decrypt_fields(self, obj: T) -> T:
        """Return a copy of ``obj`` with its declared fields opened."""
        names = encrypted_fields_for(type(obj))
        if not names:
            return obj
        updates = {name: self.codec.decrypt(getattr(obj, name)) for name in names}
        return dataclasses.replace(obj, **updates)
