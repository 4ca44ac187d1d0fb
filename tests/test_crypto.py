"""Unit tests for the field encryption codec and the encrypted-field registry."""

import base64

import pytest

from authcore.service.crypto import (
    ENCRYPTED_PREFIX,
    IV_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
    EncryptionCodec,
)
from authcore.service.errors import ConfigurationError, DecryptionFailedError
from authcore.service.fields import ENCRYPTED_FIELDS, FieldEncryptor, encrypted_fields_for
from authcore.storage.models import Account, CredentialRecord


class TestEncryptionCodec:
    """Tests for EncryptionCodec."""

    def test_round_trip(self, codec):
        """Encrypted text decrypts to the original, including non-ASCII."""
        for plaintext in ("Ada", "Lovelace-Byron", "Zoë Ñandú 漢字"):
            assert codec.decrypt(codec.encrypt(plaintext)) == plaintext

    def test_layout_is_prefixed_base64_of_header_and_ciphertext(self, codec):
        """Stored form is the marker plus base64(IV | Tag | Salt | CT)."""
        sealed = codec.encrypt("hello")

        assert sealed.startswith(ENCRYPTED_PREFIX)
        blob = base64.b64decode(sealed[len(ENCRYPTED_PREFIX):])
        assert len(blob) == IV_LENGTH + TAG_LENGTH + SALT_LENGTH + len(b"hello")

    def test_same_plaintext_encrypts_differently(self, codec):
        """Fresh IV and salt per call."""
        assert codec.encrypt("same") != codec.encrypt("same")

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_values_pass_through(self, codec, value):
        assert codec.encrypt(value) == value
        assert codec.decrypt(value) == value

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            EncryptionCodec("")
        with pytest.raises(ConfigurationError):
            EncryptionCodec(None)

    def test_tampered_ciphertext_fails_closed(self, codec):
        sealed = codec.encrypt("secret value")
        blob = bytearray(base64.b64decode(sealed[len(ENCRYPTED_PREFIX):]))
        blob[-1] ^= 0x01
        tampered = ENCRYPTED_PREFIX + base64.b64encode(bytes(blob)).decode("ascii")

        with pytest.raises(DecryptionFailedError):
            codec.decrypt(tampered)

    def test_tampered_tag_fails_closed(self, codec):
        sealed = codec.encrypt("secret value")
        blob = bytearray(base64.b64decode(sealed[len(ENCRYPTED_PREFIX):]))
        blob[IV_LENGTH] ^= 0xFF
        tampered = ENCRYPTED_PREFIX + base64.b64encode(bytes(blob)).decode("ascii")

        with pytest.raises(DecryptionFailedError):
            codec.decrypt(tampered)

    def test_wrong_secret_fails_closed(self, codec):
        other = EncryptionCodec("another-secret", scrypt_n=2**10)

        with pytest.raises(DecryptionFailedError):
            other.decrypt(codec.encrypt("data"))

    def test_truncated_value_fails_closed(self, codec):
        short = base64.b64encode(b"x" * (IV_LENGTH + TAG_LENGTH)).decode("ascii")

        with pytest.raises(DecryptionFailedError):
            codec.decrypt(ENCRYPTED_PREFIX + short)

    def test_plain_text_never_returned_as_fallback(self, codec):
        """A value that is not valid ciphertext raises instead of echoing back."""
        with pytest.raises(DecryptionFailedError):
            codec.decrypt("Ada Lovelace")

    def test_unprefixed_base64_is_accepted(self, codec):
        sealed = codec.encrypt("legacy")
        bare = sealed[len(ENCRYPTED_PREFIX):]

        assert codec.decrypt(bare) == "legacy"

    def test_is_encrypted_marker(self, codec):
        assert EncryptionCodec.is_encrypted(codec.encrypt("x"))
        assert not EncryptionCodec.is_encrypted("plain")
        assert not EncryptionCodec.is_encrypted(None)


class TestFieldEncryptor:
    """Tests for the declared encrypted-field registry."""

    def test_registry_lists_account_names_only(self):
        assert encrypted_fields_for(Account) == ("first_name", "last_name")
        assert encrypted_fields_for(CredentialRecord) == ()
        assert set(ENCRYPTED_FIELDS) == {Account}

    def test_encrypt_fields_returns_sealed_copy(self, field_encryptor):
        account = Account(id="a1", email="a@example.com", first_name="Ada", last_name="L")

        sealed = field_encryptor.encrypt_fields(account)

        assert sealed is not account
        assert account.first_name == "Ada"
        assert EncryptionCodec.is_encrypted(sealed.first_name)
        assert EncryptionCodec.is_encrypted(sealed.last_name)
        assert sealed.email == "a@example.com"

    def test_decrypt_fields_restores_plaintext(self, field_encryptor):
        account = Account(id="a1", email="a@example.com", first_name="Ada", last_name=None)

        opened = field_encryptor.decrypt_fields(field_encryptor.encrypt_fields(account))

        assert opened.first_name == "Ada"
        assert opened.last_name is None

    def test_already_encrypted_values_are_not_sealed_twice(self, field_encryptor, codec):
        sealed = codec.encrypt("Ada")

        assert field_encryptor.encrypt_value(sealed) == sealed
        assert codec.decrypt(field_encryptor.encrypt_value(sealed)) == "Ada"

    def test_unregistered_types_pass_through(self, field_encryptor):
        record = CredentialRecord(account_id="a1", password_hash="h")

        assert field_encryptor.encrypt_fields(record) is record
        assert field_encryptor.decrypt_fields(record) is record

    def test_field_encryptor_wraps_codec(self, codec):
        assert FieldEncryptor(codec).codec is codec
