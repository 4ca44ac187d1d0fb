from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg

from authcore.logging import get_logger
from authcore.service.audit import FAILURE, SUCCESS, AuditAction, AuditRecorder
from authcore.service.crypto import EncryptionCodec
from authcore.service.email import Notifier
from authcore.service.errors import (
    ConfirmationRequiredError,
    ConflictError,
    InvalidMfaCodeError,
    MfaSetupNotInitiatedError,
    NotFoundError,
)
from authcore.service.hashing import SecretHasher
from authcore.storage.models import CredentialRecord

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_code(code: Optional[str]) -> str:
    return "".join((code or "").split()).replace("-", "").lower()


class MfaEngine:
    """TOTP enrollment and verification with single-use backup codes.

    The TOTP secret is stored encrypted and is only returned to the caller
    once, during enrollment. Backup codes are stored as argon2 hashes and
    removed through the store's compare-and-remove operation, so a code can
    be redeemed at most once even under concurrent requests.
    """

    def __init__(
        self,
        store,
        codec: EncryptionCodec,
        hasher: SecretHasher,
        audit: AuditRecorder,
        notifier: Optional[Notifier] = None,
        *,
        issuer: str = "AuthCore",
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.audit = audit
        self.notifier = notifier
        self.issuer = issuer
        self._now = now
        self.logger = logger

    # -- TOTP primitives --------------------------------------------------

    def _new_secret(self) -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def _generate_totp(
        self,
        secret: str,
        timestamp: float,
        *,
        interval: int = TOTP_INTERVAL,
        digits: int = TOTP_DIGITS,
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except Exception:
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        # SHA1 is what authenticator apps implement for otpauth:// URIs
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    def _verify_totp(
        self, secret: str, code: str, *, window: int = 1, interval: int = TOTP_INTERVAL
    ) -> bool:
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now_ts = self._now().timestamp()
        for offset in range(-window, window + 1):
            generated = self._generate_totp(secret, now_ts + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def _otpauth_uri(self, secret: str, email: str) -> str:
        label = quote(f"{self.issuer}:{email}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def _qr_data_url(self, uri: str) -> str:
        image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
        svg = image.to_string()
        return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")

    # -- helpers ----------------------------------------------------------

    def _require_credential(self, account_id: str) -> CredentialRecord:
        record = self.store.get_credential(account_id)
        if not record:
            raise NotFoundError("Account not found")
        return record

    def _consume_backup_code(
        self, account_id: str, record: CredentialRecord, code: str
    ) -> bool:
        for stored_hash in record.backup_codes:
            if self.hasher.verify_code(stored_hash, code):
                # another request may have redeemed the same code in between
                return self.store.remove_backup_code(account_id, stored_hash)
        return False

    def _notify_setup(self, email: str, qr_code_url: str, secret: str) -> None:
        if not self.notifier:
            return
        try:
            self.notifier.send_mfa_setup_email(email, qr_code_url, secret)
        except Exception as exc:
            self.logger.warning(
                "mfa_setup_email_failed", error_type=type(exc).__name__, error=str(exc)
            )

    def check_code(self, account_id: str, code: str) -> bool:
        """True when ``code`` is a current TOTP or an unused backup code.

        Only meaningful while MFA is enabled; otherwise always False.
        """
        record = self.store.get_credential(account_id)
        if not record or not record.mfa_enabled or not record.mfa_secret:
            return False
        normalized = _normalize_code(code)
        if not normalized:
            return False
        secret = self.codec.decrypt(record.mfa_secret)
        if self._verify_totp(secret, normalized):
            return True
        if self._consume_backup_code(account_id, record, normalized):
            self.logger.info(
                "mfa_backup_code_used",
                account_id=account_id,
                remaining=max(len(record.backup_codes) - 1, 0),
            )
            return True
        return False

    # -- operations -------------------------------------------------------

    async def generate_secret(
        self,
        account_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        account = self.store.get_account(account_id)
        record = self.store.get_credential(account_id)
        if not account or account.is_deleted or not record:
            raise NotFoundError("Account not found")
        if record.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = self._new_secret()
        # replaces any earlier pending enrollment
        self.store.update_credential(
            account_id, mfa_secret=self.codec.encrypt(secret), mfa_enabled=False
        )
        uri = self._otpauth_uri(secret, account.email)
        qr_code_url = self._qr_data_url(uri)
        self._notify_setup(account.email, qr_code_url, secret)
        self.audit.emit(
            AuditAction.MFA_SETUP,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return {"secret": secret, "otpauth_uri": uri, "qr_code_url": qr_code_url}

    async def enable(
        self,
        account_id: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        record = self._require_credential(account_id)
        if record.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not record.mfa_secret:
            raise MfaSetupNotInitiatedError()
        secret = self.codec.decrypt(record.mfa_secret)
        if not self._verify_totp(secret, _normalize_code(code)):
            self.audit.emit(
                AuditAction.MFA_ENABLE,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                reason="invalid_code",
            )
            raise InvalidMfaCodeError()
        backup_codes = self._generate_backup_codes()
        self.store.update_credential(
            account_id,
            mfa_enabled=True,
            backup_codes=[self.hasher.hash_code(c) for c in backup_codes],
        )
        self.logger.info("mfa_enabled", account_id=account_id)
        self.audit.emit(
            AuditAction.MFA_ENABLE,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return {"enabled": True, "backup_codes": backup_codes}

    def _generate_backup_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < BACKUP_CODE_COUNT:
            candidate = secrets.token_hex(4)
            if candidate not in codes:
                codes.append(candidate)
        return codes

    async def verify(
        self,
        account_id: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        verified = self.check_code(account_id, code)
        self.audit.emit(
            AuditAction.MFA_VERIFY,
            SUCCESS if verified else FAILURE,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        if not verified:
            raise InvalidMfaCodeError()
        return {"verified": True}

    async def disable(
        self,
        account_id: str,
        code: str,
        confirm: bool,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        if confirm is not True:
            raise ConfirmationRequiredError()
        if not self.check_code(account_id, code):
            self.audit.emit(
                AuditAction.MFA_DISABLE,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                reason="invalid_code",
            )
            raise InvalidMfaCodeError()
        self.store.update_credential(
            account_id, mfa_enabled=False, mfa_secret=None, backup_codes=[]
        )
        self.logger.info("mfa_disabled", account_id=account_id)
        self.audit.emit(
            AuditAction.MFA_DISABLE,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return {"enabled": False}
