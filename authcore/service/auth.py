from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.audit import (
    FAILURE,
    SUCCESS,
    UNKNOWN_ACTOR,
    AuditAction,
    AuditRecorder,
)
from authcore.service.email import Notifier
from authcore.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    AuthenticationError,
    ChallengeExpiredError,
    ConfirmationRequiredError,
    InvalidChallengeError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from authcore.service.fields import FieldEncryptor
from authcore.service.hashing import SecretHasher, token_digest
from authcore.service.mfa import MfaEngine
from authcore.service.tokens import ACCESS_TOKEN_TYPE, TokenIssuer
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, CredentialRecord, normalize_email

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If an account exists with this email, a password reset link has been sent."
GENERIC_VERIFICATION_MESSAGE = (
    "If an account exists with this email, a verification link has been sent."
)


class CredentialStore(Protocol):
    def create_account_with_credential(
        self,
        email: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        provider: Optional[str] = None,
        provider_account_id: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
        credential: Optional[dict] = None,
    ) -> Tuple[Account, CredentialRecord]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Account: ...

    def list_accounts(self, limit: int = 100) -> List[Account]: ...

    def get_credential(self, account_id: str) -> Optional[CredentialRecord]: ...

    def update_credential(self, account_id: str, **fields: Any) -> CredentialRecord: ...

    def get_credential_by_reset_token(
        self, token_digest: str
    ) -> Optional[CredentialRecord]: ...

    def get_credential_by_verification_token(
        self, token_digest: str
    ) -> Optional[CredentialRecord]: ...

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> CredentialRecord: ...

    def clear_failed_logins(
        self, account_id: str, *, now: datetime
    ) -> Optional[CredentialRecord]: ...

    def remove_backup_code(self, account_id: str, code_hash: str) -> bool: ...


class DefaultDataSeeder(Protocol):
    def seed_default_categories(self, account_id: str) -> Any: ...

    def seed_default_payment_methods(self, account_id: str) -> Any: ...


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def public_account_view(fields: FieldEncryptor, account: Account) -> dict:
    """Caller-facing account fields with personal data decrypted."""
    opened = fields.decrypt_fields(account)
    return {
        "id": opened.id,
        "email": opened.email,
        "first_name": opened.first_name,
        "last_name": opened.last_name,
        "role": opened.role,
        "email_verified": opened.email_verified,
    }


def seed_account_defaults(seeder: Optional[DefaultDataSeeder], account_id: str) -> None:
    """Create starter categories and payment methods; failures are only logged."""
    if seeder is None:
        return
    for step in ("seed_default_categories", "seed_default_payment_methods"):
        try:
            getattr(seeder, step)(account_id)
        except Exception as exc:
            logger.warning(
                "account_seed_failed",
                step=step,
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class AuthService:
    """Password login with lockout, MFA login completion, and account lifecycle.

    A login attempt moves through ``CREDENTIAL_CHECK`` to exactly one of
    locked, invalid, MFA-required or authenticated. Accounts with MFA receive
    a short-lived challenge token instead of a session and finish the login
    through :meth:`complete_login_with_mfa`.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        mfa: MfaEngine,
        fields: FieldEncryptor,
        hasher: SecretHasher,
        audit: AuditRecorder,
        notifier: Optional[Notifier] = None,
        seeder: Optional[DefaultDataSeeder] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.mfa = mfa
        self.fields = fields
        self.hasher = hasher
        self.audit = audit
        self.notifier = notifier
        self.seeder = seeder
        self._now = now
        self.logger = logger

    # -- helpers ----------------------------------------------------------

    def public_account(self, account: Account) -> dict:
        return public_account_view(self.fields, account)

    def issue_session_result(self, account: Account, remember_me: bool = False) -> dict:
        session = self.tokens.issue_session(
            account.id, account.email, account.role, remember_me=remember_me
        )
        return {**session, "user": self.public_account(account)}

    def _notify(self, method: str, *args: Any) -> None:
        if not self.notifier:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                method=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _login_denied(
        self,
        reason: str,
        *,
        actor_id: Optional[str],
        ip_addr: Optional[str],
        user_agent: Optional[str],
        action: str = AuditAction.LOGIN,
    ) -> None:
        self.logger.warning("login_denied", reason=reason, account_id=actor_id)
        self.audit.emit(
            action,
            FAILURE,
            actor_id=actor_id or UNKNOWN_ACTOR,
            ip_addr=ip_addr,
            user_agent=user_agent,
            reason=reason,
        )

    def _stamp_login(self, account: Account) -> Account:
        return self.store.update_account(account.id, last_login_at=self._now())

    # -- login ------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        account = self.store.get_account_by_email(email)
        if not account:
            self._login_denied(
                "user_not_found", actor_id=None, ip_addr=ip_addr, user_agent=user_agent
            )
            raise InvalidCredentialsError()
        if not account.is_active:
            self._login_denied(
                "account_inactive",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()
        record = self.store.get_credential(account.id)
        if not record:
            self._login_denied(
                "credential_missing",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()

        now = self._now()
        if record.is_locked(now):
            self._login_denied(
                "account_locked",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise AccountLockedError(detail={"locked_until": record.locked_until.isoformat()})

        if not self.hasher.verify_password(
            record.password_hash, password, algo=record.password_algo
        ):
            updated = self.store.record_failed_login(
                account.id,
                now=now,
                max_attempts=self.settings.max_failed_logins,
                lockout=timedelta(minutes=self.settings.lockout_minutes),
            )
            if updated.is_locked(now):
                self.logger.warning(
                    "account_locked_out",
                    account_id=account.id,
                    attempts=updated.failed_login_attempts,
                )
            self._login_denied(
                "invalid_password",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()

        # a concurrent failure may have locked the account during verification
        if self.store.clear_failed_logins(account.id, now=now) is None:
            current = self.store.get_credential(account.id)
            self._login_denied(
                "account_locked",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            detail = None
            if current and current.locked_until:
                detail = {"locked_until": current.locked_until.isoformat()}
            raise AccountLockedError(detail=detail)

        if record.mfa_enabled:
            challenge = self.tokens.issue_challenge(
                account.id, account.email, remember_me=remember_me
            )
            self.audit.emit(
                AuditAction.LOGIN_MFA_REQUIRED,
                SUCCESS,
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            return {
                "require_mfa": True,
                "challenge_token": challenge,
                "user": {"id": account.id, "email": account.email},
            }

        account = self._stamp_login(account)
        self.audit.emit(
            AuditAction.LOGIN,
            SUCCESS,
            actor_id=account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", account_id=account.id)
        return self.issue_session_result(account, remember_me=remember_me)

    async def complete_login_with_mfa(
        self,
        challenge_token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        try:
            claims = self.tokens.verify(challenge_token)
        except TokenExpiredError:
            self._login_denied(
                "challenge_expired",
                actor_id=None,
                ip_addr=ip_addr,
                user_agent=user_agent,
                action=AuditAction.LOGIN_MFA_COMPLETE,
            )
            raise ChallengeExpiredError()
        except TokenInvalidError:
            self._login_denied(
                "challenge_invalid",
                actor_id=None,
                ip_addr=ip_addr,
                user_agent=user_agent,
                action=AuditAction.LOGIN_MFA_COMPLETE,
            )
            raise InvalidChallengeError()

        account_id = claims.get("sub")
        if claims.get("mfa_challenge") is not True:
            self._login_denied(
                "not_a_challenge",
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                action=AuditAction.LOGIN_MFA_COMPLETE,
            )
            raise InvalidChallengeError()

        account = self.store.get_account(account_id)
        if not account or account.is_deleted or not account.is_active:
            self._login_denied(
                "user_not_found",
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                action=AuditAction.LOGIN_MFA_COMPLETE,
            )
            raise InvalidChallengeError()

        if not self.mfa.check_code(account.id, code):
            self._login_denied(
                "invalid_mfa_code",
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                action=AuditAction.LOGIN_MFA_COMPLETE,
            )
            raise InvalidMfaCodeError()

        account = self._stamp_login(account)
        self.audit.emit(
            AuditAction.LOGIN_MFA_COMPLETE,
            SUCCESS,
            actor_id=account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return self.issue_session_result(
            account, remember_me=bool(claims.get("remember_me"))
        )

    # -- MFA management ---------------------------------------------------

    async def generate_mfa_secret(self, account_id: str, **request: Any) -> dict:
        return await self.mfa.generate_secret(account_id, **request)

    async def enable_mfa(self, account_id: str, code: str, **request: Any) -> dict:
        return await self.mfa.enable(account_id, code, **request)

    async def verify_mfa(self, account_id: str, code: str, **request: Any) -> dict:
        return await self.mfa.verify(account_id, code, **request)

    async def disable_mfa(
        self, account_id: str, code: str, confirm: bool, **request: Any
    ) -> dict:
        return await self.mfa.disable(account_id, code, confirm, **request)

    async def authenticate(self, token: str) -> AuthContext:
        """Resolve a session token to the account it was issued for."""
        claims = self.tokens.verify(token)
        if claims.get("token_type") != ACCESS_TOKEN_TYPE or claims.get("mfa_challenge"):
            raise TokenInvalidError()
        account = self.store.get_account(claims["sub"])
        if not account or account.is_deleted or not account.is_active:
            raise AuthenticationError("Account is not available")
        return AuthContext(account_id=account.id, email=account.email, role=account.role)

    # -- registration -----------------------------------------------------

    def _new_verification_token(self) -> Tuple[str, dict]:
        token = secrets.token_hex(32)
        fields = {
            "email_verification_token": token_digest(token),
            "email_verification_expires_at": self._now()
            + timedelta(hours=self.settings.email_verification_ttl_hours),
        }
        return token, fields

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        *,
        role: str = "user",
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required")
        if not password:
            raise ValidationError("Password is required")
        if self.store.get_account_by_email(email):
            raise AlreadyExistsError("An account with this email already exists")

        pwd_hash, salt, algo = self.hasher.hash_password(password)
        token, verification = self._new_verification_token()
        try:
            account, _ = self.store.create_account_with_credential(
                email,
                role=role,
                first_name=self.fields.encrypt_value(first_name or None),
                last_name=self.fields.encrypt_value(last_name or None),
                credential={
                    "password_hash": pwd_hash,
                    "password_salt": salt,
                    "password_algo": algo,
                    "last_password_change_at": self._now(),
                    **verification,
                },
            )
        except ConstraintViolation:
            raise AlreadyExistsError("An account with this email already exists")

        seed_account_defaults(self.seeder, account.id)
        self._notify("send_email_verification_link", account.email, token)
        self.audit.emit(
            AuditAction.REGISTER,
            SUCCESS,
            actor_id=account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("account_registered", account_id=account.id)
        return self.issue_session_result(account)

    # -- password reset ---------------------------------------------------

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        account = self.store.get_account_by_email(email)
        if account and account.is_active:
            token = secrets.token_hex(32)
            self.store.update_credential(
                account.id,
                password_reset_token=token_digest(token),
                password_reset_expires_at=self._now()
                + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            self._notify("send_password_reset_email", account.email, token)
            self.audit.emit(
                AuditAction.PASSWORD_RESET_REQUEST,
                SUCCESS,
                actor_id=account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
        else:
            self.logger.info("password_reset_unknown_email")
        # same response whether or not the account exists
        return {"message": GENERIC_RESET_MESSAGE}

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        if not new_password:
            raise ValidationError("Password is required")
        record = self.store.get_credential_by_reset_token(token_digest(token or ""))
        if (
            not record
            or not record.password_reset_expires_at
            or record.password_reset_expires_at <= self._now()
        ):
            self.logger.warning("password_reset_invalid_token")
            self.audit.emit(
                AuditAction.PASSWORD_RESET,
                FAILURE,
                actor_id=record.account_id if record else None,
                ip_addr=ip_addr,
                user_agent=user_agent,
                reason="invalid_or_expired_token",
            )
            raise InvalidTokenError("Invalid or expired reset token")

        pwd_hash, salt, algo = self.hasher.hash_password(new_password)
        self.store.update_credential(
            record.account_id,
            password_hash=pwd_hash,
            password_salt=salt,
            password_algo=algo,
            password_set_by_user=True,
            password_reset_token=None,
            password_reset_expires_at=None,
            last_password_change_at=self._now(),
            failed_login_attempts=0,
            last_failed_login_at=None,
            locked_until=None,
        )
        self.audit.emit(
            AuditAction.PASSWORD_RESET,
            SUCCESS,
            actor_id=record.account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_completed", account_id=record.account_id)
        return {"message": "Password has been reset successfully"}

    # -- email verification ----------------------------------------------

    async def request_email_verification(
        self,
        *,
        email: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> dict:
        if not email and not account_id:
            raise ValidationError("Either email or account id must be provided")
        if account_id:
            account = self.store.get_account(account_id)
            if not account or account.is_deleted:
                raise NotFoundError("Account not found")
        else:
            account = self.store.get_account_by_email(email)
            if not account:
                return {"message": GENERIC_VERIFICATION_MESSAGE}

        if account.email_verified:
            return {"message": "Email is already verified", "verified": True}

        token, verification = self._new_verification_token()
        self.store.update_credential(account.id, **verification)
        self._notify("send_email_verification_link", account.email, token)
        self.logger.info("email_verification_requested", account_id=account.id)
        return {"message": GENERIC_VERIFICATION_MESSAGE}

    async def verify_email(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        record = self.store.get_credential_by_verification_token(token_digest(token or ""))
        if not record:
            raise InvalidTokenError("Invalid verification token")
        account = self.store.get_account(record.account_id)
        if not account or account.is_deleted:
            raise InvalidTokenError("Invalid verification token")
        if account.email_verified:
            self.store.update_credential(
                account.id,
                email_verification_token=None,
                email_verification_expires_at=None,
            )
            return {"message": "Email is already verified", "verified": True}
        if (
            not record.email_verification_expires_at
            or record.email_verification_expires_at <= self._now()
        ):
            raise InvalidTokenError("Verification token has expired")

        self.store.update_account(account.id, email_verified_at=self._now())
        self.store.update_credential(
            account.id,
            email_verification_token=None,
            email_verification_expires_at=None,
        )
        self.audit.emit(
            AuditAction.EMAIL_VERIFICATION,
            SUCCESS,
            actor_id=account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return {"message": "Email verified successfully", "verified": True}

    async def email_verification_status(self, account_id: str) -> dict:
        account = self.store.get_account(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("Account not found")
        return {
            "verified": account.email_verified,
            "verified_at": account.email_verified_at.isoformat()
            if account.email_verified_at
            else None,
        }

    # -- deletion ---------------------------------------------------------

    async def delete_account(
        self,
        account_id: str,
        password: str,
        confirm: bool,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        """Soft-delete: the rows stay, identifying data is scrambled."""
        if confirm is not True:
            raise ConfirmationRequiredError("Account deletion must be confirmed")
        account = self.store.get_account(account_id)
        record = self.store.get_credential(account_id)
        if not account or account.is_deleted or not record:
            raise NotFoundError("Account not found")
        if not self.hasher.verify_password(
            record.password_hash, password, algo=record.password_algo
        ):
            self.audit.emit(
                AuditAction.ACCOUNT_DELETE,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                reason="invalid_password",
            )
            raise InvalidCredentialsError("Invalid password")

        now = self._now()
        scrambled = f"deleted_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"
        self.store.update_account(
            account_id,
            email=scrambled,
            first_name=self.fields.encrypt_value("[deleted]"),
            last_name=self.fields.encrypt_value("[deleted]"),
            is_deleted=True,
            is_active=False,
            provider=None,
            provider_account_id=None,
        )
        self.store.update_credential(
            account_id,
            mfa_enabled=False,
            mfa_secret=None,
            backup_codes=[],
            password_reset_token=None,
            password_reset_expires_at=None,
            email_verification_token=None,
            email_verification_expires_at=None,
        )
        self.audit.emit(
            AuditAction.ACCOUNT_DELETE,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("account_deleted", account_id=account_id)
        return {"message": "Account deleted successfully"}
