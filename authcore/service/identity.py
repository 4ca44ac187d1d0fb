from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Tuple

import httpx

from authcore.logging import get_logger
from authcore.service.audit import FAILURE, SUCCESS, AuditAction, AuditRecorder
from authcore.service.auth import (
    CredentialStore,
    DefaultDataSeeder,
    public_account_view,
    seed_account_defaults,
)
from authcore.service.errors import (
    AccountLinkRequiredError,
    InvalidProviderError,
    NoFallbackCredentialError,
    NotFoundError,
    ProviderAlreadyLinkedError,
    ProviderTokenInvalidError,
    ServerError,
)
from authcore.service.fields import FieldEncryptor
from authcore.service.hashing import SecretHasher
from authcore.service.tokens import TokenIssuer
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, normalize_email

logger = get_logger(__name__)

# Endpoints used to confirm a client-supplied provider access token
PROVIDER_TOKEN_ENDPOINTS = {
    "google": "https://www.googleapis.com/oauth2/v3/tokeninfo",
    "github": "https://api.github.com/user",
    "facebook": "https://graph.facebook.com/debug_token",
    "microsoft": "https://graph.microsoft.com/v1.0/me",
}
APPLE_ISSUER = "https://appleid.apple.com"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_display_name(display_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    parts = (display_name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


class IdentityLinker:
    """Federated sign-in: account discovery, linking and unlinking.

    An account carries at most one external provider binding, and a
    (provider, provider_account_id) pair belongs to at most one account.
    Unlinking is refused when it would leave the account with no way to sign
    in.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        tokens: TokenIssuer,
        fields: FieldEncryptor,
        hasher: SecretHasher,
        audit: AuditRecorder,
        allowed_providers: Iterable[str],
        allow_relink_by_email: bool = True,
        seeder: Optional[DefaultDataSeeder] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        facebook_app_id: Optional[str] = None,
        facebook_app_secret: Optional[str] = None,
        apple_client_id: Optional[str] = None,
        http_timeout: float = 10.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.fields = fields
        self.hasher = hasher
        self.audit = audit
        self.allowed_providers = frozenset(p.lower() for p in allowed_providers)
        self.allow_relink_by_email = allow_relink_by_email
        self.seeder = seeder
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=http_timeout, follow_redirects=False)
        )
        self.facebook_app_id = facebook_app_id
        self.facebook_app_secret = facebook_app_secret
        self.apple_client_id = apple_client_id
        self._now = now
        self.logger = logger

    def _validate_provider(self, provider: str) -> str:
        normalized = (provider or "").strip().lower()
        if normalized not in self.allowed_providers:
            raise InvalidProviderError(
                f"Invalid provider. Must be one of: {', '.join(sorted(self.allowed_providers))}"
            )
        return normalized

    # -- federated sign-in ------------------------------------------------

    async def resolve_federated_identity(
        self,
        email: str,
        display_name: Optional[str],
        provider: str,
        provider_account_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        provider = self._validate_provider(provider)
        provider_account_id = str(provider_account_id or "").strip()
        if not provider_account_id:
            raise InvalidProviderError("Provider account id is required")
        email = normalize_email(email)
        request = {"ip_addr": ip_addr, "user_agent": user_agent}

        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            # provider-side email change: the binding still identifies the account
            account = self.store.get_account_by_provider(provider, provider_account_id)
        if account is not None and (account.is_deleted or not account.is_active):
            self.audit.emit(
                AuditAction.OAUTH_LOGIN,
                FAILURE,
                actor_id=account.id,
                reason="account_inactive",
                provider=provider,
                **request,
            )
            raise NotFoundError("Account not found")

        if account is None:
            account = self._create_federated_account(
                email, display_name, provider, provider_account_id, **request
            )
        elif account.provider != provider:
            if not self.allow_relink_by_email:
                self.audit.emit(
                    AuditAction.ACCOUNT_LINKING,
                    FAILURE,
                    actor_id=account.id,
                    reason="relink_disabled",
                    provider=provider,
                    **request,
                )
                raise AccountLinkRequiredError()
            account = self._bind_provider(account, provider, provider_account_id)
            self.audit.emit(
                AuditAction.ACCOUNT_LINKING,
                SUCCESS,
                actor_id=account.id,
                provider=provider,
                **request,
            )
        elif account.provider_account_id != provider_account_id:
            previous = account.provider_account_id
            account = self._bind_provider(account, provider, provider_account_id)
            self.audit.emit(
                AuditAction.PROVIDER_ID_UPDATE,
                SUCCESS,
                actor_id=account.id,
                provider=provider,
                previous_provider_account_id=previous,
                **request,
            )

        account = self.store.update_account(account.id, last_login_at=self._now())
        self.audit.emit(
            AuditAction.OAUTH_LOGIN,
            SUCCESS,
            actor_id=account.id,
            provider=provider,
            **request,
        )
        return account

    async def federated_login(
        self,
        email: str,
        display_name: Optional[str],
        provider: str,
        provider_account_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        account = await self.resolve_federated_identity(
            email,
            display_name,
            provider,
            provider_account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        session = self.tokens.issue_session(account.id, account.email, account.role)
        return {**session, "user": public_account_view(self.fields, account)}

    def _bind_provider(
        self, account: Account, provider: Optional[str], provider_account_id: Optional[str]
    ) -> Account:
        try:
            return self.store.update_account(
                account.id, provider=provider, provider_account_id=provider_account_id
            )
        except ConstraintViolation:
            raise ProviderAlreadyLinkedError()

    def _create_federated_account(
        self,
        email: str,
        display_name: Optional[str],
        provider: str,
        provider_account_id: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> Account:
        if not email:
            raise InvalidProviderError("Provider did not supply an email address")
        first_name, last_name = split_display_name(display_name)
        # never disclosed; the account is reachable through the provider or a reset
        pwd_hash, salt, algo = self.hasher.hash_password(self.hasher.random_password())
        try:
            account, _ = self.store.create_account_with_credential(
                email,
                first_name=self.fields.encrypt_value(first_name),
                last_name=self.fields.encrypt_value(last_name),
                provider=provider,
                provider_account_id=provider_account_id,
                email_verified_at=self._now(),
                credential={
                    "password_hash": pwd_hash,
                    "password_salt": salt,
                    "password_algo": algo,
                    "password_set_by_user": False,
                },
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "provider":
                raise ProviderAlreadyLinkedError()
            raise
        seed_account_defaults(self.seeder, account.id)
        self.audit.emit(
            AuditAction.OAUTH_ACCOUNT_CREATION,
            SUCCESS,
            actor_id=account.id,
            provider=provider,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("federated_account_created", account_id=account.id, provider=provider)
        return account

    # -- manual linking ---------------------------------------------------

    async def link_account(
        self,
        account_id: str,
        provider: str,
        provider_account_id: str,
        access_token: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        provider = self._validate_provider(provider)
        provider_account_id = str(provider_account_id or "").strip()
        if not provider_account_id:
            raise InvalidProviderError("Provider account id is required")
        account = self.store.get_account(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("Account not found")

        owner = self.store.get_account_by_provider(provider, provider_account_id)
        if owner and owner.id != account_id:
            self.audit.emit(
                AuditAction.MANUAL_ACCOUNT_LINKING,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                provider=provider,
                reason="provider_already_linked",
            )
            raise ProviderAlreadyLinkedError()
        if owner and owner.id == account_id:
            return {"message": f"Account already linked with {provider}", "provider": provider}

        if access_token and not await self.verify_provider_token(
            provider, access_token, provider_account_id
        ):
            self.audit.emit(
                AuditAction.MANUAL_ACCOUNT_LINKING,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                provider=provider,
                reason="provider_token_invalid",
            )
            raise ProviderTokenInvalidError()

        self._bind_provider(account, provider, provider_account_id)
        self.audit.emit(
            AuditAction.MANUAL_ACCOUNT_LINKING,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            provider=provider,
        )
        return {"message": f"Account successfully linked with {provider}", "provider": provider}

    async def unlink_provider(
        self,
        account_id: str,
        provider: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        account = self.store.get_account(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("Account not found")
        provider = (provider or "").strip().lower()
        if not account.provider or account.provider != provider:
            raise InvalidProviderError(f"Account is not linked with {provider}")
        record = self.store.get_credential(account_id)
        if not record or not record.has_usable_password:
            self.audit.emit(
                AuditAction.PROVIDER_UNLINK,
                FAILURE,
                actor_id=account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                provider=provider,
                reason="no_fallback_credential",
            )
            raise NoFallbackCredentialError()

        self.store.update_account(account_id, provider=None, provider_account_id=None)
        self.audit.emit(
            AuditAction.PROVIDER_UNLINK,
            SUCCESS,
            actor_id=account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            provider=provider,
        )
        return {"message": f"Successfully unlinked {provider} from your account"}

    # -- provider token checks --------------------------------------------

    async def verify_provider_token(
        self, provider: str, access_token: str, provider_account_id: Optional[str] = None
    ) -> bool:
        """Confirm ``access_token`` is live and belongs to ``provider_account_id``."""
        if provider == "apple":
            return self._check_apple_identity_token(access_token, provider_account_id)
        url = PROVIDER_TOKEN_ENDPOINTS.get(provider)
        if not url:
            self.logger.warning("provider_token_check_unsupported", provider=provider)
            return False

        try:
            async with self._http_client_factory() as client:
                if provider == "google":
                    response = await client.get(url, params={"access_token": access_token})
                elif provider == "github":
                    response = await client.get(
                        url,
                        headers={
                            "Authorization": f"token {access_token}",
                            "Accept": "application/vnd.github+json",
                        },
                    )
                elif provider == "facebook":
                    if not self.facebook_app_id or not self.facebook_app_secret:
                        self.logger.error("facebook_app_credentials_missing")
                        return False
                    response = await client.get(
                        url,
                        params={
                            "input_token": access_token,
                            "access_token": f"{self.facebook_app_id}|{self.facebook_app_secret}",
                        },
                    )
                else:
                    response = await client.get(
                        url, headers={"Authorization": f"Bearer {access_token}"}
                    )
        except httpx.HTTPError as exc:
            self.logger.error(
                "provider_token_check_failed",
                provider=provider,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Identity provider is unavailable")

        if response.status_code != 200:
            self.logger.warning(
                "provider_token_rejected", provider=provider, status=response.status_code
            )
            return False
        try:
            body = response.json()
        except ValueError:
            self.logger.warning("provider_token_response_invalid", provider=provider)
            return False
        if not isinstance(body, dict):
            return False

        if provider == "facebook":
            data = body.get("data") or {}
            if not data.get("is_valid"):
                return False
            remote_id = data.get("user_id")
        elif provider == "google":
            remote_id = body.get("sub")
        else:
            remote_id = body.get("id")
        return self._ids_match(provider, provider_account_id, remote_id)

    def _ids_match(
        self, provider: str, expected: Optional[str], remote_id: object
    ) -> bool:
        if expected and remote_id is not None and str(remote_id) != expected:
            self.logger.warning("provider_account_id_mismatch", provider=provider)
            return False
        return True

    def _check_apple_identity_token(
        self, id_token: str, provider_account_id: Optional[str]
    ) -> bool:
        # TODO: verify the signature against Apple's published JWKS; only claims are checked here
        parts = id_token.split(".")
        if len(parts) != 3:
            return False
        try:
            padded = parts[1] + "=" * ((4 - len(parts[1]) % 4) % 4)
            claims = json.loads(base64.urlsafe_b64decode(padded))
        except (ValueError, json.JSONDecodeError):
            return False
        if not isinstance(claims, dict):
            return False
        if claims.get("iss") != APPLE_ISSUER:
            return False
        if not self.apple_client_id:
            self.logger.error("apple_client_id_missing")
            return False
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.apple_client_id not in audiences:
            self.logger.warning("provider_token_audience_mismatch", provider="apple")
            return False
        try:
            if float(claims["exp"]) < self._now().timestamp():
                return False
        except (KeyError, TypeError, ValueError):
            return False
        return self._ids_match("apple", provider_account_id, claims.get("sub"))
