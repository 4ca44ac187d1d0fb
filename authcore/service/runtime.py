from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.audit import AuditRecorder, LoggingAuditSink
from authcore.service.auth import AuthService
from authcore.service.crypto import EncryptionCodec
from authcore.service.email import EmailService
from authcore.service.fields import FieldEncryptor
from authcore.service.hashing import SecretHasher
from authcore.service.identity import IdentityLinker
from authcore.service.mfa import MfaEngine
from authcore.service.tokens import TokenIssuer
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for log output."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.netloc.rpartition("@")[2]
        return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))
    except ValueError:
        return "<unparseable dsn>"


class Runtime:
    """Builds the service graph from settings.

    Missing secrets are fatal here: nothing is constructed without an
    encryption key and a token signing secret.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.settings.require_secrets()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.codec = EncryptionCodec(self.settings.encryption_key)
        self.fields = FieldEncryptor(self.codec)
        self.hasher = SecretHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            extended_session_ttl_minutes=self.settings.session_extended_ttl_minutes,
        )
        self.audit = AuditRecorder([LoggingAuditSink(), self.store])
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
        )
        self.mfa = MfaEngine(
            self.store,
            self.codec,
            self.hasher,
            self.audit,
            self.email,
            issuer=self.settings.mfa_issuer,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            mfa=self.mfa,
            fields=self.fields,
            hasher=self.hasher,
            audit=self.audit,
            notifier=self.email,
            seeder=self.store,
        )
        self.identity = IdentityLinker(
            self.store,
            tokens=self.tokens,
            fields=self.fields,
            hasher=self.hasher,
            audit=self.audit,
            allowed_providers=self.settings.allowed_oauth_providers,
            allow_relink_by_email=self.settings.allow_provider_relink_by_email,
            seeder=self.store,
            facebook_app_id=self.settings.facebook_app_id,
            facebook_app_secret=self.settings.facebook_app_secret,
            apple_client_id=self.settings.apple_client_id,
            http_timeout=self.settings.provider_http_timeout,
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            email_configured=self.email.is_configured,
            providers=list(self.settings.allowed_oauth_providers),
        )


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
