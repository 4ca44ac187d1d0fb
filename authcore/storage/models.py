from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """Identity record. ``first_name``/``last_name`` hold ciphertext at rest."""

    id: str
    email: str
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False
    email_verified_at: Optional[datetime] = None
    provider: Optional[str] = None
    provider_account_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class CredentialRecord:
    """Secret-bearing companion of an Account; exactly one per account."""

    account_id: str
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    password_algo: str = "argon2id"
    password_set_by_user: bool = True
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    last_password_change_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @property
    def has_usable_password(self) -> bool:
        return bool(self.password_hash) and self.password_set_by_user


@dataclass
class SecurityEvent:
    actor_id: str
    action: str
    outcome: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Category:
    account_id: str
    name: str
    icon: str
    color: str
    type: str = "EXPENSE"
    is_default: bool = True


@dataclass
class PaymentMethod:
    account_id: str
    name: str
    icon: str
    is_default: bool = True


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# Mutable columns accepted by the stores' update_* methods
ACCOUNT_FIELDS = frozenset(f.name for f in fields(Account)) - {"id", "created_at"}
CREDENTIAL_FIELDS = frozenset(f.name for f in fields(CredentialRecord)) - {"account_id"}
