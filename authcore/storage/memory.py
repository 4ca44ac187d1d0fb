from __future__ import annotations

import dataclasses
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.defaults import DEFAULT_CATEGORIES, DEFAULT_PAYMENT_METHODS
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ACCOUNT_FIELDS,
    CREDENTIAL_FIELDS,
    Account,
    Category,
    CredentialRecord,
    PaymentMethod,
    SecurityEvent,
    normalize_email,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every read returns a copy so callers observe the same snapshot semantics
    they would get from a database row. All mutation happens under a single
    re-entrant lock, which makes the per-account compare-and-update
    operations (failed-login counting, backup-code removal) atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, CredentialRecord] = {}
        self.security_events: List[SecurityEvent] = []
        self.categories: Dict[str, List[Category]] = {}
        self.payment_methods: Dict[str, List[PaymentMethod]] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- accounts ---------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            acc.email == email and not acc.is_deleted and acc.id != exclude_id
            for acc in self.accounts.values()
        )

    def _provider_owner(self, provider: str, provider_account_id: str) -> Optional[Account]:
        for acc in self.accounts.values():
            if (
                acc.provider == provider
                and acc.provider_account_id == provider_account_id
            ):
                return acc
        return None

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
        credential: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Account, CredentialRecord]:
        email = normalize_email(email)
        credential = credential or {}
        unknown = set(credential) - CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if provider and provider_account_id and self._provider_owner(
                provider, provider_account_id
            ):
                raise ConstraintViolation(
                    "provider account already linked", {"field": "provider"}
                )
            now = self._now()
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                first_name=first_name,
                last_name=last_name,
                provider=provider,
                provider_account_id=provider_account_id,
                email_verified_at=email_verified_at,
                created_at=now,
                updated_at=now,
            )
            record = CredentialRecord(account_id=account.id, updated_at=now, **credential)
            self.accounts[account.id] = account
            self.credentials[account.id] = record
            return dataclasses.replace(account), self._copy_credential(record)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return dataclasses.replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email and not account.is_deleted:
                    return dataclasses.replace(account)
        return None

    def get_account_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._provider_owner(provider, provider_account_id)
            return dataclasses.replace(account) if account else None

    def update_account(self, account_id: str, **fields: Any) -> Account:
        unknown = set(fields) - ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise KeyError(account_id)
            if "email" in fields and self._email_taken(fields["email"], exclude_id=account_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            provider = fields.get("provider", account.provider)
            provider_account_id = fields.get(
                "provider_account_id", account.provider_account_id
            )
            if provider and provider_account_id:
                owner = self._provider_owner(provider, provider_account_id)
                if owner and owner.id != account_id:
                    raise ConstraintViolation(
                        "provider account already linked", {"field": "provider"}
                    )
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = self._now()
            return dataclasses.replace(account)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            accounts = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [dataclasses.replace(a) for a in accounts[:limit]]

    # -- credentials ------------------------------------------------------

    def _copy_credential(self, record: CredentialRecord) -> CredentialRecord:
        return dataclasses.replace(record, backup_codes=list(record.backup_codes))

    def get_credential(self, account_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            record = self.credentials.get(account_id)
            return self._copy_credential(record) if record else None

    def update_credential(self, account_id: str, **fields: Any) -> CredentialRecord:
        unknown = set(fields) - CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        with self._data_lock:
            record = self.credentials.get(account_id)
            if not record:
                raise KeyError(account_id)
            for name, value in fields.items():
                if name == "backup_codes":
                    value = list(value or [])
                setattr(record, name, value)
            record.updated_at = self._now()
            return self._copy_credential(record)

    def get_credential_by_reset_token(self, token_digest: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            for record in self.credentials.values():
                if record.password_reset_token == token_digest:
                    return self._copy_credential(record)
        return None

    def get_credential_by_verification_token(
        self, token_digest: str
    ) -> Optional[CredentialRecord]:
        with self._data_lock:
            for record in self.credentials.values():
                if record.email_verification_token == token_digest:
                    return self._copy_credential(record)
        return None

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> CredentialRecord:
        """Increment the failure counter and lock the account at the threshold."""

        with self._data_lock:
            record = self.credentials.get(account_id)
            if not record:
                raise KeyError(account_id)
            if record.locked_until is not None and record.locked_until <= now:
                # previous lockout has elapsed; start a fresh window
                record.failed_login_attempts = 0
                record.locked_until = None
            record.failed_login_attempts += 1
            record.last_failed_login_at = now
            if record.failed_login_attempts >= max_attempts:
                record.locked_until = now + lockout
            record.updated_at = now
            return self._copy_credential(record)

    def clear_failed_logins(
        self, account_id: str, *, now: datetime
    ) -> Optional[CredentialRecord]:
        """Reset the failure counter unless a lock is active at ``now``.

        Returns None when the account is still locked.
        """

        with self._data_lock:
            record = self.credentials.get(account_id)
            if not record:
                raise KeyError(account_id)
            if record.is_locked(now):
                return None
            record.failed_login_attempts = 0
            record.last_failed_login_at = None
            record.locked_until = None
            record.updated_at = self._now()
            return self._copy_credential(record)

    def remove_backup_code(self, account_id: str, code_hash: str) -> bool:
        """Remove ``code_hash`` if still present; False when another caller won."""

        with self._data_lock:
            record = self.credentials.get(account_id)
            if not record or code_hash not in record.backup_codes:
                return False
            record.backup_codes.remove(code_hash)
            record.updated_at = self._now()
            return True

    # -- audit ------------------------------------------------------------

    def record_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(event)

    def list_security_events(
        self, actor_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[SecurityEvent]:
        with self._data_lock:
            return [
                e
                for e in self.security_events
                if (actor_id is None or e.actor_id == actor_id)
                and (action is None or e.action == action)
            ]

    # -- default data -----------------------------------------------------

    def seed_default_categories(self, account_id: str) -> List[Category]:
        with self._data_lock:
            existing = self.categories.setdefault(account_id, [])
            names = {c.name for c in existing}
            for name, icon, color, type_ in DEFAULT_CATEGORIES:
                if name not in names:
                    existing.append(
                        Category(
                            account_id=account_id,
                            name=name,
                            icon=icon,
                            color=color,
                            type=type_,
                        )
                    )
            return list(existing)

    def seed_default_payment_methods(self, account_id: str) -> List[PaymentMethod]:
        with self._data_lock:
            existing = self.payment_methods.setdefault(account_id, [])
            names = {m.name for m in existing}
            for name, icon in DEFAULT_PAYMENT_METHODS.items():
                if name not in names:
                    existing.append(PaymentMethod(account_id=account_id, name=name, icon=icon))
            return sorted(existing, key=lambda m: m.name)
