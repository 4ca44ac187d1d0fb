from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = [
    "account",
    "credential",
    "security_event",
    "category",
    "payment_method",
]


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    return "provider" if "provider" in constraint else "email"


class PostgresStore:
    """Postgres-backed credential store.

    The lockout counter and backup-code removal are single conditional
    ``UPDATE ... RETURNING`` statements, so concurrent requests for the same
    account serialize on the row lock instead of racing in application code.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping ------------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "user",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=bool(row.get("is_active", True)),
            is_deleted=bool(row.get("is_deleted", False)),
            email_verified_at=row.get("email_verified_at"),
            provider=row.get("provider"),
            provider_account_id=row.get("provider_account_id"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _credential_from_row(self, row: Dict[str, Any]) -> CredentialRecord:
        return CredentialRecord(
            account_id=str(row["account_id"]),
            password_hash=row.get("password_hash"),
            password_salt=row.get("password_salt"),
            password_algo=row.get("password_algo") or "argon2id",
            password_set_by_user=bool(row.get("password_set_by_user", True)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login_at=row.get("last_failed_login_at"),
            locked_until=row.get("locked_until"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_secret=row.get("mfa_secret"),
            backup_codes=list(row.get("backup_codes") or []),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            last_password_change_at=row.get("last_password_change_at"),
            updated_at=row["updated_at"],
        )

    # -- accounts ---------------------------------------------------------

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
        credential = dict(credential or {})
        unknown = set(credential) - CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        account_id = str(uuid.uuid4())
        # column names come from the dataclass allowlist above
        cred_columns = ["account_id", *credential.keys()]
        cred_values = [account_id, *credential.values()]
        try:
            with self._connect() as conn:
                account_row = conn.execute(
                    """
                    INSERT INTO account (id, email, role, first_name, last_name, provider,
                                         provider_account_id, email_verified_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        role,
                        first_name,
                        last_name,
                        provider,
                        provider_account_id,
                        email_verified_at,
                    ),
                ).fetchone()
                cred_row = conn.execute(
                    "INSERT INTO credential ({}) VALUES ({}) RETURNING *".format(
                        ", ".join(cred_columns), ", ".join(["%s"] * len(cred_columns))
                    ),
                    cred_values,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._account_from_row(account_row), self._credential_from_row(cred_row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s AND NOT is_deleted",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE provider = %s AND provider_account_id = %s",
                (provider, provider_account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Account:
        unknown = set(fields) - ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields.pop("updated_at", None)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        assignments = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments} WHERE id = %s RETURNING *",
                    (*fields.values(), account_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            raise KeyError(account_id)
        return self._account_from_row(row)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    # -- credentials ------------------------------------------------------

    def get_credential(self, account_id: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_credential(self, account_id: str, **fields: Any) -> CredentialRecord:
        unknown = set(fields) - CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        fields.pop("updated_at", None)
        if "backup_codes" in fields:
            fields["backup_codes"] = list(fields["backup_codes"] or [])
        assignments = ", ".join(f"{name} = %s" for name in fields)
        assignments = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE credential SET {assignments} WHERE account_id = %s RETURNING *",
                (*fields.values(), account_id),
            ).fetchone()
        if not row:
            raise KeyError(account_id)
        return self._credential_from_row(row)

    def get_credential_by_reset_token(self, token_digest: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE password_reset_token = %s",
                (token_digest,),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_verification_token(
        self, token_digest: str
    ) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE email_verification_token = %s",
                (token_digest,),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> CredentialRecord:
        """Atomically count a failed login; lock the account at the threshold.

        A counter left over from an elapsed lockout restarts at one.
        """

        with self._connect() as conn:
            row = conn.execute(
                """
                WITH cur AS (
                    SELECT account_id,
                           CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                                THEN 1 ELSE failed_login_attempts + 1 END AS attempts,
                           CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                                THEN NULL ELSE locked_until END AS prior_lock
                    FROM credential
                    WHERE account_id = %(account_id)s
                    FOR UPDATE
                )
                UPDATE credential c
                SET failed_login_attempts = cur.attempts,
                    last_failed_login_at = %(now)s,
                    locked_until = CASE WHEN cur.attempts >= %(max_attempts)s
                                        THEN %(locked_until)s ELSE cur.prior_lock END,
                    updated_at = %(now)s
                FROM cur
                WHERE c.account_id = cur.account_id
                RETURNING c.*
                """,
                {
                    "account_id": account_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "locked_until": now + lockout,
                },
            ).fetchone()
        if not row:
            raise KeyError(account_id)
        return self._credential_from_row(row)

    def clear_failed_logins(
        self, account_id: str, *, now: datetime
    ) -> Optional[CredentialRecord]:
        """Reset the failure counter unless a lock is active at ``now``.

        No row comes back (None) when the account is locked or missing.
        """

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credential
                SET failed_login_attempts = 0, last_failed_login_at = NULL,
                    locked_until = NULL, updated_at = %(now)s
                WHERE account_id = %(account_id)s
                  AND (locked_until IS NULL OR locked_until <= %(now)s)
                RETURNING *
                """,
                {"account_id": account_id, "now": now},
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def remove_backup_code(self, account_id: str, code_hash: str) -> bool:
        """Remove ``code_hash`` only if it is still present (compare-and-remove)."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credential
                SET backup_codes = array_remove(backup_codes, %s), updated_at = now()
                WHERE account_id = %s AND %s = ANY(backup_codes)
                RETURNING account_id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    # -- audit ------------------------------------------------------------

    def record_security_event(self, event: SecurityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (actor_id, action, outcome, ip_address,
                                            user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    event.actor_id,
                    event.action,
                    event.outcome,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details or {}, default=str),
                    event.created_at,
                ),
            )

    # -- default data -----------------------------------------------------

    def seed_default_categories(self, account_id: str) -> List[Category]:
        with self._connect() as conn:
            for name, icon, color, type_ in DEFAULT_CATEGORIES:
                conn.execute(
                    """
                    INSERT INTO category (account_id, name, icon, color, type, is_default)
                    VALUES (%s, %s, %s, %s, %s, TRUE)
                    ON CONFLICT (account_id, name) DO NOTHING
                    """,
                    (account_id, name, icon, color, type_),
                )
            rows = conn.execute(
                "SELECT * FROM category WHERE account_id = %s AND is_default ORDER BY name",
                (account_id,),
            ).fetchall()
        return [
            Category(
                account_id=str(row["account_id"]),
                name=row["name"],
                icon=row["icon"],
                color=row["color"],
                type=row["type"],
            )
            for row in rows
        ]

    def seed_default_payment_methods(self, account_id: str) -> List[PaymentMethod]:
        with self._connect() as conn:
            for name, icon in DEFAULT_PAYMENT_METHODS.items():
                conn.execute(
                    """
                    INSERT INTO payment_method (account_id, name, icon, is_default)
                    VALUES (%s, %s, %s, TRUE)
                    ON CONFLICT (account_id, name) DO NOTHING
                    """,
                    (account_id, name, icon),
                )
            rows = conn.execute(
                "SELECT * FROM payment_method WHERE account_id = %s AND is_default ORDER BY name",
                (account_id,),
            ).fetchall()
        return [
            PaymentMethod(account_id=str(row["account_id"]), name=row["name"], icon=row["icon"])
            for row in rows
        ]
