"""Unit tests for the in-memory store.

Tests for:
- Account and credential creation
- Uniqueness of email and provider bindings
- Atomic failed-login counting
- Atomic backup-code removal
- Default data seeding
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import SecurityEvent

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
LOCKOUT = timedelta(minutes=15)


@pytest.fixture
def account(memory_store):
    account, _ = memory_store.create_account_with_credential(
        "User@Example.com", credential={"password_hash": "h", "backup_codes": ["c1", "c2"]}
    )
    return account


class TestAccounts:
    def test_email_is_normalized(self, memory_store, account):
        assert account.email == "user@example.com"
        assert memory_store.get_account_by_email(" USER@example.COM ").id == account.id

    def test_duplicate_email_rejected(self, memory_store, account):
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_account_with_credential("user@example.com")
        assert exc.value.detail["field"] == "email"

    def test_deleted_account_frees_email(self, memory_store, account):
        memory_store.update_account(account.id, is_deleted=True)

        assert memory_store.get_account_by_email("user@example.com") is None
        other, _ = memory_store.create_account_with_credential("user@example.com")
        assert other.id != account.id

    def test_provider_pair_is_unique(self, memory_store, account):
        memory_store.update_account(account.id, provider="google", provider_account_id="g-1")

        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_account_with_credential(
                "other@example.com", provider="google", provider_account_id="g-1"
            )
        assert exc.value.detail["field"] == "provider"

        other, _ = memory_store.create_account_with_credential("other@example.com")
        with pytest.raises(ConstraintViolation):
            memory_store.update_account(other.id, provider="google", provider_account_id="g-1")

    def test_reads_return_copies(self, memory_store, account):
        copy = memory_store.get_account(account.id)
        copy.role = "admin"

        assert memory_store.get_account(account.id).role == "user"

    def test_unknown_fields_rejected(self, memory_store, account):
        with pytest.raises(ValueError):
            memory_store.update_account(account.id, id="other")
        with pytest.raises(ValueError):
            memory_store.update_credential(account.id, bogus=1)

    def test_update_missing_account(self, memory_store):
        with pytest.raises(KeyError):
            memory_store.update_account("missing", role="admin")

    def test_list_accounts(self, memory_store, account):
        memory_store.create_account_with_credential("second@example.com")

        assert [a.email for a in memory_store.list_accounts()] == [
            "user@example.com",
            "second@example.com",
        ]
        assert len(memory_store.list_accounts(limit=1)) == 1


class TestFailedLogins:
    def test_locks_at_threshold(self, memory_store, account):
        for _ in range(4):
            record = memory_store.record_failed_login(
                account.id, now=NOW, max_attempts=5, lockout=LOCKOUT
            )
            assert record.locked_until is None

        record = memory_store.record_failed_login(
            account.id, now=NOW, max_attempts=5, lockout=LOCKOUT
        )

        assert record.failed_login_attempts == 5
        assert record.locked_until == NOW + LOCKOUT
        assert record.is_locked(NOW)
        assert not record.is_locked(NOW + LOCKOUT)

    def test_elapsed_lock_restarts_counter(self, memory_store, account):
        for _ in range(5):
            memory_store.record_failed_login(account.id, now=NOW, max_attempts=5, lockout=LOCKOUT)

        later = NOW + LOCKOUT + timedelta(seconds=1)
        record = memory_store.record_failed_login(
            account.id, now=later, max_attempts=5, lockout=LOCKOUT
        )

        assert record.failed_login_attempts == 1
        assert record.locked_until is None

    def test_clear_failed_logins(self, memory_store, account):
        memory_store.record_failed_login(account.id, now=NOW, max_attempts=5, lockout=LOCKOUT)

        record = memory_store.clear_failed_logins(account.id, now=NOW)

        assert record.failed_login_attempts == 0
        assert record.last_failed_login_at is None

    def test_clear_refused_while_locked(self, memory_store, account):
        for _ in range(5):
            memory_store.record_failed_login(account.id, now=NOW, max_attempts=5, lockout=LOCKOUT)

        assert memory_store.clear_failed_logins(account.id, now=NOW) is None
        assert memory_store.get_credential(account.id).failed_login_attempts == 5

        cleared = memory_store.clear_failed_logins(account.id, now=NOW + LOCKOUT)
        assert cleared.locked_until is None

    def test_concurrent_failures_never_lost(self, memory_store, account):
        barrier = threading.Barrier(20)

        def fail():
            barrier.wait()
            memory_store.record_failed_login(
                account.id, now=NOW, max_attempts=100, lockout=LOCKOUT
            )

        threads = [threading.Thread(target=fail) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert memory_store.get_credential(account.id).failed_login_attempts == 20


class TestBackupCodes:
    def test_remove_once(self, memory_store, account):
        assert memory_store.remove_backup_code(account.id, "c1") is True
        assert memory_store.remove_backup_code(account.id, "c1") is False
        assert memory_store.get_credential(account.id).backup_codes == ["c2"]

    def test_concurrent_removal_has_one_winner(self, memory_store, account):
        results = []
        barrier = threading.Barrier(10)

        def remove():
            barrier.wait()
            results.append(memory_store.remove_backup_code(account.id, "c2"))

        threads = [threading.Thread(target=remove) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_returned_codes_are_copies(self, memory_store, account):
        record = memory_store.get_credential(account.id)
        record.backup_codes.clear()

        assert memory_store.get_credential(account.id).backup_codes == ["c1", "c2"]


class TestTokensAndEvents:
    def test_lookup_by_token_digest(self, memory_store, account):
        memory_store.update_credential(
            account.id, password_reset_token="r-digest", email_verification_token="v-digest"
        )

        assert memory_store.get_credential_by_reset_token("r-digest").account_id == account.id
        assert memory_store.get_credential_by_verification_token("v-digest").account_id == account.id
        assert memory_store.get_credential_by_reset_token("other") is None

    def test_security_events_filter(self, memory_store, account):
        memory_store.record_security_event(
            SecurityEvent(actor_id=account.id, action="LOGIN", outcome="SUCCESS")
        )
        memory_store.record_security_event(
            SecurityEvent(actor_id="unknown", action="LOGIN", outcome="FAILURE")
        )

        assert len(memory_store.list_security_events(action="LOGIN")) == 2
        assert len(memory_store.list_security_events(actor_id=account.id)) == 1


class TestDefaults:
    def test_seeding_is_idempotent(self, memory_store, account):
        first = memory_store.seed_default_categories(account.id)
        second = memory_store.seed_default_categories(account.id)

        assert len(first) == len(second) == 7
        assert {c.type for c in first} == {"EXPENSE", "INCOME"}

    def test_payment_methods(self, memory_store, account):
        methods = memory_store.seed_default_payment_methods(account.id)
        memory_store.seed_default_payment_methods(account.id)

        assert len(memory_store.payment_methods[account.id]) == len(methods) == 7
        assert {m.name for m in methods} >= {"CASH", "CREDIT_CARD"}
