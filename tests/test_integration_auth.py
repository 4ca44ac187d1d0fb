"""Integration tests for authentication flow.

Tests the complete flow through the wired runtime:
- Registration and email verification
- Password login
- MFA enrollment and challenge login
- Federated sign-in and unlinking
- Security event trail
"""

import pytest

from authcore.service.audit import AuditAction
from authcore.service.errors import InvalidCredentialsError, InvalidMfaCodeError
from authcore.service.runtime import get_runtime


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _totp_now(runtime, secret):
    return runtime.mfa._generate_totp(secret, runtime.mfa._now().timestamp())


class TestPasswordAndMfaFlow:
    async def test_register_login_enroll_and_challenge(
        self, runtime, test_user_email, test_user_password
    ):
        registered = await runtime.auth.register(
            test_user_email, test_user_password, "Test", "User"
        )
        account_id = registered["user"]["id"]
        assert registered["user"]["first_name"] == "Test"

        ctx = await runtime.auth.authenticate(registered["access_token"])
        assert ctx.account_id == account_id

        setup = await runtime.auth.generate_mfa_secret(account_id)
        enabled = await runtime.auth.enable_mfa(account_id, _totp_now(runtime, setup["secret"]))
        assert len(enabled["backup_codes"]) == 10

        login = await runtime.auth.login(test_user_email, test_user_password)
        assert login["require_mfa"] is True
        assert "access_token" not in login

        with pytest.raises(InvalidMfaCodeError):
            await runtime.auth.complete_login_with_mfa(login["challenge_token"], "000000")

        session = await runtime.auth.complete_login_with_mfa(
            login["challenge_token"], enabled["backup_codes"][0]
        )
        assert (await runtime.auth.authenticate(session["access_token"])).account_id == account_id

        actions = {
            e.action for e in runtime.store.list_security_events(actor_id=account_id)
        }
        assert {
            AuditAction.REGISTER,
            AuditAction.MFA_SETUP,
            AuditAction.MFA_ENABLE,
            AuditAction.LOGIN_MFA_REQUIRED,
            AuditAction.LOGIN_MFA_COMPLETE,
        } <= actions

    async def test_wrong_password_never_reveals_account(self, runtime, test_user_password):
        with pytest.raises(InvalidCredentialsError):
            await runtime.auth.login("ghost@example.com", test_user_password)

        events = runtime.store.list_security_events(actor_id="unknown")
        assert events[-1].details["reason"] == "user_not_found"


class TestFederatedFlow:
    async def test_federated_sign_in_then_link_password(self, runtime):
        result = await runtime.identity.federated_login(
            "fed@example.com", "Grace Hopper", "github", "gh-1"
        )
        account_id = result["user"]["id"]
        assert result["user"]["email_verified"] is True

        stored = runtime.store.get_account(account_id)
        assert runtime.codec.is_encrypted(stored.first_name)

        # second sign-in resolves to the same account
        again = await runtime.identity.federated_login("fed@example.com", None, "github", "gh-1")
        assert again["user"]["id"] == account_id

    async def test_email_login_and_provider_share_account(
        self, runtime, test_user_email, test_user_password
    ):
        registered = await runtime.auth.register(test_user_email, test_user_password)

        account = await runtime.identity.resolve_federated_identity(
            test_user_email, None, "google", "g-77"
        )
        assert account.id == registered["user"]["id"]

        result = await runtime.identity.unlink_provider(account.id, "google")
        assert "unlinked" in result["message"]
        assert runtime.store.get_account(account.id).provider is None
