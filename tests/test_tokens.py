"""Unit tests for session and MFA challenge tokens."""

import base64
import json

import pytest

from authcore.service.errors import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
)
from authcore.service.tokens import (
    ACCESS_TOKEN_TYPE,
    CHALLENGE_TOKEN_TYPE,
    CHALLENGE_TTL_SECONDS,
    TokenIssuer,
)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestSessionTokens:
    def test_default_session_lasts_one_day(self, tokens):
        session = tokens.issue_session("acc-1", "a@example.com", "user")

        assert session["token_type"] == "bearer"
        assert session["expires_in"] == 24 * 60 * 60
        claims = tokens.verify(session["access_token"])
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60
        assert claims["token_type"] == ACCESS_TOKEN_TYPE
        assert "mfa_challenge" not in claims

    def test_remember_me_extends_to_thirty_days(self, tokens):
        session = tokens.issue_session("acc-1", "a@example.com", "user", remember_me=True)

        assert session["expires_in"] == 30 * 24 * 60 * 60
        claims = tokens.verify(session["access_token"])
        assert claims["exp"] - claims["iat"] == 30 * 24 * 60 * 60

    def test_claims_carry_identity(self, tokens):
        claims = tokens.verify(
            tokens.issue_session("acc-1", "a@example.com", "admin")["access_token"]
        )

        assert claims["sub"] == "acc-1"
        assert claims["email"] == "a@example.com"
        assert claims["role"] == "admin"
        assert claims["jti"]

    def test_session_expires(self, tokens, clock):
        token = tokens.issue_session("acc-1", "a@example.com", "user")["access_token"]
        clock.advance(days=1, seconds=1)

        with pytest.raises(TokenExpiredError):
            tokens.verify(token)


class TestChallengeTokens:
    def test_challenge_is_marked_and_short_lived(self, tokens):
        claims = tokens.verify(tokens.issue_challenge("acc-1", "a@example.com"))

        assert claims["mfa_challenge"] is True
        assert claims["token_type"] == CHALLENGE_TOKEN_TYPE
        assert claims["exp"] - claims["iat"] == CHALLENGE_TTL_SECONDS == 300

    def test_challenge_remembers_remember_me(self, tokens):
        claims = tokens.verify(
            tokens.issue_challenge("acc-1", "a@example.com", remember_me=True)
        )

        assert claims["remember_me"] is True

    def test_challenge_valid_until_five_minutes(self, tokens, clock):
        token = tokens.issue_challenge("acc-1", "a@example.com")
        clock.advance(minutes=4, seconds=59)
        assert tokens.verify(token)["sub"] == "acc-1"

        clock.advance(seconds=2)
        with pytest.raises(TokenExpiredError):
            tokens.verify(token)


class TestVerification:
    def test_tampered_signature_is_invalid(self, tokens):
        token = tokens.issue_session("acc-1", "a@example.com", "user")["access_token"]
        header, payload, sig = token.split(".")
        forged = _segment({**tokens.verify(token), "role": "admin"})

        with pytest.raises(TokenInvalidError):
            tokens.verify(f"{header}.{forged}.{sig}")

    def test_other_secret_is_invalid(self, tokens, clock):
        other = TokenIssuer(
            "different-secret",
            issuer=tokens.issuer,
            audience=tokens.audience,
            now=clock,
        )
        token = other.issue_session("acc-1", "a@example.com", "user")["access_token"]

        with pytest.raises(TokenInvalidError):
            tokens.verify(token)

    def test_none_algorithm_is_rejected(self, tokens):
        token = tokens.issue_session("acc-1", "a@example.com", "user")["access_token"]
        _, payload, _ = token.split(".")
        unsigned = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(TokenInvalidError):
            tokens.verify(unsigned)

    def test_wrong_audience_is_invalid(self, tokens, clock):
        other = TokenIssuer(
            "Test-Secret-Key_for-Automation-Only-987654321!",
            issuer=tokens.issuer,
            audience="someone-else",
            now=clock,
        )
        token = other.issue_session("acc-1", "a@example.com", "user")["access_token"]

        with pytest.raises(TokenInvalidError):
            tokens.verify(token)

    def test_forged_expired_token_reports_invalid(self, tokens, clock):
        """Expiry is only reported for tokens that pass every other check."""
        token = tokens.issue_session("acc-1", "a@example.com", "user")["access_token"]
        header, payload, _ = token.split(".")
        clock.advance(days=2)

        with pytest.raises(TokenInvalidError):
            tokens.verify(f"{header}.{payload}.AAAA")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed_tokens_are_invalid(self, tokens, garbage):
        with pytest.raises(TokenInvalidError):
            tokens.verify(garbage)

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            TokenIssuer("", issuer="i", audience="a")
