from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
)

logger = get_logger(__name__)

CHALLENGE_TTL_SECONDS = 5 * 60
ACCESS_TOKEN_TYPE = "access"
CHALLENGE_TOKEN_TYPE = "mfa_challenge"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Signs and verifies HS256 session and MFA challenge tokens.

    Verification is pure computation: no store access. Signature, algorithm,
    issuer and audience are checked before expiry so an expired-but-forged
    token is reported as invalid, never as expired.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        session_ttl_minutes: int = 24 * 60,
        extended_session_ttl_minutes: int = 30 * 24 * 60,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ConfigurationError("JWT_SECRET is not configured")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.session_ttl_minutes = session_ttl_minutes
        self.extended_session_ttl_minutes = extended_session_ttl_minutes
        self._now = now

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(self, subject: str, ttl_seconds: int) -> dict[str, Any]:
        issued = int(self._now().timestamp())
        return {
            "sub": subject,
            "iat": issued,
            "exp": issued + ttl_seconds,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
        }

    def issue_session(
        self, account_id: str, email: str, role: str, remember_me: bool = False
    ) -> dict[str, Any]:
        ttl_minutes = (
            self.extended_session_ttl_minutes if remember_me else self.session_ttl_minutes
        )
        claims = self._base_claims(account_id, ttl_minutes * 60)
        claims.update({"email": email, "role": role, "token_type": ACCESS_TOKEN_TYPE})
        return {
            "access_token": self._encode_jwt(claims),
            "token_type": "bearer",
            "expires_in": ttl_minutes * 60,
            "expires_at": datetime.fromtimestamp(claims["exp"], tz=timezone.utc).isoformat(),
        }

    def issue_challenge(
        self, account_id: str, email: str, remember_me: bool = False
    ) -> str:
        claims = self._base_claims(account_id, CHALLENGE_TTL_SECONDS)
        claims.update(
            {
                "email": email,
                "mfa_challenge": True,
                "remember_me": bool(remember_me),
                "token_type": CHALLENGE_TOKEN_TYPE,
            }
        )
        return self._encode_jwt(claims)

    def verify(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or not payload.get("sub"):
            raise TokenInvalidError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()
        if exp_ts <= self._now().timestamp():
            raise TokenExpiredError()
        return payload
