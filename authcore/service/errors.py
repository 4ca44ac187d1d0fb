from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Root of every error the credential services raise on purpose.

    ``status_code`` is the HTTP-style class of failure and ``error_code`` a
    stable machine-readable name, so a transport can map errors without
    parsing messages. ``detail`` carries structured, caller-safe context such
    as ``locked_until``. Messages never contain stored secrets or hashes.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or unacceptable input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Caller could not be authenticated (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed right now (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No such account or record (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Request collides with existing state (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Failure on our side or in a dependency (500)."""
    status_code = 500
    error_code = "server_error"


# Login


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    """Too many failed logins; the account is locked until ``locked_until``."""
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account temporarily locked. Please try again later.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidChallengeError(AuthenticationError):
    error_code = "invalid_challenge"

    def __init__(self, message: str = "Invalid MFA challenge", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeExpiredError(AuthenticationError):
    error_code = "challenge_expired"

    def __init__(
        self, message: str = "MFA challenge expired, please log in again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# Tokens


class TokenInvalidError(AuthenticationError):
    """Malformed token, bad signature, or wrong issuer/audience/algorithm."""
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but its ``exp`` claim has passed."""
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(ValidationError):
    """Unknown or expired password-reset / email-verification token."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


# MFA


class InvalidMfaCodeError(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaSetupNotInitiatedError(ValidationError):
    error_code = "mfa_setup_not_initiated"

    def __init__(self, message: str = "MFA setup not initiated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConfirmationRequiredError(ValidationError):
    error_code = "confirmation_required"

    def __init__(
        self, message: str = "Explicit confirmation is required", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# Federated identity


class InvalidProviderError(ValidationError):
    error_code = "invalid_provider"

    def __init__(self, message: str = "Invalid identity provider", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProviderAlreadyLinkedError(ConflictError):
    error_code = "provider_already_linked"

    def __init__(
        self,
        message: str = "This provider account is already linked to another user",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLinkRequiredError(ConflictError):
    """Email matches an account bound to another provider and relinking is off."""
    error_code = "account_link_required"

    def __init__(
        self,
        message: str = "Sign in with your existing method and link this provider from account settings",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class ProviderTokenInvalidError(ValidationError):
    error_code = "provider_token_invalid"

    def __init__(
        self, message: str = "Invalid or expired provider token", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NoFallbackCredentialError(ValidationError):
    error_code = "no_fallback_credential"

    def __init__(
        self,
        message: str = "Set a password before unlinking your sign-in provider",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


# Storage / lifecycle


class AlreadyExistsError(ConflictError):
    error_code = "already_exists"


class DecryptionFailedError(ServerError):
    """Ciphertext is malformed, tampered with, or was sealed under another key."""
    error_code = "decryption_failed"

    def __init__(self, message: str = "Failed to decrypt value", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConfigurationError(ServerError):
    """A required secret or setting is missing; fatal at startup."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidChallengeError",
    "ChallengeExpiredError",
    "TokenInvalidError",
    "TokenExpiredError",
    "InvalidTokenError",
    "InvalidMfaCodeError",
    "MfaSetupNotInitiatedError",
    "ConfirmationRequiredError",
    "InvalidProviderError",
    "ProviderAlreadyLinkedError",
    "AccountLinkRequiredError",
    "ProviderTokenInvalidError",
    "NoFallbackCredentialError",
    "AlreadyExistsError",
    "DecryptionFailedError",
    "ConfigurationError",
]
