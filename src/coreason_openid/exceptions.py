# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid

"""
Custom exceptions for the coreason-openid package.

Every exception carries an `ErrorKind` tag so that a failed authentication
attempt can be reported to the caller as a denied outcome with a stable,
machine-readable reason.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    STATE_MISMATCH = "StateMismatch"
    NONCE_MISMATCH = "NonceMismatch"
    PROVIDER_ERROR = "ProviderError"
    TOKEN_EXCHANGE_ERROR = "TokenExchangeError"
    SIGNATURE_INVALID = "SignatureInvalid"
    ISSUER_MISMATCH = "IssuerMismatch"
    AUDIENCE_MISMATCH = "AudienceMismatch"
    EXPIRED = "Expired"
    NOT_YET_VALID = "NotYetValid"
    JWKS_UNAVAILABLE = "JwksUnavailable"
    REFRESH_FAILED = "RefreshFailed"
    MISSING_CALLER_CLAIM = "MissingCallerClaim"
    INVALID_TOKEN = "InvalidToken"
    DISCOVERY_ERROR = "DiscoveryError"
    CONFIGURATION_ERROR = "ConfigurationError"
    INTERNAL_ERROR = "InternalError"


class CoreasonOpenIdError(Exception):
    """Base exception for all coreason-openid errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class StateMismatchError(CoreasonOpenIdError):
    """Raised when the callback state does not match the pending authentication state."""

    kind = ErrorKind.STATE_MISMATCH


class ProviderError(CoreasonOpenIdError):
    """Raised when the IdP redirects back with an `error` parameter instead of a code."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, error: str, description: str | None = None) -> None:
        message = f"Identity Provider returned error '{error}'"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)
        self.error = error
        self.description = description


class TokenExchangeError(CoreasonOpenIdError):
    """Raised when the token endpoint rejects the request or returns a malformed response."""

    kind = ErrorKind.TOKEN_EXCHANGE_ERROR


class RefreshFailedError(CoreasonOpenIdError):
    """Raised when tokens need refreshing but the refresh grant is impossible or fails."""

    kind = ErrorKind.REFRESH_FAILED


class JwksUnavailableError(CoreasonOpenIdError):
    """Raised when the JWKS cannot be fetched or parsed."""

    kind = ErrorKind.JWKS_UNAVAILABLE

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class DiscoveryError(CoreasonOpenIdError):
    """Raised when the provider metadata cannot be fetched or is invalid."""

    kind = ErrorKind.DISCOVERY_ERROR


class MissingCallerClaimError(CoreasonOpenIdError):
    """Raised when the configured caller name claim is absent."""

    kind = ErrorKind.MISSING_CALLER_CLAIM


class InvalidTokenError(CoreasonOpenIdError):
    """
    Raised when a token is invalid (bad signature, wrong issuer, expired, etc.).
    All ID Token validation failures derive from this class.
    """

    kind = ErrorKind.INVALID_TOKEN


class SignatureInvalidError(InvalidTokenError):
    """Raised when the token's signature cannot be verified."""

    kind = ErrorKind.SIGNATURE_INVALID


class UnknownKeyError(SignatureInvalidError):
    """Raised when no key in the JWKS matches the token's key id and algorithm."""


class IssuerMismatchError(InvalidTokenError):
    """Raised when the token's issuer does not match the provider's issuer."""

    kind = ErrorKind.ISSUER_MISMATCH


class AudienceMismatchError(InvalidTokenError):
    """Raised when the token's audience does not contain the client id."""

    kind = ErrorKind.AUDIENCE_MISMATCH


class TokenExpiredError(InvalidTokenError):
    """Raised when the provided token has expired."""

    kind = ErrorKind.EXPIRED


class TokenNotYetValidError(InvalidTokenError):
    """Raised when the token's `nbf` claim lies in the future."""

    kind = ErrorKind.NOT_YET_VALID


class NonceMismatchError(InvalidTokenError):
    """Raised when the ID Token's nonce does not match the stored nonce."""

    kind = ErrorKind.NONCE_MISMATCH


class InvalidScopeError(InvalidTokenError):
    """Raised when the granted scope does not include `openid`."""


class UserinfoError(CoreasonOpenIdError):
    """Raised when the userinfo endpoint cannot be queried or answers with invalid data."""

    kind = ErrorKind.PROVIDER_ERROR


class OversizedResponseError(CoreasonOpenIdError):
    """Raised when an HTTP response is too large."""


class SecurityError(CoreasonOpenIdError):
    """Raised when a security violation is detected."""


class IllegalTransitionError(CoreasonOpenIdError):
    """Raised when an authentication flow is moved into a state it cannot reach."""


class ConfigurationError(CoreasonOpenIdError, ValueError):
    """Raised when the request context cannot satisfy the configuration (no base URL, no cookie store)."""

    kind = ErrorKind.CONFIGURATION_ERROR
