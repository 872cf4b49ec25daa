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
Data models for the coreason-openid package.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from coreason_openid.exceptions import CoreasonOpenIdError, ErrorKind


class AuthenticationStatus(StrEnum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    REDIRECTING = "REDIRECTING"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    EXCHANGING_CODE = "EXCHANGING_CODE"
    VALIDATING = "VALIDATING"
    ESTABLISHED = "ESTABLISHED"
    FAILED = "FAILED"


class ProviderMetadata(BaseModel):
    """
    OIDC provider metadata from .well-known/openid-configuration, after overrides.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    authorization_endpoint: str = Field(..., description="The authorization endpoint URL.")
    token_endpoint: str = Field(..., description="The token endpoint URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")
    userinfo_endpoint: str | None = Field(default=None, description="The userinfo endpoint URL.")
    end_session_endpoint: str | None = Field(default=None, description="The RP-initiated logout endpoint URL.")
    id_token_signing_alg_values_supported: list[str] = Field(default_factory=lambda: ["RS256"])
    scopes_supported: list[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: list[str] = Field(default_factory=lambda: ["client_secret_basic"])


class TokenResponse(BaseModel):
    """
    Successful response of the token endpoint (authorization_code or refresh_token grant).

    Attributes:
        access_token (str): The access token issued by the authorization server.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The ID token, if issued.
        scope (str | None): The granted scope, if it differs from the requested one.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None


class TokenSet(BaseModel):
    """
    Tokens held by an authenticated session.

    Only built from a validated ID Token; the raw tokens are kept out of `repr`.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(..., repr=False)
    token_type: str = "Bearer"
    id_token: str | None = Field(default=None, repr=False)
    id_token_claims: dict[str, Any] = Field(default_factory=dict, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: float | None = Field(default=None, description="Access token expiry, epoch seconds.")
    scope: list[str] = Field(default_factory=list)

    def remaining(self, now: float) -> float | None:
        """Seconds until the access token expires, or None if the expiry is unknown."""
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def is_access_token_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_id_token_expired(self, now: float) -> bool:
        exp = self.id_token_claims.get("exp")
        return isinstance(exp, (int, float)) and now >= exp


class Identity(BaseModel):
    """
    The caller identity derived from ID Token and userinfo claims.

    This model is frozen (immutable) to ensure integrity as it passes through the system.
    """

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., description="The immutable subject ID ('sub').")
    caller_name: str = Field(..., description="The caller principal name.")
    groups: list[str] = Field(default_factory=list, description="Caller groups.")
    claims: dict[str, Any] = Field(default_factory=dict, description="All merged claims.")

    def __repr__(self) -> str:
        # PII fields MUST be redacted in __repr__
        return f"Identity(subject='<REDACTED>', caller_name='<REDACTED>', groups={self.groups!r})"

    def __str__(self) -> str:
        return self.__repr__()


class AuthenticationState(BaseModel):
    """
    A pending login attempt, stored between the redirect and the callback.

    Attributes:
        state (str): The random state value round-tripped through the IdP.
        nonce (str | None): The random nonce bound into the ID Token, if nonces are used.
        requested_resource (str | None): Where to send the caller once authenticated.
        created_at (float): Creation time, epoch seconds.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str | None = None
    requested_resource: str | None = None
    created_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at > ttl


class RedirectInstruction(BaseModel):
    """An instruction for the web layer to redirect the browser."""

    model_config = ConfigDict(frozen=True)

    location: str


class AuthenticationResult(BaseModel):
    """
    Outcome of an authentication step.

    A failed step always carries an `error_kind` and never an identity.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: AuthenticationStatus
    identity: Identity | None = None
    redirect: RedirectInstruction | None = None
    error_kind: ErrorKind | None = None
    error: CoreasonOpenIdError | None = Field(default=None, exclude=True)

    @property
    def authenticated(self) -> bool:
        return self.status is AuthenticationStatus.ESTABLISHED and self.identity is not None

    @classmethod
    def failed(cls, error: CoreasonOpenIdError) -> "AuthenticationResult":
        return cls(status=AuthenticationStatus.FAILED, error_kind=error.kind, error=error)
