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
Configuration for the coreason-openid package.

Static defaults are declared on the model; every field can be overridden from
the environment (prefix `COREASON_OPENID_`, nested fields separated by `__`)
before the engine ever sees the object.
"""

import re
from enum import StrEnum
from typing import Annotated, Any
from urllib.parse import parse_qsl

import httpx
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from coreason_openid.exceptions import ConfigurationError
from coreason_openid.transport import build_timeout

BASE_URL_PLACEHOLDER = "${baseURL}"
WELL_KNOWN_PATH = "/.well-known/openid-configuration"

_LIST_SEPARATOR = re.compile(r"[\s,]+")


class PromptType(StrEnum):
    NONE = "none"
    LOGIN = "login"
    CONSENT = "consent"
    SELECT_ACCOUNT = "select_account"


class DisplayType(StrEnum):
    PAGE = "page"
    POPUP = "popup"
    TOUCH = "touch"
    WAP = "wap"


class ClientAuthMethod(StrEnum):
    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"


class ProviderMetadataOverrides(BaseModel):
    """
    Provider metadata values that take precedence over the discovery document.
    Unset fields are taken from discovery.
    """

    model_config = ConfigDict(frozen=True)

    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None
    id_token_signing_alg_values_supported: list[str] | None = None


class ClaimsDefinition(BaseModel):
    """Names of the claims carrying the caller name and the caller groups."""

    model_config = ConfigDict(frozen=True)

    caller_name_claim: str = "preferred_username"
    caller_groups_claim: str = "groups"


class LogoutDefinition(BaseModel):
    """
    Logout and RP session management settings.

    Attributes:
        notify_provider (bool): Redirect to the provider's end-session endpoint on logout.
        redirect_uri (str): Post-logout redirect URI sent to the provider.
        access_token_expiry (bool): End the local session once the access token expires.
        identity_token_expiry (bool): End the local session once the ID token expires.
    """

    model_config = ConfigDict(frozen=True)

    notify_provider: bool = False
    redirect_uri: str = ""
    access_token_expiry: bool = False
    identity_token_expiry: bool = False


def _split_list(v: Any) -> Any:
    if isinstance(v, str):
        return [item for item in _LIST_SEPARATOR.split(v) if item]
    return v


class OpenIdConfig(BaseSettings):
    """
    Relying Party configuration for one OpenID Connect provider.

    Timeouts and validity windows are expressed in milliseconds; a timeout of 0
    means no limit.

    Attributes:
        provider_uri (str): Base URI of the provider, used for discovery.
        client_id (str): The OIDC Client ID.
        client_secret (SecretStr): The OIDC Client secret.
        redirect_uri (str): Callback URI; `${baseURL}` is replaced per request.
        scope (list[str]): Requested scopes, in request order.
        extra_parameters (list[tuple[str, str]]): Extra authorization request parameters, keys may repeat.
        token_min_validity (int): Remaining lifetime (ms) below which tokens are refreshed.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OPENID_",
        env_nested_delimiter="__",
        case_sensitive=False,
        frozen=True,
    )

    provider_uri: str
    provider_metadata: ProviderMetadataOverrides = Field(default_factory=ProviderMetadataOverrides)
    claims_definition: ClaimsDefinition = Field(default_factory=ClaimsDefinition)
    logout: LogoutDefinition = Field(default_factory=LogoutDefinition)

    client_id: str
    client_secret: SecretStr = SecretStr("")
    client_auth_method: ClientAuthMethod = ClientAuthMethod.CLIENT_SECRET_BASIC
    redirect_uri: str = f"{BASE_URL_PLACEHOLDER}/Callback"

    scope: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["openid", "email", "profile"])
    response_type: str = "code"
    response_mode: str = ""
    prompt: Annotated[list[PromptType], NoDecode] = Field(default_factory=list)
    display: DisplayType = DisplayType.PAGE
    use_nonce: bool = True
    use_session: bool = True
    extra_parameters: Annotated[list[tuple[str, str]], NoDecode] = Field(default_factory=list)
    extra_params_raw: str = ""

    jwks_connect_timeout: int = Field(default=500, ge=0)
    jwks_read_timeout: int = Field(default=500, ge=0)
    http_connect_timeout: int = Field(default=5000, ge=0)
    http_read_timeout: int = Field(default=5000, ge=0)

    token_auto_refresh: bool = False
    token_min_validity: int = Field(default=10_000, ge=0)
    user_claims_from_id_token: bool = False
    disable_scope_validation: bool = False

    allowed_algorithms: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["RS256"])
    clock_skew_leeway: int = Field(default=0, ge=0, description="Acceptable clock skew in seconds.")
    state_ttl: int = Field(default=600, gt=0, description="Lifetime of a pending login attempt in seconds.")
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    unsafe_local_dev: bool = False

    @field_validator("scope", "allowed_algorithms", mode="before")
    @classmethod
    def split_string_list(cls, v: Any) -> Any:
        """Accepts comma or space separated strings (as found in env vars)."""
        return _split_list(v)

    @field_validator("prompt", mode="before")
    @classmethod
    def split_prompt(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("prompt", mode="after")
    @classmethod
    def validate_prompt(cls, v: list[PromptType]) -> list[PromptType]:
        """
        The `none` prompt cannot be combined with any other prompt value.
        """
        if PromptType.NONE in v and len(v) > 1:
            raise ValueError("Prompt 'none' must not be combined with other prompt values.")
        return v

    @field_validator("extra_parameters", mode="before")
    @classmethod
    def parse_extra_parameters(cls, v: Any) -> Any:
        """
        Normalizes extra parameters given as `"key=value"` strings into pairs.

        Raises:
            ValueError: If an entry has no `=` separator or an empty key.
        """
        if isinstance(v, str):
            v = [v] if v else []
        if not isinstance(v, (list, tuple)):
            return v

        pairs: list[Any] = []
        for item in v:
            if isinstance(item, str):
                key, sep, value = item.partition("=")
                if not sep or not key.strip():
                    raise ValueError(f"Extra parameter '{item}' must be in the form key=value")
                pairs.append((key.strip(), value))
            else:
                pairs.append(item)
        return pairs

    @model_validator(mode="after")
    def validate_https(self) -> "OpenIdConfig":
        """
        Ensures that the provider uses HTTPS, unless strictly opted out for local dev.
        """
        if self.provider_uri.startswith("http://") and not self.unsafe_local_dev:
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return self

    @property
    def discovery_url(self) -> str:
        """The provider's OIDC discovery document URL."""
        base = self.provider_uri.rstrip("/")
        if base.endswith(WELL_KNOWN_PATH):
            return base
        return f"{base}{WELL_KNOWN_PATH}"

    @property
    def resolved_extra_parameters(self) -> list[tuple[str, str]]:
        """Extra parameters followed by those parsed from `extra_params_raw`, duplicates preserved."""
        raw = parse_qsl(self.extra_params_raw, keep_blank_values=True) if self.extra_params_raw else []
        return [*self.extra_parameters, *raw]

    @property
    def jwks_timeout(self) -> httpx.Timeout:
        return build_timeout(self.jwks_connect_timeout, self.jwks_read_timeout)

    @property
    def http_timeout(self) -> httpx.Timeout:
        return build_timeout(self.http_connect_timeout, self.http_read_timeout)

    def resolve_redirect_uri(self, base_url: str | None = None) -> str:
        """
        Substitutes `${baseURL}` in the configured redirect URI.

        Args:
            base_url: The application's base URL for the current request.

        Raises:
            ConfigurationError: If the redirect URI needs a base URL and none is given.
        """
        if BASE_URL_PLACEHOLDER not in self.redirect_uri:
            return self.redirect_uri
        if not base_url:
            raise ConfigurationError(f"redirect_uri '{self.redirect_uri}' requires a base URL")
        return self.redirect_uri.replace(BASE_URL_PLACEHOLDER, base_url.rstrip("/"))
