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
Claims Mapper component for deriving the caller identity from IdP claims.
"""

import re
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from coreason_openid.config import OpenIdConfig
from coreason_openid.exceptions import (
    InvalidTokenError,
    MissingCallerClaimError,
    OversizedResponseError,
    SecurityError,
    UserinfoError,
)
from coreason_openid.models import Identity
from coreason_openid.transport import safe_json_fetch
from coreason_openid.utils.logger import logger

UserinfoFetcher = Callable[[], Awaitable[dict[str, Any]]]

_GROUP_SEPARATOR = re.compile(r"[\s,]+")


def normalize_groups(value: Any) -> list[str]:
    """Ensures the groups claim is a list of strings, filtering out None values."""
    if value is None:
        return []
    if isinstance(value, str):
        return [group for group in _GROUP_SEPARATOR.split(value) if group]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []


class UserinfoClient:
    """
    Queries the userinfo endpoint with a bearer access token.
    """

    def __init__(self, client: httpx.AsyncClient, timeout: httpx.Timeout | None = None) -> None:
        self.client = client
        self.timeout = timeout

    async def fetch(self, userinfo_endpoint: str, access_token: str) -> dict[str, Any]:
        """
        Returns the userinfo claims.

        Raises:
            UserinfoError: If the request fails or the response is not a JSON object.
        """
        try:
            data = await safe_json_fetch(
                self.client,
                userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UserinfoError("Userinfo endpoint timed out", retryable=True) from e
        except (httpx.HTTPError, OversizedResponseError, SecurityError, ValueError) as e:
            raise UserinfoError(f"Failed to fetch userinfo: {e}") from e

        if not isinstance(data, dict):
            raise UserinfoError("Invalid userinfo response: not a JSON object")
        return data


class ClaimsMapper:
    """
    Maps validated ID Token claims, optionally enriched with userinfo, to an Identity.

    Attributes:
        config (OpenIdConfig): Provides the claim names and the claim source.
    """

    def __init__(self, config: OpenIdConfig) -> None:
        self.config = config

    async def map_identity(
        self, claims: dict[str, Any], userinfo_fetcher: UserinfoFetcher | None = None
    ) -> Identity:
        """
        Derives the caller identity.

        When claims are not taken from the ID Token alone, userinfo claims are
        merged over the ID Token claims (userinfo wins on conflict).

        Args:
            claims: The validated ID Token claims.
            userinfo_fetcher: Fetches userinfo claims; None if the provider has no userinfo endpoint.

        Returns:
            Identity: The caller identity.

        Raises:
            MissingCallerClaimError: If the caller name claim is missing.
            InvalidTokenError: If userinfo describes a different subject.
            UserinfoError: If userinfo cannot be fetched.
        """
        merged = dict(claims)
        if not self.config.user_claims_from_id_token:
            if userinfo_fetcher is None:
                logger.debug("Provider has no userinfo endpoint, using ID Token claims only")
            else:
                userinfo = await userinfo_fetcher()
                # OIDC Core 5.3.2: userinfo sub must match the ID Token sub
                if userinfo.get("sub") != claims.get("sub"):
                    raise InvalidTokenError("Userinfo subject does not match the ID Token subject")
                merged.update(userinfo)

        definition = self.config.claims_definition
        caller_name = merged.get(definition.caller_name_claim)
        if not isinstance(caller_name, str) or not caller_name.strip():
            raise MissingCallerClaimError(f"Caller name claim '{definition.caller_name_claim}' is missing")

        identity = Identity(
            subject=str(merged["sub"]),
            caller_name=caller_name,
            groups=normalize_groups(merged.get(definition.caller_groups_claim)),
            claims=merged,
        )
        logger.debug(f"Mapped identity with {len(identity.groups)} groups")
        return identity
