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
Token Refresher component: keeps Access/Refresh tokens usable for the session.
"""

from typing import Any

from coreason_openid.config import OpenIdConfig
from coreason_openid.discovery import ProviderMetadataResolver
from coreason_openid.exceptions import CoreasonOpenIdError, RefreshFailedError
from coreason_openid.models import TokenResponse, TokenSet
from coreason_openid.singleflight import SingleFlight
from coreason_openid.store import SessionContext, TokenStore
from coreason_openid.token_endpoint import TokenEndpointClient
from coreason_openid.utils.clock import Clock, SystemClock
from coreason_openid.utils.logger import logger
from coreason_openid.validator import IdTokenValidator


def token_set_from_response(
    response: TokenResponse,
    id_token: str | None,
    id_token_claims: dict[str, Any],
    now: float,
    previous: TokenSet | None = None,
) -> TokenSet:
    """
    Builds a TokenSet from a token endpoint response and validated ID Token claims.

    The access token expiry comes from `expires_in`, else from the ID Token `exp`.
    Values the IdP omits on refresh (refresh token, scope) are kept from `previous`.
    """
    if response.expires_in is not None:
        expires_at: float | None = now + response.expires_in
    else:
        exp = id_token_claims.get("exp")
        expires_at = float(exp) if isinstance(exp, (int, float)) else None

    if response.scope is not None:
        scope = response.scope.split()
    else:
        scope = previous.scope if previous else []

    return TokenSet(
        access_token=response.access_token,
        token_type=response.token_type,
        id_token=id_token,
        id_token_claims=id_token_claims,
        refresh_token=response.refresh_token or (previous.refresh_token if previous else None),
        expires_at=expires_at,
        scope=scope,
    )


class TokenRefresher:
    """
    Decides when a session's tokens must be refreshed and performs the refresh grant.

    Refreshes are serialized per session: concurrent callers for the same
    session share a single refresh request.
    """

    def __init__(
        self,
        config: OpenIdConfig,
        token_client: TokenEndpointClient,
        validator: IdTokenValidator,
        metadata_resolver: ProviderMetadataResolver,
        token_store: TokenStore,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.token_client = token_client
        self.validator = validator
        self.metadata_resolver = metadata_resolver
        self.token_store = token_store
        self.clock = clock or SystemClock()
        self._flights: SingleFlight[TokenSet] = SingleFlight()

    def needs_refresh(self, tokens: TokenSet) -> bool:
        """True when the remaining validity is at or below `token_min_validity`."""
        remaining = tokens.remaining(self.clock.now())
        if remaining is None:
            return False
        return remaining * 1000 <= self.config.token_min_validity

    async def ensure_valid(self, context: SessionContext, tokens: TokenSet) -> TokenSet:
        """
        Returns tokens that are safe to use, refreshing them if needed.

        With auto refresh disabled the tokens are returned unchanged, even if
        expired; the caller handles expiry.

        Args:
            context: The caller's session.
            tokens: The session's current tokens.

        Returns:
            TokenSet: The current or the refreshed tokens.

        Raises:
            RefreshFailedError: If a refresh is needed but impossible or unsuccessful.
        """
        if not self.config.token_auto_refresh:
            return tokens
        if not self.needs_refresh(tokens):
            return tokens
        return await self._flights.do(context.session_id, lambda: self._refresh(context, tokens))

    async def _refresh(self, context: SessionContext, tokens: TokenSet) -> TokenSet:
        # Another request of this session may have refreshed already
        stored = self.token_store.load(context)
        if stored is not None and stored != tokens and not self.needs_refresh(stored):
            return stored

        if not tokens.refresh_token:
            logger.info("Tokens need refreshing but no refresh token is available")
            raise RefreshFailedError("Token set has no refresh token")

        try:
            refreshed = await self._redeem(tokens)
        except RefreshFailedError:
            raise
        except CoreasonOpenIdError as e:
            raise RefreshFailedError(f"Token refresh failed: {e}", retryable=e.retryable) from e

        self.token_store.save(context, refreshed)
        logger.info("Tokens refreshed")
        return refreshed

    async def _redeem(self, tokens: TokenSet) -> TokenSet:
        metadata = await self.metadata_resolver.get()
        response = await self.token_client.refresh(metadata.token_endpoint, tokens.refresh_token or "")

        id_token = tokens.id_token
        claims = tokens.id_token_claims
        if response.id_token:
            claims = await self.validator.validate(
                response.id_token, metadata, self.config, access_token=response.access_token
            )
            # OIDC Core 12.2: a refreshed ID Token must describe the same subject
            if tokens.id_token_claims and claims.get("sub") != tokens.id_token_claims.get("sub"):
                raise RefreshFailedError("Refreshed ID Token has a different subject")
            id_token = response.id_token

        return token_set_from_response(response, id_token, claims, self.clock.now(), previous=tokens)
