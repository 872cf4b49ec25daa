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
OpenIdAuthenticator component for orchestrating the Authorization Code flow.
"""

import hmac
from collections.abc import Callable, Mapping
from typing import Any

import httpx
from authlib.common.urls import add_params_to_uri
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_openid.async_context import clear_current_identity, set_current_identity
from coreason_openid.claims_mapper import ClaimsMapper, UserinfoClient, UserinfoFetcher
from coreason_openid.config import BASE_URL_PLACEHOLDER, OpenIdConfig
from coreason_openid.discovery import ProviderMetadataResolver
from coreason_openid.exceptions import (
    CoreasonOpenIdError,
    InvalidTokenError,
    NonceMismatchError,
    ProviderError,
    RefreshFailedError,
    StateMismatchError,
    TokenExchangeError,
)
from coreason_openid.jwks import JwksCache
from coreason_openid.models import (
    AuthenticationResult,
    AuthenticationState,
    AuthenticationStatus,
    Identity,
    RedirectInstruction,
    TokenSet,
)
from coreason_openid.refresher import TokenRefresher, token_set_from_response
from coreason_openid.state import AuthenticationFlow, PendingStateStore, build_authorization_url, generate_token
from coreason_openid.store import SessionContext, TokenStore
from coreason_openid.token_endpoint import TokenEndpointClient
from coreason_openid.transport import SafeHTTPTransport
from coreason_openid.utils.clock import Clock, SystemClock
from coreason_openid.utils.logger import logger
from coreason_openid.validator import IdTokenValidator, validate_scope


class OpenIdAuthenticator:
    """
    The Relying Party engine (The Core).

    Drives redirect, callback, code exchange and validation, then serves
    subsequent requests from the session's stored tokens, refreshing them when
    configured. Handles resources via async context manager.
    """

    def __init__(
        self,
        config: OpenIdConfig,
        client: httpx.AsyncClient | None = None,
        *,
        jwks_cache: JwksCache | None = None,
        token_store: TokenStore | None = None,
        clock: Clock | None = None,
        token_generator: Callable[[], str] | None = None,
    ) -> None:
        """
        Initialize the OpenIdAuthenticator.

        Args:
            config: The configuration object.
            client: External async client (optional). If not provided, a `SafeHTTPTransport` client is created.
            jwks_cache: A JWKS cache shared with other authenticators of the same provider (optional).
            token_store: Where session tokens are persisted. Defaults to `TokenStore`.
            clock: Time source. Defaults to the system clock.
            token_generator: Secure random source for state and nonce values.
        """
        self.config = config
        self._internal_client = client is None

        if client:
            self._client = client
        else:
            # Local IdPs live on private addresses the SSRF transport would block
            transport = httpx.AsyncHTTPTransport() if config.unsafe_local_dev else SafeHTTPTransport()
            self._client = httpx.AsyncClient(transport=transport, timeout=config.http_timeout)
            HTTPXClientInstrumentor().instrument_client(self._client)

        self.clock = clock or SystemClock()
        self._generate_token = token_generator or generate_token

        self.metadata_resolver = ProviderMetadataResolver(
            config.discovery_url, self._client, overrides=config.provider_metadata, timeout=config.http_timeout
        )
        self.jwks_cache = jwks_cache or JwksCache(self._client, timeout=config.jwks_timeout, clock=self.clock)
        self.validator = IdTokenValidator(self.jwks_cache, clock=self.clock)
        self.token_client = TokenEndpointClient(self._client, config)
        self.token_store = token_store or TokenStore()
        self.pending_states = PendingStateStore()
        self.refresher = TokenRefresher(
            config,
            self.token_client,
            self.validator,
            self.metadata_resolver,
            self.token_store,
            clock=self.clock,
        )
        self.claims_mapper = ClaimsMapper(config)
        self.userinfo_client = UserinfoClient(self._client, timeout=config.http_timeout)

    async def __aenter__(self) -> "OpenIdAuthenticator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    def invalidate_provider_metadata(self) -> None:
        """Forces the next operation to fetch the discovery document again."""
        self.metadata_resolver.invalidate()

    async def begin_authentication(
        self, context: SessionContext, requested_resource: str | None = None
    ) -> RedirectInstruction:
        """
        Starts a login attempt for an unauthenticated request.

        Generates `state` (and `nonce` when enabled), stores them as the pending
        AuthenticationState and builds the authorization endpoint redirect.

        Args:
            context: The caller's session.
            requested_resource: Where to return the caller after login.

        Returns:
            RedirectInstruction: The redirect to the authorization endpoint.

        Raises:
            DiscoveryError: If the provider metadata cannot be loaded.
        """
        flow = AuthenticationFlow()
        flow.advance(AuthenticationStatus.REDIRECTING)

        metadata = await self.metadata_resolver.get()
        auth_state = AuthenticationState(
            state=self._generate_token(),
            nonce=self._generate_token() if self.config.use_nonce else None,
            requested_resource=requested_resource,
            created_at=self.clock.now(),
        )
        self.pending_states.save(context, self.config.use_session, auth_state)

        location = build_authorization_url(
            metadata, self.config, auth_state, self.config.resolve_redirect_uri(context.base_url)
        )
        flow.advance(AuthenticationStatus.AWAITING_CALLBACK)
        logger.info("Redirecting caller to the authorization endpoint")
        return RedirectInstruction(location=location)

    async def handle_callback(self, context: SessionContext, params: Mapping[str, str]) -> AuthenticationResult:
        """
        Completes a login attempt from the IdP callback.

        The pending AuthenticationState is consumed before anything else, so it
        cannot be reused whatever the outcome.

        Args:
            context: The caller's session.
            params: The callback query (or form_post) parameters.

        Returns:
            AuthenticationResult: ESTABLISHED with the identity and the originally
            requested resource, or FAILED with the error kind.
        """
        flow = AuthenticationFlow(AuthenticationStatus.AWAITING_CALLBACK)
        try:
            identity, requested_resource = await self._complete(flow, context, params)
        except CoreasonOpenIdError as e:
            flow.fail(e)
            logger.warning(f"Authentication failed ({e.kind}): {e}")
            return AuthenticationResult.failed(e)

        flow.advance(AuthenticationStatus.ESTABLISHED)
        set_current_identity(identity)
        logger.info("Authentication established")
        return AuthenticationResult(
            status=AuthenticationStatus.ESTABLISHED,
            identity=identity,
            redirect=RedirectInstruction(location=requested_resource) if requested_resource else None,
        )

    async def _complete(
        self, flow: AuthenticationFlow, context: SessionContext, params: Mapping[str, str]
    ) -> tuple[Identity, str | None]:
        pending = self.pending_states.consume(context, self.config.use_session)

        received = params.get("state")
        if pending is None:
            raise StateMismatchError("No pending authentication state for this callback")
        if not received or not hmac.compare_digest(received.encode(), pending.state.encode()):
            raise StateMismatchError("Callback state does not match the pending authentication state")
        if pending.is_expired(self.clock.now(), self.config.state_ttl):
            raise StateMismatchError("Pending authentication state has expired")

        if params.get("error"):
            raise ProviderError(params["error"], params.get("error_description"))
        code = params.get("code")
        if not code:
            raise TokenExchangeError("Callback carries neither 'code' nor 'error'")
        if self.config.use_nonce and pending.nonce is None:
            raise NonceMismatchError("No nonce was stored for this authentication attempt")

        flow.advance(AuthenticationStatus.EXCHANGING_CODE)
        metadata = await self.metadata_resolver.get()
        redirect_uri = self.config.resolve_redirect_uri(context.base_url)
        response = await self.token_client.exchange_code(metadata.token_endpoint, code, redirect_uri)

        flow.advance(AuthenticationStatus.VALIDATING)
        if not response.id_token:
            raise InvalidTokenError("Token response carries no ID Token")

        claims = await self.validator.validate(
            response.id_token,
            metadata,
            self.config,
            expected_nonce=pending.nonce if self.config.use_nonce else None,
            access_token=response.access_token,
        )
        tokens = token_set_from_response(response, response.id_token, claims, self.clock.now())
        validate_scope(tokens.scope, self.config)

        fetcher: UserinfoFetcher | None = None
        userinfo_endpoint = metadata.userinfo_endpoint
        if userinfo_endpoint:

            async def fetcher() -> dict[str, Any]:
                return await self.userinfo_client.fetch(userinfo_endpoint, tokens.access_token)

        identity = await self.claims_mapper.map_identity(claims, fetcher)

        self.token_store.save(context, tokens)
        self.token_store.save_identity(context, identity)
        return identity, pending.requested_resource

    async def validate_session(self, context: SessionContext) -> AuthenticationResult:
        """
        Authenticates a subsequent request from the session's stored tokens.

        Returns:
            AuthenticationResult: ESTABLISHED with the stored identity; UNAUTHENTICATED
            when there is no usable session; FAILED with `RefreshFailed` when
            tokens needed refreshing and could not be refreshed.
        """
        tokens = self.token_store.load(context)
        if tokens is None:
            return AuthenticationResult(status=AuthenticationStatus.UNAUTHENTICATED)

        try:
            tokens = await self.refresher.ensure_valid(context, tokens)
        except RefreshFailedError as e:
            # Local session only; the tokens are not revoked at the IdP
            self.token_store.clear(context)
            clear_current_identity()
            logger.info(f"Session is no longer authenticated: {e}")
            return AuthenticationResult.failed(e)

        if self._expired_by_logout_policy(tokens):
            logger.info("Session tokens expired, ending local session")
            self.token_store.clear(context)
            clear_current_identity()
            return AuthenticationResult(status=AuthenticationStatus.UNAUTHENTICATED)

        identity = self.token_store.load_identity(context)
        if identity is None:
            self.token_store.clear(context)
            return AuthenticationResult(status=AuthenticationStatus.UNAUTHENTICATED)

        set_current_identity(identity)
        return AuthenticationResult(status=AuthenticationStatus.ESTABLISHED, identity=identity)

    def _expired_by_logout_policy(self, tokens: TokenSet) -> bool:
        logout = self.config.logout
        now = self.clock.now()
        return (logout.access_token_expiry and tokens.is_access_token_expired(now)) or (
            logout.identity_token_expiry and tokens.is_id_token_expired(now)
        )

    async def logout(self, context: SessionContext) -> RedirectInstruction | None:
        """
        Ends the local session and, when configured, the session at the IdP.

        Local tokens are forgotten; they are not revoked at the IdP.

        Returns:
            RedirectInstruction | None: The end-session (or post-logout) redirect, if any.
        """
        tokens = self.token_store.load(context)
        self.token_store.clear(context)
        clear_current_identity()

        logout = self.config.logout
        post_logout_uri = logout.redirect_uri
        if post_logout_uri and BASE_URL_PLACEHOLDER in post_logout_uri and context.base_url:
            post_logout_uri = post_logout_uri.replace(BASE_URL_PLACEHOLDER, context.base_url.rstrip("/"))

        if logout.notify_provider:
            metadata = await self.metadata_resolver.get()
            if metadata.end_session_endpoint:
                params = [("client_id", self.config.client_id)]
                if tokens is not None and tokens.id_token:
                    params.append(("id_token_hint", tokens.id_token))
                if post_logout_uri:
                    params.append(("post_logout_redirect_uri", post_logout_uri))
                logger.info("Redirecting caller to the provider end-session endpoint")
                return RedirectInstruction(location=add_params_to_uri(metadata.end_session_endpoint, params))

        return RedirectInstruction(location=post_logout_uri) if post_logout_uri else None
