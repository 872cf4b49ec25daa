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
Authentication flow states, pending login state and authorization request construction.
"""

import secrets

from authlib.common.urls import add_params_to_uri
from pydantic import ValidationError

from coreason_openid.config import OpenIdConfig
from coreason_openid.exceptions import CoreasonOpenIdError, IllegalTransitionError
from coreason_openid.models import AuthenticationState, AuthenticationStatus, ProviderMetadata
from coreason_openid.store import SessionContext
from coreason_openid.utils.logger import logger

_TRANSITIONS: dict[AuthenticationStatus, frozenset[AuthenticationStatus]] = {
    AuthenticationStatus.UNAUTHENTICATED: frozenset({AuthenticationStatus.REDIRECTING}),
    AuthenticationStatus.REDIRECTING: frozenset({AuthenticationStatus.AWAITING_CALLBACK, AuthenticationStatus.FAILED}),
    AuthenticationStatus.AWAITING_CALLBACK: frozenset(
        {AuthenticationStatus.EXCHANGING_CODE, AuthenticationStatus.FAILED}
    ),
    AuthenticationStatus.EXCHANGING_CODE: frozenset({AuthenticationStatus.VALIDATING, AuthenticationStatus.FAILED}),
    AuthenticationStatus.VALIDATING: frozenset({AuthenticationStatus.ESTABLISHED, AuthenticationStatus.FAILED}),
    AuthenticationStatus.ESTABLISHED: frozenset({AuthenticationStatus.FAILED}),
    AuthenticationStatus.FAILED: frozenset(),
}


def generate_token() -> str:
    """Returns a URL-safe random value for `state` and `nonce`."""
    return secrets.token_urlsafe(32)


class AuthenticationFlow:
    """
    Tracks the status of one login attempt and enforces legal transitions.

    Attributes:
        status (AuthenticationStatus): The current status.
        history (list[AuthenticationStatus]): Every status visited, in order.
        error (CoreasonOpenIdError | None): The failure, once FAILED.
    """

    def __init__(self, status: AuthenticationStatus = AuthenticationStatus.UNAUTHENTICATED) -> None:
        self.status = status
        self.history = [status]
        self.error: CoreasonOpenIdError | None = None

    def advance(self, target: AuthenticationStatus) -> None:
        """
        Moves the flow to `target`.

        Raises:
            IllegalTransitionError: If `target` is not reachable from the current status.
        """
        if target not in _TRANSITIONS[self.status]:
            raise IllegalTransitionError(f"Cannot move authentication flow from {self.status} to {target}")
        logger.debug(f"Authentication flow {self.status} -> {target}")
        self.status = target
        self.history.append(target)

    def fail(self, error: CoreasonOpenIdError) -> None:
        self.advance(AuthenticationStatus.FAILED)
        self.error = error


class PendingStateStore:
    """
    Keeps the AuthenticationState of an in-flight login, in the session or in
    a cookie depending on `use_session`.
    """

    KEY = "coreason.openid.state"

    def save(self, context: SessionContext, use_session: bool, auth_state: AuthenticationState) -> None:
        context.state_store(use_session).put(self.KEY, auth_state.model_dump_json().encode("utf-8"))

    def consume(self, context: SessionContext, use_session: bool) -> AuthenticationState | None:
        """
        Reads and removes the pending state; it can be consumed only once.
        """
        store = context.state_store(use_session)
        raw = store.get(self.KEY)
        store.remove(self.KEY)
        if raw is None:
            return None
        try:
            return AuthenticationState.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable pending authentication state")
            return None


def build_authorization_url(
    metadata: ProviderMetadata,
    config: OpenIdConfig,
    auth_state: AuthenticationState,
    redirect_uri: str,
) -> str:
    """
    Builds the authorization endpoint URL for a login attempt.

    Extra parameters are appended verbatim after the standard ones; duplicate keys are kept.

    Args:
        metadata: The provider metadata.
        config: The client configuration.
        auth_state: The pending state carrying `state` and `nonce`.
        redirect_uri: The resolved callback URI.

    Returns:
        str: The URL to redirect the browser to.
    """
    params: list[tuple[str, str]] = [
        ("client_id", config.client_id),
        ("redirect_uri", redirect_uri),
        ("scope", " ".join(config.scope)),
        ("response_type", config.response_type),
    ]
    if config.response_mode:
        params.append(("response_mode", config.response_mode))
    if config.prompt:
        params.append(("prompt", " ".join(p.value for p in config.prompt)))
    params.append(("display", config.display.value))
    params.append(("state", auth_state.state))
    if auth_state.nonce is not None:
        params.append(("nonce", auth_state.nonce))
    params.extend(config.resolved_extra_parameters)

    return add_params_to_uri(metadata.authorization_endpoint, params)  # type: ignore[no-any-return]
