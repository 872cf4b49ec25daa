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
Client for the IdP token endpoint (authorization_code and refresh_token grants).
"""

from urllib.parse import quote

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_openid.config import ClientAuthMethod, OpenIdConfig
from coreason_openid.exceptions import (
    CoreasonOpenIdError,
    OversizedResponseError,
    RefreshFailedError,
    SecurityError,
    TokenExchangeError,
)
from coreason_openid.models import TokenResponse
from coreason_openid.transport import safe_json_fetch
from coreason_openid.utils.logger import logger

tracer = trace.get_tracer(__name__)


def _describe_error(response: httpx.Response) -> str:
    """Extracts the OAuth `error`/`error_description` of a failed token response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "error" in body:
        description = body.get("error_description")
        return f"{body['error']}: {description}" if description else str(body["error"])
    return response.text[:200]


class TokenEndpointClient:
    """
    Performs form-encoded token requests with the configured client authentication.

    Attributes:
        client (httpx.AsyncClient): The async HTTP client.
        config (OpenIdConfig): The client configuration (credentials, timeouts).
    """

    def __init__(self, client: httpx.AsyncClient, config: OpenIdConfig) -> None:
        self.client = client
        self.config = config

    async def exchange_code(self, token_endpoint: str, code: str, redirect_uri: str) -> TokenResponse:
        """
        Exchanges an authorization code for tokens.

        Raises:
            TokenExchangeError: If the request fails or the response is malformed.
        """
        data = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        return await self._request(token_endpoint, data, TokenExchangeError)

    async def refresh(self, token_endpoint: str, refresh_token: str) -> TokenResponse:
        """
        Redeems a refresh token.

        Raises:
            RefreshFailedError: If the request fails or the response is malformed.
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._request(token_endpoint, data, RefreshFailedError)

    async def _request(
        self,
        token_endpoint: str,
        data: dict[str, str],
        error_cls: type[CoreasonOpenIdError],
    ) -> TokenResponse:
        secret = self.config.client_secret.get_secret_value()
        auth: httpx.BasicAuth | None = None
        if self.config.client_auth_method is ClientAuthMethod.CLIENT_SECRET_BASIC and secret:
            # RFC 6749 2.3.1: credentials are form-encoded before Basic encoding
            auth = httpx.BasicAuth(quote(self.config.client_id, safe=""), quote(secret, safe=""))
        else:
            data["client_id"] = self.config.client_id
            if secret:
                data["client_secret"] = secret

        grant_type = data["grant_type"]
        with tracer.start_as_current_span("token_request") as span:
            span.set_attribute("oauth.grant_type", grant_type)
            try:
                payload = await safe_json_fetch(
                    self.client,
                    token_endpoint,
                    "POST",
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                    timeout=self.config.http_timeout,
                )
            except httpx.TimeoutException as e:
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                logger.warning(f"Token request ({grant_type}) timed out")
                raise error_cls(f"Token endpoint timed out ({grant_type})", retryable=True) from e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                detail = _describe_error(e.response)
                span.set_status(Status(StatusCode.ERROR, detail))
                logger.error(f"Token request ({grant_type}) failed with status {status}: {detail}")
                raise error_cls(f"Token endpoint returned {status}: {detail}", retryable=status >= 500) from e
            except (httpx.HTTPError, OversizedResponseError, SecurityError, ValueError) as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.error(f"Token request ({grant_type}) failed: {e}")
                raise error_cls(f"Token request failed ({grant_type}): {e}") from e

            if not isinstance(payload, dict):
                raise error_cls("Malformed token response: not a JSON object")
            try:
                response = TokenResponse(**payload)
            except ValidationError as e:
                raise error_cls(f"Malformed token response: {e}") from e

            span.set_status(Status(StatusCode.OK))
            return response
