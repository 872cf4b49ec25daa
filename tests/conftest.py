# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid

from collections import Counter
from typing import Any
from urllib.parse import parse_qsl

import anyio
import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_openid.async_context import clear_current_identity
from coreason_openid.config import OpenIdConfig
from coreason_openid.models import ProviderMetadata
from coreason_openid.store import MemorySessionStore, SessionContext

ISSUER = "https://idp.example.com"
CLIENT_ID = "my-client"
CLIENT_SECRET = "a-sufficiently-long-client-secret-value-0123456789"
APP_BASE_URL = "https://app.example.com"
JWKS_URI = f"{ISSUER}/jwks"


class FakeClock:
    """Settable clock, so token lifetimes can be tested without sleeping."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.current = now

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeIdentityProvider:
    """
    An in-process IdP served through httpx.MockTransport.

    Issues RS256 ID Tokens signed with `signing_key`, serves `keys` as its JWKS,
    and counts the requests per path.
    """

    def __init__(self, signing_key: Any, clock: FakeClock) -> None:
        self.signing_key = signing_key
        self.keys = [signing_key]
        self.clock = clock
        self.calls: Counter[str] = Counter()
        self.token_requests: list[dict[str, str]] = []
        self.token_responses: list[httpx.Response] = []
        self.nonce: str | None = None
        self.granted_scope: str | None = "openid email profile"
        self.issued = 0
        self.delay = 0.0
        self.userinfo: dict[str, Any] = {
            "sub": "user-123",
            "preferred_username": "alice",
            "email": "alice@example.com",
            "groups": ["admins", "users"],
        }
        self.discovery: dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "jwks_uri": JWKS_URI,
            "end_session_endpoint": f"{ISSUER}/logout",
            "id_token_signing_alg_values_supported": ["RS256"],
        }

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def kid(self) -> str:
        return self.signing_key.as_dict()["kid"]  # type: ignore[no-any-return]

    def sign(self, claims: dict[str, Any], key: Any = None, headers: dict[str, Any] | None = None) -> str:
        key = key or self.signing_key
        if headers is None:
            headers = {"alg": "RS256", "kid": key.as_dict()["kid"]}
        return jwt.encode(headers, claims, key).decode("utf-8")  # type: ignore[no-any-return]

    def claims(self, **overrides: Any) -> dict[str, Any]:
        now = int(self.clock.now())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-123",
            "iat": now,
            "exp": now + 3600,
            "preferred_username": "alice",
            "groups": ["admins", "users"],
        }
        if self.nonce is not None:
            claims["nonce"] = self.nonce
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    def id_token(self, **overrides: Any) -> str:
        return self.sign(self.claims(**overrides))

    def token_payload(self) -> dict[str, Any]:
        self.issued += 1
        payload: dict[str, Any] = {
            "access_token": f"access-{self.issued}",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": f"refresh-{self.issued}",
            "id_token": self.id_token(),
        }
        if self.granted_scope is not None:
            payload["scope"] = self.granted_scope
        return payload

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        if self.delay:
            await anyio.sleep(self.delay)

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json={"keys": [k.as_dict(is_private=False) for k in self.keys]})
        if path == "/token":
            self.token_requests.append(dict(parse_qsl(request.content.decode("utf-8"))))
            if self.token_responses:
                return self.token_responses.pop(0)
            return httpx.Response(200, json=self.token_payload())
        if path == "/userinfo":
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404, json={"error": "not_found"})


def make_config(**overrides: Any) -> OpenIdConfig:
    values: dict[str, Any] = {
        "provider_uri": ISSUER,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
    }
    values.update(overrides)
    return OpenIdConfig(**values)


def make_metadata(**overrides: Any) -> ProviderMetadata:
    values: dict[str, Any] = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "jwks_uri": JWKS_URI,
        "end_session_endpoint": f"{ISSUER}/logout",
    }
    values.update(overrides)
    return ProviderMetadata(**values)


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def other_rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def idp(rsa_key: Any, clock: FakeClock) -> FakeIdentityProvider:
    return FakeIdentityProvider(rsa_key, clock)


@pytest.fixture
def session_context() -> SessionContext:
    return SessionContext("session-1", MemorySessionStore(), MemorySessionStore(), base_url=APP_BASE_URL)


@pytest.fixture(autouse=True)
def reset_current_identity() -> Any:
    yield
    clear_current_identity()
