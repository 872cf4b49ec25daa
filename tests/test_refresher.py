# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid

from typing import Any
from unittest.mock import AsyncMock, Mock

import anyio
import pytest
from conftest import FakeClock, make_config, make_metadata

from coreason_openid.config import OpenIdConfig
from coreason_openid.discovery import ProviderMetadataResolver
from coreason_openid.exceptions import RefreshFailedError, SignatureInvalidError
from coreason_openid.models import TokenResponse, TokenSet
from coreason_openid.refresher import TokenRefresher, token_set_from_response
from coreason_openid.store import MemorySessionStore, SessionContext, TokenStore
from coreason_openid.token_endpoint import TokenEndpointClient
from coreason_openid.validator import IdTokenValidator


@pytest.fixture
def token_client() -> Mock:
    client = Mock(spec=TokenEndpointClient)
    client.refresh = AsyncMock(
        return_value=TokenResponse(access_token="access-2", expires_in=3600, refresh_token="refresh-2")
    )
    return client


@pytest.fixture
def validator() -> Mock:
    validator = Mock(spec=IdTokenValidator)
    validator.validate = AsyncMock(return_value={"sub": "user-123", "exp": 1_700_007_200})
    return validator


@pytest.fixture
def metadata_resolver() -> Mock:
    resolver = Mock(spec=ProviderMetadataResolver)
    resolver.get = AsyncMock(return_value=make_metadata())
    return resolver


@pytest.fixture
def context() -> SessionContext:
    return SessionContext("session-1", MemorySessionStore())


def _refresher(
    config: OpenIdConfig, token_client: Mock, validator: Mock, metadata_resolver: Mock, clock: FakeClock
) -> TokenRefresher:
    return TokenRefresher(config, token_client, validator, metadata_resolver, TokenStore(), clock=clock)


def _tokens(clock: FakeClock, expires_in: float | None, **kwargs: Any) -> TokenSet:
    values: dict[str, Any] = {
        "access_token": "access-1",
        "id_token": "id-1",
        "id_token_claims": {"sub": "user-123", "exp": int(clock.now()) + 3600},
        "refresh_token": "refresh-1",
        "expires_at": clock.now() + expires_in if expires_in is not None else None,
        "scope": ["openid", "email"],
    }
    values.update(kwargs)
    return TokenSet(**values)


@pytest.fixture
def auto_refresh_config() -> OpenIdConfig:
    return make_config(token_auto_refresh=True, token_min_validity=10_000)


@pytest.mark.asyncio
async def test_auto_refresh_disabled_makes_no_call(
    token_client: Mock, validator: Mock, metadata_resolver: Mock, clock: FakeClock, context: SessionContext
) -> None:
    refresher = _refresher(make_config(), token_client, validator, metadata_resolver, clock)
    expired = _tokens(clock, expires_in=-60)

    assert await refresher.ensure_valid(context, expired) is expired
    token_client.refresh.assert_not_awaited()
    metadata_resolver.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_refresh_when_below_min_validity(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    refreshed = await refresher.ensure_valid(context, _tokens(clock, expires_in=5))

    token_client.refresh.assert_awaited_once_with("https://idp.example.com/token", "refresh-1")
    assert refreshed.access_token == "access-2"
    assert refreshed.refresh_token == "refresh-2"
    assert refreshed.expires_at == clock.now() + 3600
    # The IdP sent no new ID Token, the previous one is kept
    assert refreshed.id_token == "id-1"
    assert refreshed.scope == ["openid", "email"]
    assert refresher.token_store.load(context) == refreshed


@pytest.mark.asyncio
async def test_no_refresh_above_min_validity(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)
    tokens = _tokens(clock, expires_in=20)

    assert await refresher.ensure_valid(context, tokens) is tokens
    token_client.refresh.assert_not_awaited()


def test_needs_refresh_boundary(
    auto_refresh_config: OpenIdConfig, token_client: Mock, validator: Mock, metadata_resolver: Mock, clock: FakeClock
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    assert refresher.needs_refresh(_tokens(clock, expires_in=10)) is True
    assert refresher.needs_refresh(_tokens(clock, expires_in=10.5)) is False
    assert refresher.needs_refresh(_tokens(clock, expires_in=None)) is False


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    async def slow_refresh(endpoint: str, refresh_token: str) -> TokenResponse:
        await anyio.sleep(0.05)
        return TokenResponse(access_token="access-2", expires_in=3600)

    token_client.refresh.side_effect = slow_refresh
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)
    tokens = _tokens(clock, expires_in=5)
    results: list[TokenSet] = []

    async def request() -> None:
        results.append(await refresher.ensure_valid(context, tokens))

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(request)

    assert token_client.refresh.await_count == 1
    assert [t.access_token for t in results] == ["access-2"] * 5


@pytest.mark.asyncio
async def test_sessions_refresh_independently(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)
    tokens = _tokens(clock, expires_in=5)

    async with anyio.create_task_group() as tg:
        tg.start_soon(refresher.ensure_valid, SessionContext("a", MemorySessionStore()), tokens)
        tg.start_soon(refresher.ensure_valid, SessionContext("b", MemorySessionStore()), tokens)

    assert token_client.refresh.await_count == 2


@pytest.mark.asyncio
async def test_tokens_already_refreshed_by_another_request(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)
    fresh = _tokens(clock, expires_in=3600, access_token="access-fresh")
    refresher.token_store.save(context, fresh)

    result = await refresher.ensure_valid(context, _tokens(clock, expires_in=5))

    assert result == fresh
    token_client.refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_refresh_token(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    with pytest.raises(RefreshFailedError, match="no refresh token"):
        await refresher.ensure_valid(context, _tokens(clock, expires_in=5, refresh_token=None))

    token_client.refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_refresh_exchange_failure(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    token_client.refresh.side_effect = RefreshFailedError("invalid_grant")
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    with pytest.raises(RefreshFailedError, match="invalid_grant"):
        await refresher.ensure_valid(context, _tokens(clock, expires_in=5))

    assert refresher.token_store.load(context) is None


@pytest.mark.asyncio
async def test_new_id_token_is_validated(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    token_client.refresh.return_value = TokenResponse(access_token="access-2", id_token="id-2", expires_in=60)
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    refreshed = await refresher.ensure_valid(context, _tokens(clock, expires_in=5))

    validator.validate.assert_awaited_once_with("id-2", make_metadata(), auto_refresh_config, access_token="access-2")
    assert refreshed.id_token == "id-2"
    assert refreshed.id_token_claims["exp"] == 1_700_007_200
    assert refreshed.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_new_id_token_for_another_subject(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    token_client.refresh.return_value = TokenResponse(access_token="access-2", id_token="id-2")
    validator.validate.return_value = {"sub": "someone-else", "exp": 1_700_007_200}
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    with pytest.raises(RefreshFailedError, match="different subject"):
        await refresher.ensure_valid(context, _tokens(clock, expires_in=5))


@pytest.mark.asyncio
async def test_invalid_new_id_token(
    auto_refresh_config: OpenIdConfig,
    token_client: Mock,
    validator: Mock,
    metadata_resolver: Mock,
    clock: FakeClock,
    context: SessionContext,
) -> None:
    token_client.refresh.return_value = TokenResponse(access_token="access-2", id_token="id-2")
    validator.validate.side_effect = SignatureInvalidError("Invalid signature")
    refresher = _refresher(auto_refresh_config, token_client, validator, metadata_resolver, clock)

    with pytest.raises(RefreshFailedError, match="Invalid signature") as exc_info:
        await refresher.ensure_valid(context, _tokens(clock, expires_in=5))

    assert isinstance(exc_info.value.__cause__, SignatureInvalidError)


def test_token_set_expiry_falls_back_to_id_token_exp() -> None:
    response = TokenResponse(access_token="a", scope="openid profile")

    tokens = token_set_from_response(response, "id", {"sub": "u", "exp": 1_700_000_600}, now=1_700_000_000)

    assert tokens.expires_at == 1_700_000_600
    assert tokens.scope == ["openid", "profile"]
    assert tokens.refresh_token is None
