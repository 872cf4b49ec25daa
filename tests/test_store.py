# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid

import pytest

from coreason_openid.exceptions import ConfigurationError
from coreason_openid.models import Identity, TokenSet
from coreason_openid.store import MemorySessionStore, SessionContext, TokenStore


@pytest.fixture
def context() -> SessionContext:
    return SessionContext("session-1", MemorySessionStore(), MemorySessionStore())


def _tokens() -> TokenSet:
    return TokenSet(
        access_token="access-1",
        id_token="header.payload.signature",
        id_token_claims={"sub": "user-123", "exp": 1_700_003_600},
        refresh_token="refresh-1",
        expires_at=1_700_003_600.0,
        scope=["openid", "email"],
    )


def test_memory_session_store() -> None:
    store = MemorySessionStore()
    assert store.get("k") is None

    store.put("k", b"v")
    assert store.get("k") == b"v"
    assert "k" in store

    store.remove("k")
    store.remove("k")
    assert "k" not in store


def test_state_store_selection() -> None:
    session, cookies = MemorySessionStore(), MemorySessionStore()
    context = SessionContext("s", session, cookies)

    assert context.state_store(use_session=True) is session
    assert context.state_store(use_session=False) is cookies

    with pytest.raises(ConfigurationError, match="Cookie storage is required"):
        SessionContext("s", session).state_store(use_session=False)


def test_token_store_persists_tokens_and_identity(context: SessionContext) -> None:
    store = TokenStore()
    tokens = _tokens()
    identity = Identity(subject="user-123", caller_name="alice", groups=["admins"])

    store.save(context, tokens)
    store.save_identity(context, identity)

    assert store.load(context) == tokens
    assert store.load_identity(context) == identity
    # Tokens live in the server-side session only
    assert TokenStore.TOKENS_KEY in context.session
    assert context.cookies is not None and TokenStore.TOKENS_KEY not in context.cookies


def test_token_store_clear(context: SessionContext) -> None:
    store = TokenStore()
    store.save(context, _tokens())
    store.save_identity(context, Identity(subject="user-123", caller_name="alice"))

    store.clear(context)

    assert store.load(context) is None
    assert store.load_identity(context) is None


def test_unreadable_entries_are_discarded(context: SessionContext) -> None:
    store = TokenStore()
    context.session.put(TokenStore.TOKENS_KEY, b"{broken")
    context.session.put(TokenStore.IDENTITY_KEY, b'{"subject": 1}')

    assert store.load(context) is None
    assert store.load_identity(context) is None
    assert context.session.get(TokenStore.TOKENS_KEY) is None
    assert context.session.get(TokenStore.IDENTITY_KEY) is None


def test_token_set_repr_hides_tokens() -> None:
    text = repr(_tokens())
    assert "access-1" not in text
    assert "refresh-1" not in text


def test_token_set_expiry() -> None:
    tokens = _tokens()

    assert tokens.remaining(1_700_003_590.0) == 10.0
    assert tokens.is_access_token_expired(1_700_003_599.0) is False
    assert tokens.is_access_token_expired(1_700_003_600.0) is True
    assert tokens.is_id_token_expired(1_700_003_600.0) is True
    assert TokenSet(access_token="a").remaining(0.0) is None
    assert TokenSet(access_token="a").is_id_token_expired(0.0) is False
