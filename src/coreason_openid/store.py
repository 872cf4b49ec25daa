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
Session storage interface and the per-session Token Store.
"""

from typing import Protocol

from pydantic import ValidationError

from coreason_openid.exceptions import ConfigurationError
from coreason_openid.models import Identity, TokenSet
from coreason_openid.utils.logger import logger


class SessionStore(Protocol):
    """Protocol for a byte-valued key/value store scoped to one caller (session or cookies)."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes) -> None: ...

    def remove(self, key: str) -> None: ...


class MemorySessionStore:
    """
    In-memory implementation of SessionStore.
    Not suitable for distributed systems.
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class SessionContext:
    """
    The caller's storage, as seen by one request.

    Attributes:
        session_id (str): Stable identifier of the caller's session.
        session (SessionStore): Server-side session storage.
        cookies (SessionStore | None): Cookie storage, used for pending state when sessions are disabled.
        base_url (str | None): The application's base URL, substituted into `${baseURL}`.
    """

    def __init__(
        self,
        session_id: str,
        session: SessionStore,
        cookies: SessionStore | None = None,
        base_url: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.session = session
        self.cookies = cookies
        self.base_url = base_url

    def state_store(self, use_session: bool) -> SessionStore:
        """
        Returns where pending authentication state lives.

        Raises:
            ConfigurationError: If cookie storage is required but missing.
        """
        if use_session:
            return self.session
        if self.cookies is None:
            raise ConfigurationError("Cookie storage is required when use_session is disabled")
        return self.cookies


class TokenStore:
    """
    Persists the TokenSet and Identity of an authenticated session.
    """

    TOKENS_KEY = "coreason.openid.tokens"
    IDENTITY_KEY = "coreason.openid.identity"

    def load(self, context: SessionContext) -> TokenSet | None:
        raw = context.session.get(self.TOKENS_KEY)
        if raw is None:
            return None
        try:
            return TokenSet.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable token set from session")
            context.session.remove(self.TOKENS_KEY)
            return None

    def save(self, context: SessionContext, tokens: TokenSet) -> None:
        context.session.put(self.TOKENS_KEY, tokens.model_dump_json().encode("utf-8"))

    def load_identity(self, context: SessionContext) -> Identity | None:
        raw = context.session.get(self.IDENTITY_KEY)
        if raw is None:
            return None
        try:
            return Identity.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable identity from session")
            context.session.remove(self.IDENTITY_KEY)
            return None

    def save_identity(self, context: SessionContext, identity: Identity) -> None:
        context.session.put(self.IDENTITY_KEY, identity.model_dump_json().encode("utf-8"))

    def clear(self, context: SessionContext) -> None:
        """Forgets tokens and identity (logout or session termination)."""
        context.session.remove(self.TOKENS_KEY)
        context.session.remove(self.IDENTITY_KEY)
