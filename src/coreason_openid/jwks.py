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
JWKS Cache component for fetching and caching the IdP signing keys.
"""

from typing import Any

import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from pydantic import BaseModel, ConfigDict

from coreason_openid.exceptions import (
    JwksUnavailableError,
    OversizedResponseError,
    SecurityError,
    SignatureInvalidError,
    UnknownKeyError,
)
from coreason_openid.singleflight import SingleFlight
from coreason_openid.transport import safe_json_fetch
from coreason_openid.utils.clock import Clock, SystemClock
from coreason_openid.utils.logger import logger

_KTY_BY_ALG_PREFIX = (("RS", "RSA"), ("PS", "RSA"), ("ES", "EC"), ("Ed", "OKP"))


class JwksCacheEntry(BaseModel):
    """
    A fetched key set.

    Attributes:
        source_uri (str): The JWKS URI the keys were fetched from.
        keys (list[dict[str, Any]]): The JWK dictionaries.
        fetched_at (float): Fetch time, epoch seconds.
    """

    model_config = ConfigDict(frozen=True)

    source_uri: str
    keys: list[dict[str, Any]]
    fetched_at: float


def _expected_kty(algorithm: str) -> str | None:
    for prefix, kty in _KTY_BY_ALG_PREFIX:
        if algorithm.startswith(prefix):
            return kty
    return None


def select_key(keys: list[dict[str, Any]], key_id: str | None, algorithm: str) -> dict[str, Any] | None:
    """
    Selects the signing key matching a token header.

    Keys not meant for signatures, of the wrong type, or pinned to another
    algorithm are ignored. Without a key id, a key is only selected when it is
    the single candidate.

    Args:
        keys: The JWK dictionaries of the key set.
        key_id: The `kid` header of the token, if any.
        algorithm: The `alg` header of the token.

    Returns:
        The matching JWK dictionary, or None.
    """
    kty = _expected_kty(algorithm)
    candidates = [
        jwk
        for jwk in keys
        if jwk.get("use", "sig") == "sig"
        and (kty is None or jwk.get("kty") == kty)
        and jwk.get("alg", algorithm) == algorithm
    ]

    if key_id is not None:
        return next((jwk for jwk in candidates if jwk.get("kid") == key_id), None)
    return candidates[0] if len(candidates) == 1 else None


class JwksCache:
    """
    Caches key sets per JWKS URI.

    Refresh is reactive only: a key set is fetched on a miss or when a caller
    forces it (unknown key id). Concurrent fetches of the same URI are collapsed
    into one network call, which completes even if the caller that started it
    is cancelled.

    Attributes:
        client (httpx.AsyncClient): The async HTTP client used for fetching.
        timeout (httpx.Timeout | None): Connect/read timeout for JWKS requests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: httpx.Timeout | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self._entries: dict[str, JwksCacheEntry] = {}
        self._flights: SingleFlight[JwksCacheEntry] = SingleFlight()

    def entry(self, jwks_uri: str) -> JwksCacheEntry | None:
        """Returns the cached entry for `jwks_uri` without fetching."""
        return self._entries.get(jwks_uri)

    def invalidate(self, jwks_uri: str | None = None) -> None:
        """Drops the cached entry for `jwks_uri`, or all entries."""
        if jwks_uri is None:
            self._entries.clear()
        else:
            self._entries.pop(jwks_uri, None)

    async def _fetch(self, jwks_uri: str) -> JwksCacheEntry:
        """
        Fetches the JWKS from the given URI and replaces the cached entry.

        Raises:
            JwksUnavailableError: On timeout, network error, non-2xx status or malformed JSON.
        """
        try:
            data = await safe_json_fetch(self.client, jwks_uri, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"Timed out fetching JWKS from {jwks_uri}")
            raise JwksUnavailableError(f"Timed out fetching JWKS from {jwks_uri}") from e
        except (httpx.HTTPError, OversizedResponseError, SecurityError, ValueError) as e:
            logger.error(f"Failed to fetch JWKS from {jwks_uri}: {e}")
            raise JwksUnavailableError(f"Failed to fetch JWKS from {jwks_uri}: {e}") from e

        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list):
            raise JwksUnavailableError(f"Malformed JWKS from {jwks_uri}: missing 'keys' array")

        entry = JwksCacheEntry(
            source_uri=jwks_uri,
            keys=[jwk for jwk in keys if isinstance(jwk, dict)],
            fetched_at=self.clock.now(),
        )
        self._entries[jwks_uri] = entry
        logger.info(f"JWKS refreshed from {jwks_uri} ({len(entry.keys)} keys)")
        return entry

    async def get_key_set(self, jwks_uri: str, force_refresh: bool = False) -> JwksCacheEntry:
        """
        Returns the key set for `jwks_uri`, fetching it on a miss.

        Args:
            jwks_uri: The provider's JWKS URI.
            force_refresh: If True, bypasses the cache and fetches fresh keys.

        Raises:
            JwksUnavailableError: If fetching fails.
        """
        if not force_refresh:
            entry = self._entries.get(jwks_uri)
            if entry is not None:
                return entry

        return await self._flights.do(jwks_uri, lambda: self._fetch(jwks_uri), shield=True)

    async def get_key(self, jwks_uri: str, key_id: str | None, algorithm: str, force_refresh: bool = False) -> Any:
        """
        Returns the Authlib key matching `key_id` and `algorithm`.

        Raises:
            UnknownKeyError: If no key in the set matches.
            SignatureInvalidError: If the matching JWK cannot be imported.
            JwksUnavailableError: If fetching fails.
        """
        entry = await self.get_key_set(jwks_uri, force_refresh=force_refresh)
        jwk = select_key(entry.keys, key_id, algorithm)
        if jwk is None:
            raise UnknownKeyError(f"No signing key found for kid '{key_id}' and alg '{algorithm}'")

        try:
            return JsonWebKey.import_key(jwk)
        except (JoseError, ValueError, TypeError) as e:
            raise SignatureInvalidError(f"Unusable signing key '{key_id}': {e}") from e
