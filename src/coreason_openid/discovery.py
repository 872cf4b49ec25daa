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
Provider metadata discovery.
"""

from typing import Any

import httpx
from pydantic import ValidationError

from coreason_openid.config import ProviderMetadataOverrides
from coreason_openid.exceptions import DiscoveryError, OversizedResponseError, SecurityError
from coreason_openid.models import ProviderMetadata
from coreason_openid.singleflight import SingleFlight
from coreason_openid.transport import safe_json_fetch
from coreason_openid.utils.logger import logger


class ProviderMetadataResolver:
    """
    Fetches the provider's discovery document once and reuses it until
    explicitly invalidated.

    Attributes:
        discovery_url (str): The OIDC discovery URL.
        overrides (ProviderMetadataOverrides): Values taking precedence over discovery.
    """

    def __init__(
        self,
        discovery_url: str,
        client: httpx.AsyncClient,
        overrides: ProviderMetadataOverrides | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self.discovery_url = discovery_url
        self.client = client
        self.overrides = overrides or ProviderMetadataOverrides()
        self.timeout = timeout
        self._metadata: ProviderMetadata | None = None
        self._flights: SingleFlight[ProviderMetadata] = SingleFlight()

    @property
    def cached(self) -> ProviderMetadata | None:
        return self._metadata

    def invalidate(self) -> None:
        """Drops the cached metadata; the next `get` fetches it again."""
        self._metadata = None

    async def _fetch(self) -> ProviderMetadata:
        """
        Fetches the OIDC configuration and applies the configured overrides.

        Raises:
            DiscoveryError: If the request fails or returns invalid data.
        """
        try:
            data = await safe_json_fetch(self.client, self.discovery_url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise DiscoveryError(
                f"Timed out fetching OIDC configuration from {self.discovery_url}", retryable=True
            ) from e
        except (httpx.HTTPError, OversizedResponseError, SecurityError, ValueError) as e:
            raise DiscoveryError(f"Failed to fetch OIDC configuration from {self.discovery_url}: {e}") from e

        if not isinstance(data, dict):
            raise DiscoveryError(f"Invalid OIDC configuration from {self.discovery_url}: not a JSON object")

        merged: dict[str, Any] = {**data, **self.overrides.model_dump(exclude_none=True)}
        try:
            metadata = ProviderMetadata(**merged)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e

        self._metadata = metadata
        logger.info(f"Loaded OIDC configuration for issuer {metadata.issuer}")
        return metadata

    async def get(self) -> ProviderMetadata:
        """
        Returns the provider metadata, fetching it on first use.

        Raises:
            DiscoveryError: If fetching fails.
        """
        if self._metadata is not None:
            return self._metadata
        return await self._flights.do(self.discovery_url, self._fetch, shield=True)
