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
HTTP helpers for talking to the Identity Provider.

Includes a size-capped JSON fetch (DoS protection) and a secure transport that
mitigates SSRF via DNS rebinding.
"""

import ipaddress
import socket
from typing import Any

import anyio
import httpx
from loguru import logger

from coreason_openid.exceptions import OversizedResponseError, SecurityError

MAX_RESPONSE_BYTES = 1_000_000


def build_timeout(connect_ms: int, read_ms: int) -> httpx.Timeout:
    """
    Builds an httpx timeout from millisecond values. Zero means no limit.

    Args:
        connect_ms: Connect (and pool acquisition) timeout in milliseconds.
        read_ms: Read (and write) timeout in milliseconds.
    """
    connect = connect_ms / 1000 if connect_ms else None
    read = read_ms / 1000 if read_ms else None
    return httpx.Timeout(read, connect=connect, read=read, pool=connect)


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    *,
    timeout: httpx.Timeout | None = None,
    max_bytes: int = MAX_RESPONSE_BYTES,
    **kwargs: Any,
) -> Any:
    """
    Performs a request and decodes the JSON body, reading at most `max_bytes`.

    The body is buffered before the status is checked, so `HTTPStatusError.response`
    still exposes the error payload (e.g. OAuth `error` codes on a 400).

    Args:
        client: The async HTTP client.
        url: The URL to request.
        method: The HTTP method.
        timeout: Per-call timeout overriding the client default.
        max_bytes: Maximum accepted body size.
        **kwargs: Passed to `client.stream` (data, headers, auth, ...).

    Returns:
        Any: The decoded JSON document.

    Raises:
        OversizedResponseError: If the body exceeds `max_bytes`.
        httpx.HTTPStatusError: If the response status is not 2xx.
        httpx.HTTPError: For transport errors and timeouts.
        ValueError: If the body is not valid JSON.
    """
    if timeout is not None:
        kwargs["timeout"] = timeout

    async with client.stream(method, url, **kwargs) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise OversizedResponseError(f"Response from {url} too large ({content_length} bytes)")

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                raise OversizedResponseError(f"Response from {url} too large")

        # Already decoded by aiter_bytes, so content-encoding headers are not carried over
        buffered = httpx.Response(response.status_code, content=bytes(content), request=response.request)

    buffered.raise_for_status()
    return buffered.json()


class SafeHTTPTransport(httpx.AsyncHTTPTransport):
    """
    A secure HTTP transport that enforces DNS pinning to prevent SSRF/DNS Rebinding attacks.

    It resolves the hostname to an IP address, validates the IP against blocked ranges
    (private, loopback, link-local, multicast), and then forces the connection to that specific IP
    while preserving the original Host header and SNI for SSL verification.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None

        if ip_obj is not None:
            self._validate_ip(ip_obj, hostname)
            return await super().handle_async_request(request)

        try:
            addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        # Skipping blocked addresses is safe because we connect only to the pinned one
        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            try:
                candidate = ipaddress.ip_address(sockaddr[0])
                self._validate_ip(candidate, hostname)
            except (SecurityError, ValueError):
                continue
            target_ip = str(candidate)
            break

        if not target_ip:
            logger.error(f"Security violation: No valid public IP found for {hostname}")
            raise SecurityError(f"Security violation: No valid public IP found for {hostname}")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")

        return await super().handle_async_request(request)

    def _validate_ip(self, ip_obj: Any, hostname: str) -> None:
        """
        Validates an IP address object against blocked ranges.
        """
        if (
            ip_obj.is_private
            or ip_obj.is_loopback
            or ip_obj.is_link_local
            or ip_obj.is_reserved
            or ip_obj.is_multicast
        ):
            logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
            raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")
