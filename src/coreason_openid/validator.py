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
Token Validator component for validating ID Token signatures and claims.
"""

import base64
import hashlib
import hmac
import json
from typing import Any

from authlib.jose import JsonWebToken, OctKey
from authlib.jose.errors import BadSignatureError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from coreason_openid.config import OpenIdConfig
from coreason_openid.exceptions import (
    AudienceMismatchError,
    CoreasonOpenIdError,
    InvalidScopeError,
    InvalidTokenError,
    IssuerMismatchError,
    NonceMismatchError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenNotYetValidError,
    UnknownKeyError,
)
from coreason_openid.jwks import JwksCache
from coreason_openid.models import ProviderMetadata
from coreason_openid.utils.clock import Clock, SystemClock
from coreason_openid.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)

OPENID_SCOPE = "openid"

_HALF_HASH_BY_SUFFIX = {"256": hashlib.sha256, "384": hashlib.sha384, "512": hashlib.sha512}


def _unverified_header(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidTokenError("Malformed token: expected three dot-separated segments")

    segment = parts[0]
    try:
        header = json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))
    except ValueError as e:
        raise InvalidTokenError(f"Malformed token header: {e}") from e

    if not isinstance(header, dict) or not isinstance(header.get("alg"), str):
        raise InvalidTokenError("Malformed token header: missing 'alg'")
    return header


def create_half_hash(value: str, algorithm: str) -> str | None:
    """
    Computes the OIDC `at_hash`/`c_hash` of `value` for a JWS algorithm.

    Returns:
        The base64url-encoded left half of the digest, or None for unsupported algorithms.
    """
    hash_fn = hashlib.sha512 if algorithm == "EdDSA" else _HALF_HASH_BY_SUFFIX.get(algorithm[2:])
    if hash_fn is None:
        return None
    digest = hash_fn(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


def validate_scope(granted: list[str] | None, config: OpenIdConfig) -> None:
    """
    Checks the scope granted by the token endpoint.

    An empty grant means the IdP granted what was requested.

    Raises:
        InvalidScopeError: If scope validation is enabled and `openid` was not granted.
    """
    if config.disable_scope_validation or not granted:
        return
    if OPENID_SCOPE not in granted:
        raise InvalidScopeError(f"Granted scope {granted} does not include '{OPENID_SCOPE}'")


class IdTokenValidator:
    """
    Validates ID Tokens against the IdP's JWKS and the OIDC claim rules.

    Checks run in order (signature, issuer, audience, expiry, nonce) and the
    first failure short-circuits with its own exception type.

    Attributes:
        jwks_cache (JwksCache): The shared key cache.
        clock (Clock): Time source for expiry checks.
    """

    def __init__(self, jwks_cache: JwksCache, clock: Clock | None = None) -> None:
        self.jwks_cache = jwks_cache
        self.clock = clock or SystemClock()

    @staticmethod
    def allowed_algorithms(metadata: ProviderMetadata, config: OpenIdConfig) -> list[str]:
        """The configured algorithms the provider supports; `none` is never allowed."""
        supported = metadata.id_token_signing_alg_values_supported
        return [alg for alg in config.allowed_algorithms if alg in supported and alg.lower() != "none"]

    async def validate(
        self,
        id_token: str,
        metadata: ProviderMetadata,
        config: OpenIdConfig,
        expected_nonce: str | None = None,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        """
        Validates the ID Token signature and claims.

        Emits an OpenTelemetry span `validate_id_token`.

        Args:
            id_token: The raw ID Token.
            metadata: The provider metadata (issuer, JWKS URI, algorithms).
            config: The client configuration (client id, secret, leeway).
            expected_nonce: The nonce stored for this login attempt, if nonces are used.
            access_token: The access token issued alongside, checked against `at_hash`.

        Returns:
            dict[str, Any]: The validated claims.

        Raises:
            SignatureInvalidError: If the signature is invalid or no key matches.
            IssuerMismatchError: If `iss` differs from the provider issuer.
            AudienceMismatchError: If `aud` does not contain the client id.
            TokenExpiredError: If the token has expired.
            TokenNotYetValidError: If `nbf` lies in the future.
            NonceMismatchError: If the nonce differs from `expected_nonce`.
            InvalidTokenError: For malformed tokens and other claim errors.
            JwksUnavailableError: If the JWKS cannot be fetched.
        """
        with tracer.start_as_current_span("validate_id_token") as span:
            token = id_token.strip()
            try:
                claims, algorithm = await self._verify_signature(token, metadata, config, span)
                self._check_claims(claims, metadata, config, expected_nonce)
                if access_token is not None:
                    self.validate_access_token_hash(claims, access_token, algorithm)
            except CoreasonOpenIdError as e:
                logger.warning(f"ID Token validation failed ({e.kind}): {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            user_hash = anonymize(str(claims["sub"]), config.pii_salt.get_secret_value())
            logger.info(f"ID Token validated for user {user_hash}")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return claims

    async def _verify_signature(
        self, token: str, metadata: ProviderMetadata, config: OpenIdConfig, span: Span
    ) -> tuple[dict[str, Any], str]:
        header = _unverified_header(token)
        algorithm = header["alg"]
        key_id = header.get("kid")

        allowed = self.allowed_algorithms(metadata, config)
        if algorithm not in allowed:
            raise SignatureInvalidError(f"Signing algorithm '{algorithm}' is not allowed (allowed: {allowed})")
        jwt = JsonWebToken(allowed)

        if algorithm.startswith("HS"):
            secret = config.client_secret.get_secret_value()
            if not secret:
                raise SignatureInvalidError(f"'{algorithm}' ID Tokens require a client secret")
            return self._decode(jwt, token, OctKey.import_key(secret)), algorithm

        was_cached = self.jwks_cache.entry(metadata.jwks_uri) is not None
        try:
            key = await self.jwks_cache.get_key(metadata.jwks_uri, key_id, algorithm)
        except UnknownKeyError:
            if not was_cached:
                # The key set was fetched just now, refreshing again cannot help
                raise
            logger.info(f"Signing key '{key_id}' not in cached JWKS, refreshing once")
            span.add_event("refreshing_jwks")
            key = await self.jwks_cache.get_key(metadata.jwks_uri, key_id, algorithm, force_refresh=True)

        return self._decode(jwt, token, key), algorithm

    @staticmethod
    def _decode(jwt: JsonWebToken, token: str, key: Any) -> dict[str, Any]:
        try:
            claims = jwt.decode(token, key)
        except BadSignatureError as e:
            raise SignatureInvalidError(f"Invalid signature: {e}") from e
        except (JoseError, ValueError) as e:
            raise InvalidTokenError(f"Token decoding failed: {e}") from e
        return dict(claims)

    def _check_claims(
        self,
        claims: dict[str, Any],
        metadata: ProviderMetadata,
        config: OpenIdConfig,
        expected_nonce: str | None,
    ) -> None:
        if claims.get("iss") != metadata.issuer:
            raise IssuerMismatchError(f"Invalid issuer: expected '{metadata.issuer}', got '{claims.get('iss')}'")

        aud = claims.get("aud")
        if isinstance(aud, str):
            audiences = [aud]
        elif isinstance(aud, list):
            audiences = [a for a in aud if isinstance(a, str)]
        else:
            audiences = []
        if config.client_id not in audiences:
            raise AudienceMismatchError(f"Invalid audience: '{config.client_id}' not in {audiences}")
        if len(audiences) > 1 and "azp" in claims and claims["azp"] != config.client_id:
            raise AudienceMismatchError(f"Invalid authorized party: '{claims['azp']}'")

        now = self.clock.now()
        leeway = config.clock_skew_leeway

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise InvalidTokenError("Missing or invalid 'exp' claim")
        if now >= exp + leeway:
            raise TokenExpiredError(f"Token has expired (exp={exp})")

        nbf = claims.get("nbf")
        if nbf is not None:
            if not isinstance(nbf, (int, float)):
                raise InvalidTokenError("Invalid 'nbf' claim")
            if now + leeway <= nbf:
                raise TokenNotYetValidError(f"Token is not valid yet (nbf={nbf})")

        if expected_nonce is not None:
            nonce = claims.get("nonce")
            if not isinstance(nonce, str) or not hmac.compare_digest(nonce.encode(), expected_nonce.encode()):
                raise NonceMismatchError("ID Token nonce does not match the stored nonce")

        if not claims.get("sub"):
            raise InvalidTokenError("Missing 'sub' claim")

    @staticmethod
    def validate_access_token_hash(claims: dict[str, Any], access_token: str, algorithm: str) -> None:
        """
        Checks the access token against the `at_hash` claim, when the claim is present.

        Raises:
            InvalidTokenError: If the hash does not match.
        """
        at_hash = claims.get("at_hash")
        if at_hash is None:
            return
        expected = create_half_hash(access_token, algorithm)
        if expected is None or not hmac.compare_digest(expected.encode(), str(at_hash).encode()):
            raise InvalidTokenError("Access token does not match the ID Token 'at_hash' claim")
