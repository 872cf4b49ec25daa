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
OpenID Connect Relying Party engine: Authorization Code flow, ID Token validation and token refresh.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .async_context import get_current_identity
from .authenticator import OpenIdAuthenticator
from .config import OpenIdConfig
from .exceptions import CoreasonOpenIdError, ErrorKind, InvalidTokenError
from .jwks import JwksCache
from .models import AuthenticationResult, AuthenticationStatus, Identity, RedirectInstruction, TokenSet
from .store import MemorySessionStore, SessionContext, SessionStore, TokenStore

__all__ = [
    "AuthenticationResult",
    "AuthenticationStatus",
    "CoreasonOpenIdError",
    "ErrorKind",
    "Identity",
    "InvalidTokenError",
    "JwksCache",
    "MemorySessionStore",
    "OpenIdAuthenticator",
    "OpenIdConfig",
    "RedirectInstruction",
    "SessionContext",
    "SessionStore",
    "TokenSet",
    "TokenStore",
    "get_current_identity",
]
