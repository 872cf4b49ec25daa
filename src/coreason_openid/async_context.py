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
Async Context Management for the request-scoped caller Identity.
"""

from contextvars import ContextVar

from coreason_openid.models import Identity

_current_identity: ContextVar[Identity | None] = ContextVar("current_identity", default=None)


def get_current_identity() -> Identity | None:
    """
    Retrieve the authenticated caller of the current async task.

    Returns:
        Identity | None: The current identity, or None if not authenticated.
    """
    return _current_identity.get()


def set_current_identity(identity: Identity) -> None:
    _current_identity.set(identity)


def clear_current_identity() -> None:
    _current_identity.set(None)
