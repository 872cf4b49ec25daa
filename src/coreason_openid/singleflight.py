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
Per-key deduplication of concurrent async calls.

The first caller for a key (the leader) runs the call; callers arriving while it
is in flight wait for and share its outcome instead of issuing their own.
"""

from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

import anyio

T = TypeVar("T")


class _InFlight:
    def __init__(self) -> None:
        self.done = anyio.Event()
        self.result: Any = None
        self.error: BaseException | None = None
        self.abandoned = False


class SingleFlight(Generic[T]):
    """
    Registry of in-flight calls keyed by e.g. provider URI or session id.
    """

    def __init__(self) -> None:
        self._calls: dict[Hashable, _InFlight] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]], *, shield: bool = False) -> T:
        """
        Runs `fn` once for all concurrent callers of `key`.

        Args:
            key: The deduplication key.
            fn: The coroutine function to run.
            shield: If True, the call completes even when its leader is cancelled,
                so shared results still reach the other waiters.

        Returns:
            The result of `fn`, shared by every caller that joined the call.

        Raises:
            Exception: Whatever `fn` raised, re-raised in every joined caller.
        """
        while True:
            call = self._calls.get(key)
            if call is None:
                break
            await call.done.wait()
            if call.abandoned:
                # Leader was cancelled before finishing; the next caller takes over
                continue
            if call.error is not None:
                raise call.error
            return call.result  # type: ignore[no-any-return]

        call = _InFlight()
        self._calls[key] = call
        try:
            with anyio.CancelScope(shield=shield):
                try:
                    call.result = await fn()
                except Exception as e:
                    call.error = e
                    raise
        except BaseException:
            if call.error is None:
                call.abandoned = True
            raise
        finally:
            if self._calls.get(key) is call:
                del self._calls[key]
            call.done.set()

        return call.result  # type: ignore[no-any-return]
