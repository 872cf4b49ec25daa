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
Time source used for token expiry and pending-state bookkeeping.
"""

import time
from typing import Protocol


class Clock(Protocol):
    """Protocol for a wall clock returning epoch seconds."""

    def now(self) -> float: ...


class SystemClock:
    """Clock backed by `time.time()`."""

    def now(self) -> float:
        return time.time()
