"""Wall-clock source, injected everywhere time is read."""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int:
        """Current wall time in whole epoch seconds."""
        ...

    def now_ms(self) -> int:
        """Current wall time in epoch milliseconds (used to seed timer ids)."""
        ...


class SystemClock:
    """Clock backed by ``time.time()``."""

    def now(self) -> int:
        return int(time.time())

    def now_ms(self) -> int:
        return int(time.time() * 1000)
