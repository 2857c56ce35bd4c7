"""Fixed-window request counters guarding expensive downstream calls."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from lamp.errors import RateLimitError
from lamp.utils import RATE_LIMITS, RATE_WINDOW_SECONDS

log = logging.getLogger(__name__)


@dataclass
class _Window:
    started_at: float
    count: int


class RateLimiter:
    """Per ``(identity, category)`` counter that resets every window."""

    def __init__(
        self,
        limits: dict[str, int] | None = None,
        window: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(RATE_LIMITS if limits is None else limits)
        self._limits.setdefault("default", RATE_LIMITS["default"])
        self._window = window
        self._clock = clock
        self._windows: dict[tuple[str, str], _Window] = {}

    def limit_for(self, category: str) -> int:
        return self._limits.get(category, self._limits["default"])

    def check(self, identity: str, category: str = "default") -> int:
        """Count one request. Returns the calls left in this window.

        Raises RateLimitError with the remaining window time once the
        category's ceiling is reached.
        """
        now = self._clock()
        key = (identity, category)
        window = self._windows.get(key)
        limit = self.limit_for(category)

        if window is None or now - window.started_at >= self._window:
            self._windows[key] = _Window(started_at=now, count=1)
            return limit - 1

        if window.count >= limit:
            retry_after = self._window - (now - window.started_at)
            log.warning("Rate limit hit: %s on %s", identity, category)
            raise RateLimitError(category, retry_after)

        window.count += 1
        return limit - window.count

    def sweep(self) -> int:
        """Drop elapsed windows; returns how many were removed."""
        now = self._clock()
        stale = [k for k, w in self._windows.items() if now - w.started_at >= self._window]
        for k in stale:
            del self._windows[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)

    async def run_forever(self, interval: float = 60) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.sweep()
                if removed:
                    log.debug("Swept %d rate-limit windows", removed)
            except Exception:
                log.exception("RateLimiter sweep error")
