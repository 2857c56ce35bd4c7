"""Single-process TTL cache of the full board listing."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from lamp.utils import CACHE_TTL_SECONDS

log = logging.getLogger(__name__)


class ReadCache:
    """Holds at most one ``{columns, tasks}`` snapshot.

    Writers call ``invalidate()`` after every successful commit; the TTL is
    only a safety net for a missed invalidation. Touched from the event loop
    only, so no locking.

    ``invalidate()`` also bumps a generation counter. A reader takes a
    ``token()`` before its store read and passes it to ``set()``; if a write
    invalidated the cache in between, the stale snapshot is discarded.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._snapshot: dict[str, Any] | None = None
        self._expires_at = 0.0
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def get(self) -> dict[str, Any] | None:
        """Return the cached snapshot, or None on a miss."""
        if self._snapshot is not None and self._clock() < self._expires_at:
            self.hits += 1
            return self._snapshot
        if self._snapshot is not None:
            log.debug("Board cache expired")
            self._snapshot = None
        self.misses += 1
        return None

    def token(self) -> int:
        return self._generation

    def set(self, snapshot: dict[str, Any], token: int | None = None) -> bool:
        """Store *snapshot*; returns False if *token* predates an invalidation."""
        if token is not None and token != self._generation:
            log.debug("Discarding board snapshot read before an invalidation")
            return False
        self._snapshot = snapshot
        self._expires_at = self._clock() + self._ttl
        return True

    def invalidate(self) -> None:
        self._generation += 1
        self._snapshot = None
        self._expires_at = 0.0

    @property
    def is_populated(self) -> bool:
        return self._snapshot is not None and self._clock() < self._expires_at
