"""Background poller that turns the store's change feed into fan-out events."""

from __future__ import annotations

import asyncio
import logging

from lamp.fanout import ChangeFanout
from lamp.task_store import TaskStore

log = logging.getLogger(__name__)


class ChangeWatcher:
    """Periodically polls SQLite's data_version and broadcasts external commits.

    data_version does not move for commits made on the watcher's own
    connection, so local writes (already broadcast by the board) are not
    reported twice.
    """

    def __init__(self, store: TaskStore, fanout: ChangeFanout) -> None:
        self._store = store
        self._fanout = fanout
        self._last_version: int | None = None

    async def run_forever(self, interval: float = 2.0) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                log.exception("ChangeWatcher error")
            await asyncio.sleep(interval)

    async def poll_once(self) -> bool:
        """Return True when an external change was detected and broadcast."""
        version = await self._store.data_version()
        previous = self._last_version
        self._last_version = version
        if previous is None or version == previous:
            return False
        log.info("External store change detected (data_version %s -> %s)", previous, version)
        self._fanout.notify_external({"source": "store"})
        return True
