"""Live subscriber registry and change broadcast."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from lamp.read_cache import ReadCache

log = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 32


class Subscriber:
    """One live connection. Holds a bounded queue of pending events.

    ``offer`` never blocks: when the consumer falls behind, the oldest event
    is dropped so the connection always ends on the latest state.
    """

    def __init__(self, name: str = "", maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.name = name
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def offer(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError(f"subscriber {self.name or id(self)} is closed")
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def next_event(self) -> dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True


class ChangeFanout:
    """Pushes ``{type, payload}`` events to every live subscriber.

    Every publish invalidates the read cache first, so the next read reflects
    the change even for clients that are not subscribed.
    """

    def __init__(self, cache: ReadCache) -> None:
        self._cache = cache
        self._subscribers: set[Subscriber] = set()
        self.published = 0

    def subscribe(self, name: str = "") -> Subscriber:
        sub = Subscriber(name)
        self._subscribers.add(sub)
        log.debug("Subscriber %s connected (%d live)", name, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        sub.close()
        self._subscribers.discard(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, kind: str, payload: dict[str, Any] | None = None) -> int:
        """Invalidate the cache and hand the event to every subscriber.

        Returns the number of subscribers the event reached. A subscriber
        whose push fails is dropped from the registry.
        """
        self._cache.invalidate()
        self.published += 1
        event = {"type": kind, "payload": payload or {}}
        delivered = 0
        for sub in list(self._subscribers):
            try:
                sub.offer(event)
                delivered += 1
            except Exception:
                log.debug("Dropping subscriber %s after failed push", sub.name)
                self.unsubscribe(sub)
        return delivered

    def notify_external(self, payload: dict[str, Any] | None = None) -> int:
        """Entry point for changes committed outside this process."""
        return self.publish("external_change", payload)

    def close(self) -> None:
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
