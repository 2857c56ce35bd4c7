"""Append-only audit trail of board mutations.

Audit writes are subordinate to the mutation they describe: a failed write
is logged and dropped, never rolled back against the task change.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from lamp.errors import AuditWriteError
from lamp.models import AuditEvent
from lamp.task_store import TaskStore
from lamp.utils import (
    AGENT_AUTHOR,
    AGENT_COLUMNS,
    DONE_COLUMN,
    HISTORY_LIMIT,
    HUMAN_AUTHOR,
    SERVICE_NAME,
    UNKNOWN_AUTHOR,
)

log = logging.getLogger(__name__)

COMMENT_EXCERPT_LENGTH = 100


def resolve_move_author(
    to_column: str,
    explicit: str | None = None,
    *,
    human: str = HUMAN_AUTHOR,
    agent: str = AGENT_AUTHOR,
    done_column: str = DONE_COLUMN,
    agent_columns: frozenset[str] = AGENT_COLUMNS,
) -> str:
    """Pick the author of a column move when the caller did not name one.

    Moves into the done column are the human's call; moves into review or
    in-progress come from the agent; anything else is unknown.
    """
    if explicit and explicit != UNKNOWN_AUTHOR:
        return explicit
    if to_column == done_column:
        return human
    if to_column in agent_columns:
        return agent
    return UNKNOWN_AUTHOR


class AuditLog:
    """Writer/reader for ``lamp_audit`` rows. No update or delete is exposed."""

    def __init__(
        self,
        store: TaskStore,
        service: str = SERVICE_NAME,
        human: str = HUMAN_AUTHOR,
        agent: str = AGENT_AUTHOR,
    ) -> None:
        self._store = store
        self._service = service
        self.human = human
        self.agent = agent
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    # ── Event construction ─────────────────────────────────────────────────

    def make_event(
        self,
        type: str,
        task_id: str,
        task_title: str | None,
        author: str | None = None,
        from_column: str | None = None,
        to_column: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEvent:
        if type == "move":
            author = resolve_move_author(
                to_column or "", author, human=self.human, agent=self.agent,
            )
        elif not author:
            author = self.human
        return AuditEvent(
            type=type,
            task_id=task_id,
            task_title=task_title,
            author=author,
            from_column=from_column,
            to_column=to_column,
            metadata=metadata,
            time=datetime.now(timezone.utc).isoformat(),
            service=self._service,
        )

    def comment_event(self, task_id: str, task_title: str | None, author: str, text: str) -> AuditEvent:
        return self.make_event(
            "comment", task_id, task_title, author=author,
            metadata={"text": text[:COMMENT_EXCERPT_LENGTH]},
        )

    # ── Writes ─────────────────────────────────────────────────────────────

    async def _write(self, event: AuditEvent) -> int:
        try:
            return await self._store.insert_audit_event(event)
        except Exception as e:
            raise AuditWriteError(f"audit write failed for {event.type} {event.task_id}") from e

    async def record(self, event: AuditEvent) -> bool:
        """Write one event. Returns False (and logs) instead of raising."""
        try:
            event.id = await self._write(event)
        except AuditWriteError:
            self.failures += 1
            log.exception("Audit log error")
            return False
        log.info("Audit: %s %s by %s", event.type, event.task_id, event.author)
        return True

    def record_later(self, event: AuditEvent) -> asyncio.Task:
        """Spawn ``record`` without awaiting it; ``drain()`` waits for stragglers."""
        task = asyncio.create_task(self.record(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── Reads ──────────────────────────────────────────────────────────────

    async def history(self, author: str | None = None, limit: int = HISTORY_LIMIT) -> list[AuditEvent]:
        """Newest-first events. ``author='all'`` or empty means no filter."""
        await self.drain()
        if author in (None, "", "all"):
            author = None
        limit = max(1, min(limit, HISTORY_LIMIT))
        rows = await self._store.list_audit_events(author, limit)
        return [
            AuditEvent(
                id=r["id"],
                type=r["event_type"],
                task_id=r["task_id"],
                task_title=r["task_title"],
                author=r["author"],
                from_column=r["from_column"],
                to_column=r["to_column"],
                metadata=r["metadata"],
                time=r["created_at"],
                service=r["service"],
            )
            for r in rows
        ]
