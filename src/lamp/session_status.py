"""Ephemeral "agent is working on X" records with read-time expiry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from lamp.errors import ValidationError
from lamp.models import SessionStatus
from lamp.task_store import TaskStore
from lamp.utils import STATUS_STALE_SECONDS, parse_timestamp, sanitize_id, utcnow

log = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "main"


class SessionStatusStore:
    """Upserts one row per session key and aggregates the live ones.

    Rows are never deleted; anything not refreshed within the staleness
    window is simply left out of ``get()``.
    """

    def __init__(
        self,
        store: TaskStore,
        stale_after: float = STATUS_STALE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._stale_after = timedelta(seconds=stale_after)
        self._clock = clock

    async def push(self, key: str | None, status: dict[str, Any]) -> SessionStatus:
        raw_key = key if key not in (None, "") else DEFAULT_SESSION_KEY
        session_key = sanitize_id(raw_key)
        if not session_key:
            raise ValidationError("sessionKey contains no valid characters")
        if not isinstance(status, dict):
            raise ValidationError("status must be an object")

        current_task = status.get("currentTask")
        record = SessionStatus(
            session_key=session_key,
            label=str(status.get("label") or session_key),
            active=bool(status.get("active", False)),
            current_task=str(current_task) if current_task not in (None, "") else None,
            model=str(status["model"]) if status.get("model") else None,
            updated_at=self._clock().isoformat(),
        )
        await self._store.upsert_session_status(record)
        return record

    async def get(self) -> dict[str, Any]:
        rows = await self._store.list_session_status()
        cutoff = self._clock() - self._stale_after
        sessions: list[SessionStatus] = []
        for r in rows:
            updated = parse_timestamp(r["updated_at"])
            if updated is None or updated < cutoff:
                continue
            sessions.append(SessionStatus(
                session_key=r["session_key"],
                label=r["label"] or "",
                active=bool(r["active"]),
                current_task=r["current_task"],
                model=r["model"],
                updated_at=r["updated_at"],
            ))

        first_active = next((s for s in sessions if s.active), None)
        return {
            "active": first_active is not None,
            "currentTask": first_active.current_task if first_active else None,
            "sessions": [s.to_api() for s in sessions],
        }
