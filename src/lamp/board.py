"""Task board service: the operations exposed to transports.

Owns the read cache, audit log, fan-out, and session status store for one
store, and wires every successful write through audit → invalidate →
broadcast. Instances are created explicitly and handed to the web layer, so
tests can build isolated boards.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import aiosqlite

from lamp.audit_log import AuditLog
from lamp.errors import NotFoundError, PartialReconciliationError, StoreError, ValidationError
from lamp.fanout import ChangeFanout, Subscriber
from lamp.models import (
    FIELD_COLUMNS,
    AddTask,
    Comment,
    CommentOnTask,
    DeleteTask,
    Task,
    TaskOperation,
    UpdateTask,
)
from lamp.read_cache import ReadCache
from lamp.reconciler import Reconciler
from lamp.session_status import SessionStatusStore
from lamp.task_store import TaskStore
from lamp.utils import COLUMNS, HISTORY_LIMIT, new_task_id
from lamp.validation import decode_author, decode_operation, decode_snapshots

log = logging.getLogger(__name__)

_WIRE_NAMES = {column: key for key, column in FIELD_COLUMNS.items()}


@contextmanager
def _store_write(action: str, task_id: str | None = None) -> Iterator[None]:
    """Translate storage failures on a write path into StoreError."""
    try:
        yield
    except aiosqlite.Error as e:
        log.exception("Store write failed during %s %s", action, task_id or "")
        raise StoreError("store unavailable") from e


class TaskBoard:
    def __init__(
        self,
        store: TaskStore,
        cache: ReadCache | None = None,
        columns: Sequence[str] = COLUMNS,
        audit: AuditLog | None = None,
        fanout: ChangeFanout | None = None,
        status: SessionStatusStore | None = None,
    ) -> None:
        self.store = store
        self.columns = tuple(columns)
        self.cache = cache or ReadCache()
        self.audit = audit or AuditLog(store)
        self.fanout = fanout or ChangeFanout(self.cache)
        self.status = status or SessionStatusStore(store)
        self.reconciler = Reconciler(
            store, self.audit,
            default_column="inbox" if "inbox" in self.columns else self.columns[0],
        )

    # ── Reads ──────────────────────────────────────────────────────────────

    def _empty_snapshot(self) -> dict[str, Any]:
        return {"columns": list(self.columns), "tasks": []}

    async def get_tasks(self) -> dict[str, Any]:
        """Return ``{columns, tasks}``; degrades to an empty board on store failure."""
        cached = self.cache.get()
        if cached is not None:
            return cached

        token = self.cache.token()
        try:
            rows = await self.store.read_all_tasks()
            comment_rows = await self.store.read_all_comments()
        except aiosqlite.Error:
            log.warning("getTasks failed; serving empty board", exc_info=True)
            return self._empty_snapshot()

        comments: dict[str, list[Comment]] = {}
        for c in comment_rows:
            comments.setdefault(c["task_id"], []).append(
                Comment(author=c["author"], text=c["text"], time=c["created_at"])
            )
        snapshot = {
            "columns": list(self.columns),
            "tasks": [Task.from_row(r, comments.get(r["id"])).to_api() for r in rows],
        }
        self.cache.set(snapshot, token)
        log.debug("Fetched %d tasks from store", len(rows))
        return snapshot

    async def get_history(self, author: str | None = None, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        try:
            events = await self.audit.history(author, limit)
        except aiosqlite.Error:
            log.warning("getHistory failed; serving empty history", exc_info=True)
            return []
        return [e.to_api() for e in events]

    # ── Single-task operations ─────────────────────────────────────────────

    async def apply_task_operation(self, body: Any) -> dict[str, Any]:
        """Decode, validate and execute one ``{action, ...}`` request body."""
        op = decode_operation(body, self.columns)
        return await self.execute(op)

    async def execute(self, op: TaskOperation) -> dict[str, Any]:
        if isinstance(op, AddTask):
            return await self._add(op)
        if isinstance(op, UpdateTask):
            return await self._update(op)
        if isinstance(op, DeleteTask):
            return await self._delete(op)
        if isinstance(op, CommentOnTask):
            return await self._comment(op)
        raise ValidationError(f"unsupported operation {type(op).__name__}")

    async def _read_existing(self, task_id: str) -> dict[str, Any]:
        with _store_write("read", task_id):
            row = await self.store.read_task(task_id)
        if row is None:
            raise NotFoundError(task_id)
        return row

    def _committed(self, kind: str, payload: dict[str, Any]) -> None:
        self.cache.invalidate()
        self.fanout.publish(kind, payload)

    async def _add(self, op: AddTask) -> dict[str, Any]:
        task_id = op.task_id or new_task_id()
        with _store_write("add", task_id):
            if await self.store.read_task(task_id) is not None:
                raise ValidationError(f"task '{task_id}' already exists")
            try:
                row = await self.store.insert_task(task_id, op.fields)
            except aiosqlite.IntegrityError:
                raise ValidationError(f"task '{task_id}' already exists") from None

        log.info("Created task %s: %s", task_id, row["title"])
        self.audit.record_later(self.audit.make_event("add", task_id, row["title"], author=op.author))
        self._committed("task_added", {"task": Task.from_row(row).to_api()})
        return {"ok": True, "taskId": task_id}

    async def _update(self, op: UpdateTask) -> dict[str, Any]:
        current = await self._read_existing(op.task_id)
        with _store_write("update", op.task_id):
            matched = await self.store.patch_task(op.task_id, op.fields)
        if not matched:
            raise NotFoundError(op.task_id)

        title = op.fields.get("title", current["title"])
        new_column = op.fields.get("column_name")
        if new_column is not None and new_column != current["column_name"]:
            self.audit.record_later(self.audit.make_event(
                "move", op.task_id, title, author=op.author,
                from_column=current["column_name"], to_column=new_column,
            ))

        self._committed("task_updated", {
            "taskId": op.task_id,
            "updates": {_WIRE_NAMES.get(k, k): v for k, v in op.fields.items()},
        })
        return {"ok": True, "taskId": op.task_id}

    async def _delete(self, op: DeleteTask) -> dict[str, Any]:
        current = await self._read_existing(op.task_id)
        with _store_write("delete", op.task_id):
            deleted = await self.store.delete_task(op.task_id)
        if not deleted:
            raise NotFoundError(op.task_id)

        log.info("Deleted task %s", op.task_id)
        self.audit.record_later(
            self.audit.make_event("delete", op.task_id, current["title"], author=op.author)
        )
        self._committed("task_deleted", {"taskId": op.task_id})
        return {"ok": True, "taskId": op.task_id}

    async def _comment(self, op: CommentOnTask) -> dict[str, Any]:
        current = await self._read_existing(op.task_id)
        with _store_write("comment", op.task_id):
            existing = await self.store.list_comments(op.task_id)
            if any((c["author"], c["text"]) == op.comment.key for c in existing):
                # Already stored under the same (author, text).
                return {"ok": True, "taskId": op.task_id, "duplicate": True}
            try:
                row = await self.store.insert_comment(op.task_id, op.comment.author, op.comment.text)
            except aiosqlite.IntegrityError:
                # Task deleted between the read and the insert.
                raise NotFoundError(op.task_id) from None

        self.audit.record_later(self.audit.comment_event(
            op.task_id, current["title"], op.comment.author, op.comment.text,
        ))
        self._committed("comment_added", {
            "taskId": op.task_id,
            "comment": {"author": row["author"], "text": row["text"], "time": row["created_at"]},
        })
        return {"ok": True, "taskId": op.task_id}

    # ── Bulk reconciliation ────────────────────────────────────────────────

    async def apply_bulk_reconciliation(self, tasks: Any, author: str | None = None) -> dict[str, Any]:
        """Merge a client's task array into the store. Never deletes."""
        snapshots = decode_snapshots(tasks, self.columns)
        try:
            result = await self.reconciler.reconcile(snapshots, author=decode_author(author))
        except PartialReconciliationError as e:
            if e.any_applied:
                self._committed("sync", {"partial": True, **e.applied})
            raise

        counts = result.as_dict()
        if any(counts.values()):
            self._committed("sync", counts)
        return {"ok": True, **counts}

    # ── Session status ─────────────────────────────────────────────────────

    async def get_session_status(self) -> dict[str, Any]:
        try:
            return await self.status.get()
        except aiosqlite.Error:
            log.warning("getSessionStatus failed; reporting inactive", exc_info=True)
            return {"active": False, "currentTask": None, "sessions": []}

    async def push_session_status(self, key: str | None, status: dict[str, Any]) -> dict[str, Any]:
        with _store_write("status", key):
            record = await self.status.push(key, status)
        return {"ok": True, "sessionKey": record.session_key}

    # ── Subscriptions ──────────────────────────────────────────────────────

    def subscribe(self, name: str = "") -> Subscriber:
        return self.fanout.subscribe(name)

    def unsubscribe(self, sub: Subscriber) -> None:
        self.fanout.unsubscribe(sub)

    async def close(self) -> None:
        self.fanout.close()
        await self.audit.drain()
        await self.store.close()
