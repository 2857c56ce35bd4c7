"""Bulk reconciliation of client task snapshots against the store.

Clients may hold a partial or stale view of the board, so a bulk save only
ever adds: new ids become inserts, known ids get a sparse patch of the
fields that actually differ, and comments are merged by ``(author, text)``.
Tasks missing from the submitted array are left alone; nothing is deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import aiosqlite

from lamp.audit_log import AuditLog
from lamp.errors import PartialReconciliationError, StoreError, ValidationError
from lamp.models import BOOL_FIELDS, FIELD_COLUMNS, TEXT_FIELDS, Comment, ReconcileResult, TaskSnapshot
from lamp.task_store import TaskStore
from lamp.utils import DEFAULT_COLUMN

log = logging.getLogger(__name__)

_BOOL_COLUMNS = frozenset(FIELD_COLUMNS[k] for k in BOOL_FIELDS)
_TEXT_COLUMNS = frozenset(FIELD_COLUMNS[k] for k in TEXT_FIELDS)


def _normalize(column: str, value: Any) -> Any:
    if column in _BOOL_COLUMNS:
        return bool(value)
    if column in _TEXT_COLUMNS:
        return value or ""
    return value


def changed_fields(submitted: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    """Return the submitted columns whose value differs from the stored row."""
    return {
        column: value
        for column, value in submitted.items()
        if _normalize(column, value) != _normalize(column, stored.get(column))
    }


@dataclass
class _Step:
    snapshot: TaskSnapshot
    insert: dict[str, Any] | None = None
    patch: dict[str, Any] = field(default_factory=dict)
    old_column: str | None = None
    title: str | None = None
    new_comments: list[Comment] = field(default_factory=list)


class Reconciler:
    def __init__(self, store: TaskStore, audit: AuditLog, default_column: str = DEFAULT_COLUMN) -> None:
        self._store = store
        self._audit = audit
        self._default_column = default_column

    async def _read_state(self) -> tuple[dict[str, dict[str, Any]], dict[str, set[tuple[str, str]]]]:
        try:
            rows = await self._store.read_all_tasks()
            comment_rows = await self._store.read_all_comments()
        except aiosqlite.Error as e:
            log.exception("Bulk reconciliation read failed")
            raise StoreError("could not read board state") from e

        tasks = {r["id"]: r for r in rows}
        comment_keys: dict[str, set[tuple[str, str]]] = {}
        for c in comment_rows:
            comment_keys.setdefault(c["task_id"], set()).add((c["author"], c["text"]))
        return tasks, comment_keys

    def _plan(
        self,
        snapshots: Sequence[TaskSnapshot],
        tasks: dict[str, dict[str, Any]],
        comment_keys: dict[str, set[tuple[str, str]]],
    ) -> list[_Step]:
        steps: list[_Step] = []
        missing_title: list[str] = []

        for snap in snapshots:
            stored = tasks.get(snap.task_id)
            step = _Step(snapshot=snap)
            if stored is None:
                if "title" not in snap.fields:
                    missing_title.append(snap.task_id)
                    continue
                insert = dict(snap.fields)
                insert.setdefault("column_name", self._default_column)
                step.insert = insert
                step.title = insert["title"]
            else:
                step.patch = changed_fields(snap.fields, stored)
                step.old_column = stored["column_name"]
                step.title = step.patch.get("title", stored["title"])

            known = comment_keys.setdefault(snap.task_id, set())
            for comment in snap.comments:
                if comment.key in known:
                    continue
                known.add(comment.key)
                step.new_comments.append(comment)

            if step.insert is not None or step.patch or step.new_comments:
                steps.append(step)

        if missing_title:
            raise ValidationError([f"new task '{tid}' requires a title" for tid in missing_title])
        return steps

    async def _apply(self, step: _Step, author: str | None, result: ReconcileResult) -> None:
        task_id = step.snapshot.task_id

        if step.insert is not None:
            await self._store.insert_task(task_id, step.insert)
            result.created += 1
            self._audit.record_later(
                self._audit.make_event("add", task_id, step.title, author=author)
            )
        elif step.patch:
            await self._store.patch_task(task_id, step.patch)
            result.updated += 1
            new_column = step.patch.get("column_name")
            if new_column is not None and new_column != step.old_column:
                result.moved += 1
                self._audit.record_later(self._audit.make_event(
                    "move", task_id, step.title, author=author,
                    from_column=step.old_column, to_column=new_column,
                ))

        for comment in step.new_comments:
            await self._store.insert_comment(task_id, comment.author, comment.text)
            result.comments_added += 1
            self._audit.record_later(
                self._audit.comment_event(task_id, step.title, comment.author, comment.text)
            )

    async def reconcile(self, snapshots: Sequence[TaskSnapshot], author: str | None = None) -> ReconcileResult:
        """Merge *snapshots* into the store without deleting anything.

        Raises StoreError if the initial read fails (nothing written),
        ValidationError if a new task lacks a title (nothing written), and
        PartialReconciliationError if a write fails part-way.
        """
        tasks, comment_keys = await self._read_state()
        steps = self._plan(snapshots, tasks, comment_keys)

        result = ReconcileResult()
        for step in steps:
            try:
                await self._apply(step, author, result)
            except aiosqlite.Error as e:
                log.exception("Bulk reconciliation stopped at task %s", step.snapshot.task_id)
                raise PartialReconciliationError(
                    f"bulk save stopped at task '{step.snapshot.task_id}'", result.as_dict(),
                ) from e

        log.info(
            "Reconciled %d snapshots: %d created, %d updated, %d moved, %d comments",
            len(snapshots), result.created, result.updated, result.moved, result.comments_added,
        )
        return result
