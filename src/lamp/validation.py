"""Decoding and validation of loosely-typed request bodies.

Clients post arbitrary JSON. Everything here runs before any store call and
either returns a typed operation or raises ``ValidationError`` listing every
problem found, so a request is never partially applied.
"""

from __future__ import annotations

from typing import Any, Sequence

from lamp.errors import ValidationError
from lamp.models import (
    BOOL_FIELDS,
    FIELD_COLUMNS,
    KINDS,
    PRIORITIES,
    TEXT_FIELDS,
    AddTask,
    Comment,
    CommentOnTask,
    DeleteTask,
    TaskOperation,
    TaskSnapshot,
    UpdateTask,
)
from lamp.utils import COLUMNS, DEFAULT_COLUMN, sanitize_id

MAX_TITLE_LENGTH = 500
ACTIONS = ("add", "update", "delete", "comment")


def _validate_fields(
    data: dict[str, Any],
    reasons: list[str],
    columns: Sequence[str],
    require_title: bool = False,
) -> dict[str, Any]:
    """Validate the task fields present in *data*; return them keyed by store column."""
    fields: dict[str, Any] = {}

    if require_title and "title" not in data:
        reasons.append("title is required")

    for key, column in FIELD_COLUMNS.items():
        if key not in data:
            continue
        value = data[key]

        if key == "title":
            if not isinstance(value, str) or not value.strip():
                reasons.append("title must be a non-empty string")
                continue
            value = value.strip()
            if len(value) > MAX_TITLE_LENGTH:
                reasons.append(f"title must be at most {MAX_TITLE_LENGTH} characters")
                continue
        elif key == "column":
            if value not in columns:
                reasons.append(f"column must be one of: {', '.join(columns)}")
                continue
        elif key == "priority":
            if value not in PRIORITIES:
                reasons.append(f"priority must be one of: {', '.join(PRIORITIES)}")
                continue
        elif key == "type":
            if value not in KINDS:
                reasons.append(f"type must be one of: {', '.join(KINDS)}")
                continue
        elif key in BOOL_FIELDS:
            if isinstance(value, bool):
                pass
            elif isinstance(value, int) and value in (0, 1):
                value = bool(value)
            else:
                reasons.append(f"{key} must be a boolean")
                continue
        elif key in TEXT_FIELDS:
            if value is not None and not isinstance(value, str):
                reasons.append(f"{key} must be a string")
                continue
        elif key == "projectId":
            if value is not None and value != "":
                value = sanitize_id(value)
                if not value:
                    reasons.append("projectId contains no valid characters")
                    continue
            else:
                value = None
        elif key == "seenAt":
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                reasons.append("seenAt must be an integer timestamp")
                continue

        fields[column] = value

    return fields


def decode_author(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _require_task_id(value: Any, reasons: list[str], label: str = "taskId") -> str:
    if value is None or value == "":
        reasons.append(f"{label} is required")
        return ""
    task_id = sanitize_id(value)
    if not task_id:
        reasons.append(f"{label} contains no valid characters")
    return task_id


def decode_comment(data: Any, reasons: list[str], prefix: str = "comment") -> Comment | None:
    if not isinstance(data, dict):
        reasons.append(f"{prefix} must be an object")
        return None
    author = data.get("author")
    text = data.get("text")
    ok = True
    if not isinstance(author, str) or not author.strip():
        reasons.append(f"{prefix}.author is required")
        ok = False
    if not isinstance(text, str) or not text.strip():
        reasons.append(f"{prefix}.text must be a non-empty string")
        ok = False
    if not ok:
        return None
    return Comment(author=author.strip(), text=text)


def decode_operation(body: Any, columns: Sequence[str] = COLUMNS) -> TaskOperation:
    """Turn an ``{action, taskId, task, updates, comment, author}`` body into an operation."""
    if not isinstance(body, dict):
        raise ValidationError("request body must be an object")

    action = body.get("action")
    if action not in ACTIONS:
        raise ValidationError(f"action must be one of: {', '.join(ACTIONS)}")

    reasons: list[str] = []
    author = decode_author(body.get("author"))

    if action == "add":
        task = body.get("task")
        if not isinstance(task, dict):
            raise ValidationError("task must be an object")
        task_id = None
        if task.get("id") not in (None, ""):
            task_id = _require_task_id(task.get("id"), reasons, "task.id")
        fields = _validate_fields(task, reasons, columns, require_title=True)
        fields.setdefault("column_name", DEFAULT_COLUMN if DEFAULT_COLUMN in columns else columns[0])
        if reasons:
            raise ValidationError(reasons)
        return AddTask(task_id=task_id, fields=fields, author=author)

    task_id = _require_task_id(body.get("taskId"), reasons)

    if action == "update":
        updates = body.get("updates")
        if not isinstance(updates, dict):
            reasons.append("updates must be an object")
            raise ValidationError(reasons)
        fields = _validate_fields(updates, reasons, columns)
        if not reasons and not fields:
            reasons.append("updates contains no known fields")
        if reasons:
            raise ValidationError(reasons)
        return UpdateTask(task_id=task_id, fields=fields, author=author)

    if action == "delete":
        if reasons:
            raise ValidationError(reasons)
        return DeleteTask(task_id=task_id, author=author)

    comment = decode_comment(body.get("comment"), reasons)
    if reasons or comment is None:
        raise ValidationError(reasons)
    return CommentOnTask(task_id=task_id, comment=comment)


def decode_snapshots(tasks: Any, columns: Sequence[str] = COLUMNS) -> list[TaskSnapshot]:
    """Decode a bulk-save ``tasks`` array. Every snapshot must carry an id."""
    if not isinstance(tasks, list):
        raise ValidationError("tasks must be an array")

    reasons: list[str] = []
    snapshots: list[TaskSnapshot] = []
    seen: set[str] = set()

    for i, raw in enumerate(tasks):
        prefix = f"tasks[{i}]"
        if not isinstance(raw, dict):
            reasons.append(f"{prefix} must be an object")
            continue
        local: list[str] = []
        task_id = _require_task_id(raw.get("id"), local, "id")
        fields = _validate_fields(raw, local, columns)
        comments: list[Comment] = []
        raw_comments = raw.get("comments") or []
        if not isinstance(raw_comments, list):
            local.append("comments must be an array")
            raw_comments = []
        for j, raw_comment in enumerate(raw_comments):
            comment = decode_comment(raw_comment, local, prefix=f"comments[{j}]")
            if comment is not None:
                comments.append(comment)
        if task_id and task_id in seen:
            local.append(f"duplicate id '{task_id}'")
        seen.add(task_id)
        if local:
            reasons.extend(f"{prefix}: {r}" for r in local)
            continue
        snapshots.append(TaskSnapshot(task_id=task_id, fields=fields, comments=comments))

    if reasons:
        raise ValidationError(reasons)
    return snapshots
