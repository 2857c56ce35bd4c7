"""Board records and the tagged union of task operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

PRIORITIES = ("low", "medium", "high")
KINDS = ("single", "recurring")
AUDIT_TYPES = ("add", "move", "delete", "comment")

# Wire name -> store column for every task field a client may write.
FIELD_COLUMNS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "successCriteria": "success_criteria",
    "userJourney": "user_journey",
    "column": "column_name",
    "priority": "priority",
    "type": "task_type",
    "needsLaptop": "needs_laptop",
    "needsMobile": "needs_mobile",
    "archived": "archived",
    "projectId": "project_id",
    "image": "celebration_image",
    "seenAt": "seen_at",
}
BOOL_FIELDS = frozenset({"needsLaptop", "needsMobile", "archived"})
TEXT_FIELDS = frozenset({"description", "successCriteria", "userJourney", "image"})

TASK_DEFAULTS: dict[str, Any] = {
    "description": None,
    "success_criteria": None,
    "user_journey": None,
    "priority": "medium",
    "task_type": "single",
    "needs_laptop": False,
    "needs_mobile": False,
    "archived": False,
    "project_id": None,
    "celebration_image": None,
    "seen_at": None,
}


@dataclass
class Comment:
    author: str
    text: str
    time: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.author, self.text)

    def to_api(self) -> dict[str, Any]:
        return {"author": self.author, "text": self.text, "time": self.time}


@dataclass
class Task:
    id: str
    title: str
    column: str
    description: str = ""
    success_criteria: str = ""
    user_journey: str = ""
    priority: str = "medium"
    kind: str = "single"
    needs_laptop: bool = False
    needs_mobile: bool = False
    archived: bool = False
    archived_at: str | None = None
    project_id: str | None = None
    image: str | None = None
    seen_at: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    comments: list[Comment] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any], comments: list[Comment] | None = None) -> "Task":
        return cls(
            id=row["id"],
            title=row["title"],
            column=row["column_name"],
            description=row.get("description") or "",
            success_criteria=row.get("success_criteria") or "",
            user_journey=row.get("user_journey") or "",
            priority=row.get("priority") or "medium",
            kind=row.get("task_type") or "single",
            needs_laptop=bool(row.get("needs_laptop")),
            needs_mobile=bool(row.get("needs_mobile")),
            archived=bool(row.get("archived")),
            archived_at=row.get("archived_at"),
            project_id=row.get("project_id"),
            image=row.get("celebration_image"),
            seen_at=row.get("seen_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            comments=list(comments or []),
        )

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "successCriteria": self.success_criteria,
            "userJourney": self.user_journey,
            "column": self.column,
            "priority": self.priority,
            "type": self.kind,
            "needsLaptop": self.needs_laptop,
            "needsMobile": self.needs_mobile,
            "archived": self.archived,
            "archivedAt": self.archived_at,
            "projectId": self.project_id,
            "image": self.image,
            "seenAt": self.seen_at,
            "created": self.created_at.split("T")[0] if self.created_at else "",
            "updated": self.updated_at,
            "comments": [c.to_api() for c in self.comments],
        }


@dataclass
class AuditEvent:
    type: str
    task_id: str
    task_title: str | None
    author: str
    from_column: str | None = None
    to_column: str | None = None
    metadata: dict[str, Any] | None = None
    time: str | None = None
    service: str | None = None
    id: int | None = None

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "taskId": self.task_id,
            "taskTitle": self.task_title,
            "from": self.from_column,
            "to": self.to_column,
            "author": self.author,
            "time": self.time,
            "service": self.service,
            "metadata": self.metadata,
        }


@dataclass
class SessionStatus:
    session_key: str
    label: str = ""
    active: bool = False
    current_task: str | None = None
    model: str | None = None
    updated_at: str | None = None

    def to_api(self) -> dict[str, Any]:
        return {
            "sessionKey": self.session_key,
            "label": self.label,
            "active": self.active,
            "currentTask": self.current_task,
            "model": self.model,
            "updatedAt": self.updated_at,
        }


# ── Operations ─────────────────────────────────────────────────────────────


@dataclass
class AddTask:
    """Create a task. ``fields`` uses store column names, already validated."""

    task_id: str | None
    fields: dict[str, Any]
    author: str | None = None


@dataclass
class UpdateTask:
    """Sparse patch: only the keys present in ``fields`` are written."""

    task_id: str
    fields: dict[str, Any]
    author: str | None = None


@dataclass
class DeleteTask:
    task_id: str
    author: str | None = None


@dataclass
class CommentOnTask:
    task_id: str
    comment: Comment


TaskOperation = Union[AddTask, UpdateTask, DeleteTask, CommentOnTask]


@dataclass
class TaskSnapshot:
    """One task as submitted in a bulk save; ``fields`` holds only sent keys."""

    task_id: str
    fields: dict[str, Any]
    comments: list[Comment] = field(default_factory=list)


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    moved: int = 0
    comments_added: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "moved": self.moved,
            "comments_added": self.comments_added,
        }
