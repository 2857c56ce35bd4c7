"""SQLite-backed storage for board tasks, comments, audit events, and agent status."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from lamp.models import FIELD_COLUMNS, TASK_DEFAULTS, AuditEvent, SessionStatus
from lamp.utils import DB_PATH, HISTORY_LIMIT

TASK_COLUMNS = (
    "id, title, description, success_criteria, user_journey, column_name, "
    "priority, task_type, needs_laptop, needs_mobile, archived, archived_at, "
    "project_id, celebration_image, seen_at, created_at, updated_at"
)
_WRITABLE_COLUMNS = frozenset(FIELD_COLUMNS.values()) | {"archived_at"}


class TaskStore:
    """Asynchronous SQLite store using aiosqlite.

    Pure translation layer: no caching and no business rules. Errors from
    aiosqlite propagate to the caller unchanged.
    """

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self._db_path = Path(db_path)
        self._schema_ensured = False
        self._conn: aiosqlite.Connection | None = None

    async def _get_conn(self) -> aiosqlite.Connection:
        """Return persistent connection, creating it lazily on first use."""
        if self._conn is not None:
            return self._conn
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        if not self._schema_ensured:
            self._schema_ensured = True
            await self._ensure_schema(conn)
        self._conn = conn
        return conn

    async def close(self) -> None:
        """Close the persistent connection. Call on shutdown."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _ensure_schema(self, conn: aiosqlite.Connection) -> None:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS tasks (
                id                TEXT PRIMARY KEY,
                title             TEXT NOT NULL,
                description       TEXT,
                success_criteria  TEXT,
                user_journey      TEXT,
                column_name       TEXT NOT NULL DEFAULT 'inbox',
                priority          TEXT DEFAULT 'medium',
                task_type         TEXT DEFAULT 'single',
                needs_laptop      INTEGER DEFAULT 0,
                needs_mobile      INTEGER DEFAULT 0,
                archived          INTEGER DEFAULT 0,
                archived_at       TEXT,
                project_id        TEXT,
                celebration_image TEXT,
                seen_at           INTEGER,
                created_at        TEXT NOT NULL,
                updated_at        TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks(column_name);
            CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);

            CREATE TABLE IF NOT EXISTS comments (
                id         INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id    TEXT NOT NULL,
                author     TEXT NOT NULL,
                text       TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_comments_task ON comments(task_id);

            CREATE TABLE IF NOT EXISTS lamp_audit (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at  TEXT NOT NULL,
                event_type  TEXT NOT NULL,
                task_id     TEXT NOT NULL,
                task_title  TEXT,
                from_column TEXT,
                to_column   TEXT,
                author      TEXT,
                metadata    TEXT,
                service     TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_lamp_audit_created_at
                ON lamp_audit(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_lamp_audit_author
                ON lamp_audit(author, created_at DESC);

            CREATE TABLE IF NOT EXISTS session_status (
                session_key  TEXT PRIMARY KEY,
                label        TEXT,
                active       INTEGER DEFAULT 0,
                current_task TEXT,
                model        TEXT,
                updated_at   TEXT NOT NULL
            );
        """)
        await conn.commit()

    # ── Change feed ────────────────────────────────────────────────────────

    async def data_version(self) -> int:
        """SQLite's data_version: changes only when another connection commits."""
        conn = await self._get_conn()
        row = await (await conn.execute("PRAGMA data_version")).fetchone()
        return int(row[0])

    # ── Tasks ──────────────────────────────────────────────────────────────

    async def read_all_tasks(self) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            f"SELECT {TASK_COLUMNS} FROM tasks ORDER BY created_at DESC, id"
        )).fetchall()
        return [dict(r) for r in rows]

    async def read_task(self, task_id: str) -> dict[str, Any] | None:
        conn = await self._get_conn()
        row = await (await conn.execute(
            f"SELECT {TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,),
        )).fetchone()
        return dict(row) if row else None

    async def insert_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert a new task row; missing columns take their defaults."""
        now = datetime.now(timezone.utc).isoformat()
        row: dict[str, Any] = dict(TASK_DEFAULTS)
        row.update({k: v for k, v in fields.items() if k in _WRITABLE_COLUMNS})
        if row.get("archived") and not row.get("archived_at"):
            row["archived_at"] = now
        row["id"] = task_id
        row["created_at"] = now
        row["updated_at"] = now
        columns = list(row)
        conn = await self._get_conn()
        await conn.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [row[c] for c in columns],
        )
        await conn.commit()
        return row

    async def patch_task(self, task_id: str, fields: dict[str, Any]) -> bool:
        """Write only the given columns. Returns False when no row matched."""
        now = datetime.now(timezone.utc).isoformat()
        sets = ["updated_at = ?"]
        params: list[Any] = [now]
        for column, value in fields.items():
            if column not in _WRITABLE_COLUMNS:
                raise ValueError(f"not a writable task column: {column}")
            sets.append(f"{column} = ?")
            params.append(value)
        if "archived" in fields and "archived_at" not in fields:
            # Keep the first archive time; clear it on unarchive.
            sets.append("archived_at = CASE WHEN ? THEN COALESCE(archived_at, ?) ELSE NULL END")
            params.extend([int(bool(fields["archived"])), now])
        params.append(task_id)
        conn = await self._get_conn()
        cur = await conn.execute(
            f"UPDATE tasks SET {', '.join(sets)} WHERE id = ?",
            params,
        )
        await conn.commit()
        return cur.rowcount > 0

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task; its comments go with it via ON DELETE CASCADE."""
        conn = await self._get_conn()
        cur = await conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        await conn.commit()
        return cur.rowcount > 0

    # ── Comments ───────────────────────────────────────────────────────────

    async def read_all_comments(self) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            "SELECT id, task_id, author, text, created_at "
            "FROM comments ORDER BY created_at ASC, id ASC"
        )).fetchall()
        return [dict(r) for r in rows]

    async def list_comments(self, task_id: str) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            "SELECT id, task_id, author, text, created_at "
            "FROM comments WHERE task_id = ? ORDER BY created_at ASC, id ASC",
            (task_id,),
        )).fetchall()
        return [dict(r) for r in rows]

    async def insert_comment(self, task_id: str, author: str, text: str) -> dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        conn = await self._get_conn()
        cur = await conn.execute(
            "INSERT INTO comments (task_id, author, text, created_at) VALUES (?, ?, ?, ?)",
            (task_id, author, text, now),
        )
        await conn.commit()
        return {"id": cur.lastrowid, "task_id": task_id, "author": author,
                "text": text, "created_at": now}

    # ── Audit ──────────────────────────────────────────────────────────────

    async def insert_audit_event(self, event: AuditEvent) -> int:
        created_at = event.time or datetime.now(timezone.utc).isoformat()
        conn = await self._get_conn()
        cur = await conn.execute(
            "INSERT INTO lamp_audit (created_at, event_type, task_id, task_title, "
            "from_column, to_column, author, metadata, service) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                created_at, event.type, event.task_id, event.task_title,
                event.from_column, event.to_column, event.author,
                json.dumps(event.metadata) if event.metadata is not None else None,
                event.service,
            ),
        )
        await conn.commit()
        return cur.lastrowid

    async def list_audit_events(
        self, author: str | None = None, limit: int = HISTORY_LIMIT,
    ) -> list[dict[str, Any]]:
        """Newest-first audit rows, optionally for a single author."""
        conn = await self._get_conn()
        if author is not None:
            rows = await (await conn.execute(
                "SELECT * FROM lamp_audit WHERE author = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (author, limit),
            )).fetchall()
        else:
            rows = await (await conn.execute(
                "SELECT * FROM lamp_audit ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else None
            result.append(d)
        return result

    # ── Session Status ─────────────────────────────────────────────────────

    async def upsert_session_status(self, status: SessionStatus) -> None:
        updated_at = status.updated_at or datetime.now(timezone.utc).isoformat()
        conn = await self._get_conn()
        await conn.execute(
            """INSERT INTO session_status
                   (session_key, label, active, current_task, model, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(session_key) DO UPDATE SET
                   label = excluded.label,
                   active = excluded.active,
                   current_task = excluded.current_task,
                   model = excluded.model,
                   updated_at = excluded.updated_at""",
            (status.session_key, status.label, int(status.active),
             status.current_task, status.model, updated_at),
        )
        await conn.commit()

    async def list_session_status(self) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            "SELECT session_key, label, active, current_task, model, updated_at "
            "FROM session_status ORDER BY updated_at DESC"
        )).fetchall()
        return [dict(r) for r in rows]
