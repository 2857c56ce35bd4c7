"""Tests for non-destructive bulk reconciliation."""

import aiosqlite
import pytest
import pytest_asyncio

from lamp.audit_log import AuditLog
from lamp.errors import PartialReconciliationError, StoreError, ValidationError
from lamp.models import Comment, TaskSnapshot
from lamp.reconciler import Reconciler, changed_fields
from lamp.task_store import TaskStore


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TaskStore(db_path=tmp_path / "reconcile.db")
    yield s
    await s.close()


@pytest_asyncio.fixture
async def audit(store):
    log = AuditLog(store)
    yield log
    await log.drain()


@pytest.fixture
def reconciler(store, audit):
    return Reconciler(store, audit, default_column="inbox")


def snap(task_id, comments=(), **fields):
    return TaskSnapshot(task_id=task_id, fields=fields, comments=list(comments))


# ── Field diffing ───────────────────────────────────────────────────────────


class TestChangedFields:
    def test_identical_values_dropped(self):
        stored = {"title": "A", "column_name": "todo", "needs_laptop": 0, "description": None}
        submitted = {"title": "A", "column_name": "todo", "needs_laptop": False, "description": ""}
        assert changed_fields(submitted, stored) == {}

    def test_differences_kept(self):
        stored = {"title": "A", "column_name": "todo", "archived": 0}
        submitted = {"title": "A", "column_name": "done", "archived": True}
        assert changed_fields(submitted, stored) == {"column_name": "done", "archived": True}


# ── Reconciliation ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_creates_new_tasks_in_default_column(reconciler, store):
    result = await reconciler.reconcile([snap("t1", title="New")])

    assert result.as_dict() == {"created": 1, "updated": 0, "moved": 0, "comments_added": 0}
    row = await store.read_task("t1")
    assert row["column_name"] == "inbox"


@pytest.mark.asyncio
async def test_never_deletes_absent_tasks(reconciler, store):
    await store.insert_task("t1", {"title": "One", "column_name": "todo"})
    await store.insert_task("t2", {"title": "Two", "column_name": "todo"})

    await reconciler.reconcile([snap("t1", title="One")])
    await reconciler.reconcile([])

    assert {r["id"] for r in await store.read_all_tasks()} == {"t1", "t2"}


@pytest.mark.asyncio
async def test_second_identical_save_is_a_no_op(reconciler, store, audit):
    payload = [snap(
        "t1", [Comment("human", "hello")],
        title="One", column_name="todo", needs_laptop=True,
    )]

    first = await reconciler.reconcile(payload)
    before = await store.read_task("t1")
    second = await reconciler.reconcile(payload)

    assert first.created == 1
    assert first.comments_added == 1
    assert second.as_dict() == {"created": 0, "updated": 0, "moved": 0, "comments_added": 0}
    assert await store.read_task("t1") == before
    assert len(await store.list_comments("t1")) == 1
    assert len(await audit.history()) == 2


@pytest.mark.asyncio
async def test_sparse_patch_keeps_unsent_fields(reconciler, store):
    await store.insert_task("t1", {
        "title": "One", "column_name": "todo", "description": "keep",
    })

    result = await reconciler.reconcile([snap("t1", column_name="review")])

    assert result.updated == 1
    assert result.moved == 1
    row = await store.read_task("t1")
    assert row["column_name"] == "review"
    assert row["description"] == "keep"


@pytest.mark.asyncio
async def test_move_emits_audit_with_inferred_author(reconciler, store, audit):
    await store.insert_task("t1", {"title": "One", "column_name": "review"})

    await reconciler.reconcile([snap("t1", column_name="done")])

    [event] = await audit.history()
    assert event.type == "move"
    assert event.from_column == "review"
    assert event.to_column == "done"
    assert event.author == "human"


@pytest.mark.asyncio
async def test_explicit_author_overrides_inference(reconciler, store, audit):
    await store.insert_task("t1", {"title": "One", "column_name": "review"})
    await reconciler.reconcile([snap("t1", column_name="done")], author="agent")
    [event] = await audit.history()
    assert event.author == "agent"


@pytest.mark.asyncio
async def test_comments_deduplicated_by_author_and_text(reconciler, store):
    await store.insert_task("t1", {"title": "One", "column_name": "todo"})
    await store.insert_comment("t1", "agent", "done")

    result = await reconciler.reconcile([snap("t1", [
        Comment("agent", "done"),
        Comment("human", "done"),
        Comment("human", "thanks"),
        Comment("human", "thanks"),
    ])])

    assert result.comments_added == 2
    texts = [(c["author"], c["text"]) for c in await store.list_comments("t1")]
    assert texts == [("agent", "done"), ("human", "done"), ("human", "thanks")]


@pytest.mark.asyncio
async def test_new_task_without_title_writes_nothing(reconciler, store):
    with pytest.raises(ValidationError) as exc_info:
        await reconciler.reconcile([
            snap("t1", title="Fine"),
            snap("t2", column_name="todo"),
        ])

    assert exc_info.value.reasons == ["new task 't2' requires a title"]
    assert await store.read_all_tasks() == []


@pytest.mark.asyncio
async def test_read_failure_raises_store_error(reconciler, store, monkeypatch):
    async def broken():
        raise aiosqlite.OperationalError("database is locked")

    monkeypatch.setattr(store, "read_all_tasks", broken)

    with pytest.raises(StoreError):
        await reconciler.reconcile([snap("t1", title="One")])


@pytest.mark.asyncio
async def test_write_failure_reports_partial_progress(reconciler, store, monkeypatch):
    real_insert = store.insert_task

    async def flaky_insert(task_id, fields):
        if task_id == "t2":
            raise aiosqlite.OperationalError("disk I/O error")
        return await real_insert(task_id, fields)

    monkeypatch.setattr(store, "insert_task", flaky_insert)

    with pytest.raises(PartialReconciliationError) as exc_info:
        await reconciler.reconcile([
            snap("t1", title="One"),
            snap("t2", title="Two"),
            snap("t3", title="Three"),
        ])

    assert exc_info.value.applied["created"] == 1
    assert exc_info.value.any_applied
    assert {r["id"] for r in await store.read_all_tasks()} == {"t1"}
