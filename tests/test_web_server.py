"""HTTP and WebSocket tests for the board API."""

import aiosqlite
import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient

from lamp.board import TaskBoard
from lamp.media_proxy import MediaProxy
from lamp.rate_limiter import RateLimiter
from lamp.task_store import TaskStore
from lamp.web_server import create_app


def _openai_stub(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/images/generations"):
        return httpx.Response(200, json={"data": [{"url": "https://img.example/1.png"}]})
    return httpx.Response(200, json={"text": "hello"})


@pytest_asyncio.fixture
async def board(tmp_path):
    b = TaskBoard(TaskStore(db_path=tmp_path / "web.db"))
    yield b
    await b.close()


@pytest_asyncio.fixture
async def client(board):
    """AsyncClient against an app with a tight image limit and a stubbed upstream."""
    app = create_app(
        board,
        limiter=RateLimiter(limits={"image": 2, "transcribe": 5, "default": 10}),
        media=MediaProxy(api_key="sk-test", transport=httpx.MockTransport(_openai_stub)),
        watch_changes=False,
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ── Tasks ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_add_and_list(client):
    resp = await client.post("/api/tasks", json={
        "action": "add", "task": {"id": "t1", "title": "Fix login bug"},
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["taskId"] == "t1"
    assert "saved" in body

    resp = await client.get("/api/tasks")
    data = resp.json()
    assert "inbox" in data["columns"]
    [task] = data["tasks"]
    assert task["title"] == "Fix login bug"
    assert task["column"] == "inbox"


@pytest.mark.asyncio
async def test_validation_error_is_400(client):
    resp = await client.post("/api/tasks", json={"action": "add", "task": {"column": "nowhere"}})
    assert resp.status_code == 400
    body = resp.json()
    assert body["ok"] is False
    assert body["error"] == "validation failed"
    assert "title is required" in body["errors"]


@pytest.mark.asyncio
async def test_body_without_action_or_tasks_is_400(client):
    resp = await client.post("/api/tasks", json={"hello": "world"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unknown_task_is_404(client):
    resp = await client.post("/api/tasks", json={
        "action": "update", "taskId": "ghost", "updates": {"title": "x"},
    })
    assert resp.status_code == 404
    assert resp.json()["error"] == "task 'ghost' not found"


@pytest.mark.asyncio
async def test_bulk_save(client):
    resp = await client.post("/api/tasks", json={"tasks": [
        {"id": "t1", "title": "One", "comments": [{"author": "agent", "text": "hi"}]},
        {"id": "t2", "title": "Two", "column": "todo"},
    ]})
    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] == 2
    assert body["comments_added"] == 1

    resp = await client.post("/api/tasks", json={"tasks": [{"id": "t1", "column": "review"}]})
    assert resp.json()["moved"] == 1

    tasks = {t["id"]: t for t in (await client.get("/api/tasks")).json()["tasks"]}
    assert set(tasks) == {"t1", "t2"}
    assert tasks["t1"]["column"] == "review"


@pytest.mark.asyncio
async def test_store_failure_is_500(client, board, monkeypatch):
    async def broken(task_id, fields):
        raise aiosqlite.OperationalError("disk I/O error")

    monkeypatch.setattr(board.store, "insert_task", broken)
    resp = await client.post("/api/tasks", json={"action": "add", "task": {"title": "x"}})
    assert resp.status_code == 500
    assert resp.json() == {"ok": False, "error": "store unavailable"}


# ── History and console ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_history(client):
    await client.post("/api/tasks", json={"action": "add", "task": {"id": "t1", "title": "A"}})
    await client.post("/api/tasks", json={
        "action": "update", "taskId": "t1", "updates": {"column": "review"},
    })

    events = (await client.get("/api/history")).json()
    assert [e["type"] for e in events] == ["move", "add"]

    agent_events = (await client.get("/api/history", params={"author": "agent"})).json()
    assert [e["type"] for e in agent_events] == ["move"]

    assert len((await client.get("/api/history", params={"limit": 1})).json()) == 1


@pytest.mark.asyncio
async def test_history_limit_out_of_range(client):
    resp = await client.get("/api/history", params={"limit": 501})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_console_round_trip(client):
    resp = await client.post("/api/console", json={
        "sessionKey": "main", "active": True, "currentTask": "Fix login bug",
    })
    assert resp.json() == {"ok": True, "sessionKey": "main"}

    status = (await client.get("/api/console")).json()
    assert status["active"] is True
    assert status["currentTask"] == "Fix login bug"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Media and rate limits ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generate_image_rate_limited(client):
    for _ in range(2):
        resp = await client.post("/api/generate-image", json={"taskTitle": "Ship it"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "imageUrl": "https://img.example/1.png"}

    resp = await client.post("/api/generate-image", json={"taskTitle": "Ship it"})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_rate_limit_is_per_caller(client):
    for _ in range(2):
        await client.post("/api/generate-image", json={"taskTitle": "A"})

    resp = await client.post(
        "/api/generate-image", json={"taskTitle": "A"},
        headers={"X-Forwarded-For": "10.0.0.7, 10.0.0.1"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_transcribe(client):
    resp = await client.post("/api/transcribe", json={"audio": "aGVsbG8="})
    assert resp.status_code == 200
    assert resp.json() == {"text": "hello"}


@pytest.mark.asyncio
async def test_transcribe_rejects_bad_audio(client):
    resp = await client.post("/api/transcribe", json={"audio": "not base64!"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_upstream_unconfigured_is_502(board):
    app = create_app(board, media=MediaProxy(api_key=""), watch_changes=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.post("/api/generate-image", json={"taskTitle": "A"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "OpenAI API key not configured"


# ── WebSocket ───────────────────────────────────────────────────────────────


def test_websocket_snapshot_then_changes(tmp_path):
    app = create_app(TaskBoard(TaskStore(db_path=tmp_path / "ws.db")), watch_changes=False)
    with TestClient(app) as tc:
        tc.post("/api/tasks", json={"action": "add", "task": {"id": "t1", "title": "Before"}})

        with tc.websocket_connect("/ws/tasks") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert [t["id"] for t in first["payload"]["tasks"]] == ["t1"]

            tc.post("/api/tasks", json={
                "action": "update", "taskId": "t1", "updates": {"column": "todo"},
            })
            event = ws.receive_json()
            assert event["type"] == "task_updated"
            assert event["payload"] == {"taskId": "t1", "updates": {"column": "todo"}}
