"""FastAPI web server for the Lamp task board."""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.requests import Request

from lamp.board import TaskBoard
from lamp.change_watcher import ChangeWatcher
from lamp.errors import (
    NotFoundError,
    PartialReconciliationError,
    RateLimitError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from lamp.media_proxy import MediaProxy
from lamp.rate_limiter import RateLimiter
from lamp.task_store import TaskStore
from lamp.utils import CHANGE_POLL_INTERVAL, DB_PATH, HISTORY_LIMIT

log = logging.getLogger(__name__)

router = APIRouter()


def get_board(request: Request) -> TaskBoard:
    return request.app.state.board


def _caller_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _rate_limit(request: Request, category: str) -> None:
    request.app.state.limiter.check(_caller_identity(request), category)


# ── REST Endpoints ──────────────────────────────────────────────────────────


@router.get("/api/tasks")
async def get_tasks(board: TaskBoard = Depends(get_board)):
    """Full board listing, served from the read cache when warm."""
    return await board.get_tasks()


@router.post("/api/tasks")
async def post_tasks(body: dict, board: TaskBoard = Depends(get_board)):
    """Single operation (``action`` set) or bulk save (``tasks`` array)."""
    if body.get("action") is not None:
        result = await board.apply_task_operation(body)
    elif "tasks" in body:
        result = await board.apply_bulk_reconciliation(body["tasks"], author=body.get("author"))
    else:
        raise ValidationError("body must carry an action or a tasks array")
    result["saved"] = datetime.now(timezone.utc).isoformat()
    return result


@router.get("/api/history")
async def get_history(
    author: str | None = Query(None),
    limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_LIMIT),
    board: TaskBoard = Depends(get_board),
):
    """Audit events, newest first, optionally for one author."""
    return await board.get_history(author, limit)


@router.get("/api/console")
async def get_console(board: TaskBoard = Depends(get_board)):
    """Aggregate agent status over all non-expired sessions."""
    return await board.get_session_status()


@router.post("/api/console")
async def post_console(body: dict, board: TaskBoard = Depends(get_board)):
    """Agent status push (upsert by session key)."""
    return await board.push_session_status(body.get("sessionKey"), body)


@router.get("/api/health")
async def health(board: TaskBoard = Depends(get_board)):
    data = await board.get_tasks()
    return {
        "status": "ok",
        "tasks": len(data["tasks"]),
        "subscribers": board.fanout.subscriber_count,
        "audit_pending": board.audit.pending,
    }


@router.post("/api/generate-image")
async def generate_image(body: dict, request: Request):
    """Generate a celebration image for a completed task."""
    _rate_limit(request, "image")
    url = await request.app.state.media.generate_image(body.get("taskTitle", ""))
    return {"ok": True, "imageUrl": url}


@router.post("/api/transcribe")
async def transcribe(body: dict, request: Request):
    """Transcribe a base64 audio clip."""
    _rate_limit(request, "transcribe")
    text = await request.app.state.media.transcribe(body.get("audio", ""))
    return {"text": text}


# ── WebSocket Endpoints ─────────────────────────────────────────────────────


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@router.websocket("/ws/tasks")
async def ws_tasks(websocket: WebSocket):
    """Stream board change events until the client disconnects."""
    board: TaskBoard = websocket.app.state.board
    await websocket.accept()
    sub = board.subscribe(name=websocket.client.host if websocket.client else "")
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({"type": "snapshot", "payload": await board.get_tasks()})
        while True:
            getter = asyncio.create_task(sub.next_event())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    except Exception:
        log.debug("WebSocket push failed; dropping subscriber", exc_info=True)
    finally:
        receiver.cancel()
        board.unsubscribe(sub)


# ── Error Mapping ───────────────────────────────────────────────────────────


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "validation failed", "errors": exc.reasons},
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"ok": False, "error": str(exc)})

    @app.exception_handler(StoreError)
    async def _store(request: Request, exc: StoreError):
        content = {"ok": False, "error": "store unavailable"}
        if isinstance(exc, PartialReconciliationError):
            content["error"] = "bulk save incomplete"
            content["applied"] = exc.applied
        return JSONResponse(status_code=500, content=content)

    @app.exception_handler(RateLimitError)
    async def _rate_limited(request: Request, exc: RateLimitError):
        retry_after = max(1, math.ceil(exc.retry_after))
        return JSONResponse(
            status_code=429,
            headers={"Retry-After": str(retry_after)},
            content={"ok": False, "error": str(exc), "retryAfter": retry_after},
        )

    @app.exception_handler(UpstreamError)
    async def _upstream(request: Request, exc: UpstreamError):
        return JSONResponse(status_code=502, content={"ok": False, "error": str(exc)})


# ── App Factory ─────────────────────────────────────────────────────────────


def create_app(
    board: TaskBoard | None = None,
    limiter: RateLimiter | None = None,
    media: MediaProxy | None = None,
    watch_changes: bool = True,
) -> FastAPI:
    board = board or TaskBoard(TaskStore())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the change watcher and rate-limit sweeper; tear down on shutdown."""
        tasks = [asyncio.create_task(app.state.limiter.run_forever(interval=60))]
        if watch_changes:
            watcher = ChangeWatcher(board.store, board.fanout)
            await watcher.poll_once()
            tasks.append(asyncio.create_task(watcher.run_forever(interval=CHANGE_POLL_INTERVAL)))

        yield

        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await board.close()

    app = FastAPI(title="Lamp Board", lifespan=lifespan)
    app.state.board = board
    app.state.limiter = limiter or RateLimiter()
    app.state.media = media or MediaProxy()
    app.include_router(router)
    _install_error_handlers(app)
    return app


app = create_app()


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Lamp task board server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=3456, help="Port to bind to (default: 3456)")
    parser.add_argument("--db", type=Path, default=DB_PATH, help=f"SQLite database path (default: {DB_PATH})")
    parser.add_argument("--log-level", default="info", help="Logging level (default: info)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.reload:
        # Reload needs an import string; the database comes from LAMP_DB_PATH.
        uvicorn.run("lamp.web_server:app", host=args.host, port=args.port, reload=True)
        return

    uvicorn.run(
        create_app(TaskBoard(TaskStore(args.db))),
        host=args.host,
        port=args.port,
    )


if __name__ == "__main__":
    main()
