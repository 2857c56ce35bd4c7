"""Generic utilities and configuration for the Lamp board."""

from __future__ import annotations

import os
import re
import uuid as _uuid
from datetime import datetime, timezone
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Configuration Constants
DB_PATH = Path(os.environ.get("LAMP_DB_PATH", Path.home() / ".lamp" / "board.db"))

DEFAULT_COLUMNS = ("genie", "inbox", "todo", "in_progress", "review", "done")
COLUMNS: tuple[str, ...] = tuple(
    c.strip() for c in os.environ.get("LAMP_COLUMNS", ",".join(DEFAULT_COLUMNS)).split(",") if c.strip()
) or DEFAULT_COLUMNS
DONE_COLUMN = os.environ.get("LAMP_DONE_COLUMN", "done")
AGENT_COLUMNS = frozenset({"review", "in_progress"})
DEFAULT_COLUMN = "inbox" if "inbox" in COLUMNS else COLUMNS[0]

HUMAN_AUTHOR = os.environ.get("LAMP_HUMAN_AUTHOR", "human")
AGENT_AUTHOR = os.environ.get("LAMP_AGENT_AUTHOR", "agent")
UNKNOWN_AUTHOR = "unknown"
SERVICE_NAME = os.environ.get("SERVICE_NAME", "unknown")

CACHE_TTL_SECONDS = _env_float("LAMP_CACHE_TTL", 10.0)
STATUS_STALE_SECONDS = _env_float("LAMP_STATUS_STALE_SECONDS", 300.0)
HISTORY_LIMIT = 500
CHANGE_POLL_INTERVAL = _env_float("LAMP_CHANGE_POLL_INTERVAL", 2.0)

RATE_WINDOW_SECONDS = _env_float("LAMP_RATE_WINDOW", 60.0)
RATE_LIMITS = {
    "image": _env_int("LAMP_RATE_LIMIT_IMAGE", 5),
    "transcribe": _env_int("LAMP_RATE_LIMIT_TRANSCRIBE", 20),
    "default": _env_int("LAMP_RATE_LIMIT_DEFAULT", 60),
}

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")

MAX_ID_LENGTH = 50
_ID_STRIP_RE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_id(value: object) -> str:
    """Reduce an externally supplied identifier to a safe store key.

    Keeps ``[A-Za-z0-9_-]`` and caps the result at 50 characters. Returns an
    empty string when nothing survives; callers treat that as invalid.
    """
    if value is None:
        return ""
    return _ID_STRIP_RE.sub("", str(value))[:MAX_ID_LENGTH]


def new_task_id() -> str:
    return _uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp written by the store, tolerating a trailing Z."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
