"""FastAPI dependency injection and DB helpers for prompt-relay."""

import sqlite3
from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any

from fastapi import Header, HTTPException, Request

from api.hub import LogHub
from db.client import get_connection


def get_db(request: Request) -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency that yields a DB connection per request."""
    conn = get_connection(request.app.state.db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_hub(request: Request) -> LogHub:
    return request.app.state.hub


def get_config(request: Request) -> dict[str, Any]:
    return request.app.state.config


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity, set by the authenticating proxy in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    return x_user_id


# ── Log queue helpers ──────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_pending_messages(conn: sqlite3.Connection, limit: int = 100) -> list[dict[str, Any]]:
    """Fetch unacknowledged, live messages from the log queue, oldest first."""
    rows = conn.execute(
        """SELECT id, body, enqueued_at, delivery_count FROM log_queue
           WHERE acked_at IS NULL AND dead_lettered_at IS NULL
           ORDER BY enqueued_at, rowid
           LIMIT ?""",
        (limit,),
    ).fetchall()
    return [dict(row) for row in rows]


def mark_delivery_attempt(conn: sqlite3.Connection, message_id: str) -> int:
    """Count a delivery attempt before processing and return the new count."""
    conn.execute(
        "UPDATE log_queue SET delivery_count = delivery_count + 1 WHERE id = ?",
        (message_id,),
    )
    conn.commit()
    row = conn.execute(
        "SELECT delivery_count FROM log_queue WHERE id = ?", (message_id,)
    ).fetchone()
    return row["delivery_count"]


def ack_message(conn: sqlite3.Connection, message_id: str) -> None:
    conn.execute("UPDATE log_queue SET acked_at = ? WHERE id = ?", (_now(), message_id))
    conn.commit()


def record_delivery_failure(conn: sqlite3.Connection, message_id: str, error: str) -> None:
    conn.execute("UPDATE log_queue SET last_error = ? WHERE id = ?", (error, message_id))
    conn.commit()


def dead_letter_message(conn: sqlite3.Connection, message_id: str, error: str) -> None:
    """Park a message so it is never redelivered."""
    conn.execute(
        "UPDATE log_queue SET dead_lettered_at = ?, last_error = ? WHERE id = ?",
        (_now(), error, message_id),
    )
    conn.commit()


def get_dead_letters(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM log_queue WHERE dead_lettered_at IS NOT NULL ORDER BY dead_lettered_at"
    ).fetchall()
    return [dict(row) for row in rows]
