"""Process log records for prompt-relay.

Log entries are append-only: they are created by whichever component
reports progress (the execution engine directly, or the automation
backend through ``POST /process-logs`` or the log queue) and only ever
removed in bulk by the retention sweeper.

``metadata`` is validated per ``stage``: engine stages carry a fixed
shape, any other stage keeps an open key/value map.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

LogStatus = Literal["info", "success", "warning", "error", "failed"]

MAX_PAGE_SIZE = 1000


class ExecutionLogMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    execution_id: str
    script_id: str | None = None
    project_count: int | None = None
    error: str | None = None


class ProjectLogMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    execution_id: str
    project_id: str
    project_order: int | None = None
    attempt: int | None = None
    error: str | None = None


STAGE_METADATA: dict[str, type[BaseModel]] = {
    "execution_started": ExecutionLogMetadata,
    "execution_completed": ExecutionLogMetadata,
    "execution_failed": ExecutionLogMetadata,
    "execution_cancelled": ExecutionLogMetadata,
    "project_started": ProjectLogMetadata,
    "project_completed": ProjectLogMetadata,
    "project_retry": ProjectLogMetadata,
    "project_failed": ProjectLogMetadata,
}


class LogEventRequest(BaseModel):
    """A log event as produced by the engine, HTTP callers, or the queue."""

    entity_type: str
    entity_id: str
    user_id: str
    machine_id: str | None = None
    stage: str
    status: LogStatus
    message: str
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_stage_metadata(self) -> "LogEventRequest":
        shape = STAGE_METADATA.get(self.stage)
        if shape is not None:
            try:
                parsed = shape.model_validate(self.metadata or {})
            except ValidationError as e:
                raise ValueError(
                    f"metadata does not match stage '{self.stage}': {e.errors()[0]['msg']}"
                ) from e
            self.metadata = parsed.model_dump(exclude_none=True)
        return self


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


def row_to_entry(row: sqlite3.Row) -> dict[str, Any]:
    """Convert a process_logs row to the public entry shape."""
    entry = dict(row)
    entry["metadata"] = json.loads(entry["metadata"]) if entry["metadata"] else None
    return entry


def create_log(conn: sqlite3.Connection, event: LogEventRequest) -> dict[str, Any]:
    """Insert a log entry, commit, and return it.

    Raises sqlite3.Error if the write fails; callers on the queue path
    rely on that to leave the message unacknowledged.
    """
    entry = {
        "id": _uuid(),
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "user_id": event.user_id,
        "machine_id": event.machine_id,
        "stage": event.stage,
        "status": event.status,
        "message": event.message,
        "metadata": event.metadata,
        "created_at": _now(),
    }
    conn.execute(
        """INSERT INTO process_logs
           (id, entity_type, entity_id, user_id, machine_id, stage, status,
            message, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            entry["id"],
            entry["entity_type"],
            entry["entity_id"],
            entry["user_id"],
            entry["machine_id"],
            entry["stage"],
            entry["status"],
            entry["message"],
            json.dumps(entry["metadata"]) if entry["metadata"] is not None else None,
            entry["created_at"],
        ),
    )
    conn.commit()
    return entry


def get_logs_by_entity(
    conn: sqlite3.Connection,
    entity_type: str,
    entity_id: str,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Return entries for an entity, newest first."""
    rows = conn.execute(
        """SELECT * FROM process_logs
           WHERE entity_type = ? AND entity_id = ?
           ORDER BY created_at DESC, rowid DESC
           LIMIT ? OFFSET ?""",
        (entity_type, entity_id, min(limit, MAX_PAGE_SIZE), offset),
    ).fetchall()
    return [row_to_entry(row) for row in rows]


def get_recent_logs(
    conn: sqlite3.Connection, entity_type: str, entity_id: str, limit: int = 100
) -> list[dict[str, Any]]:
    """Return the newest ``limit`` entries for an entity in chronological order."""
    return list(reversed(get_logs_by_entity(conn, entity_type, entity_id, limit)))


def get_logs_by_user(
    conn: sqlite3.Connection, user_id: str, limit: int = 100, offset: int = 0
) -> list[dict[str, Any]]:
    """Return entries reported for a user, newest first."""
    rows = conn.execute(
        """SELECT * FROM process_logs WHERE user_id = ?
           ORDER BY created_at DESC, rowid DESC
           LIMIT ? OFFSET ?""",
        (user_id, min(limit, MAX_PAGE_SIZE), offset),
    ).fetchall()
    return [row_to_entry(row) for row in rows]


def enqueue_log(conn: sqlite3.Connection, payload: dict[str, Any]) -> str:
    """Put a JSON log event on the log queue and return the message id.

    The payload is not validated here; the consumer dead-letters bodies
    that do not parse as a LogEventRequest.
    """
    message_id = _uuid()
    conn.execute(
        "INSERT INTO log_queue (id, body, enqueued_at) VALUES (?, ?, ?)",
        (message_id, json.dumps(payload), _now()),
    )
    conn.commit()
    return message_id
