"""Execution run recorder for prompt-relay.

Writes to the script_executions and script_project_executions tables.
Every function validates the transition with db.state_machine and
commits before returning, so a crash mid-run leaves the last completed
step on disk.
"""

import sqlite3
import uuid
from datetime import datetime, timezone

from db.state_machine import validate_execution_transition, validate_project_transition


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Executions ─────────────────────────────────────────────


def create_execution(
    conn: sqlite3.Connection,
    script_id: str,
    topic_id: str,
    user_id: str,
    order: list[str],
) -> str:
    """Insert a pending execution and one pending project execution per project.

    Args:
        conn: Active SQLite connection.
        script_id: The script being run.
        topic_id: Owning topic.
        user_id: User who started the run.
        order: Project ids in resolved run order; the index becomes project_order.

    Returns:
        The generated execution_id (UUID4).
    """
    execution_id = _uuid()
    now = _now()
    try:
        conn.execute(
            """INSERT INTO script_executions
               (id, script_id, topic_id, user_id, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'pending', ?, ?)""",
            (execution_id, script_id, topic_id, user_id, now, now),
        )
        conn.executemany(
            """INSERT INTO script_project_executions
               (id, execution_id, project_id, project_order, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'pending', ?, ?)""",
            [
                (_uuid(), execution_id, project_id, index, now, now)
                for index, project_id in enumerate(order)
            ],
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return execution_id


def mark_execution_running(conn: sqlite3.Connection, execution_id: str) -> None:
    validate_execution_transition(conn, execution_id, "running")
    now = _now()
    conn.execute(
        "UPDATE script_executions SET status = 'running', started_at = ?, updated_at = ? WHERE id = ?",
        (now, now, execution_id),
    )
    conn.commit()


def set_current_project(conn: sqlite3.Connection, execution_id: str, project_id: str) -> None:
    conn.execute(
        "UPDATE script_executions SET current_project_id = ?, updated_at = ? WHERE id = ?",
        (project_id, _now(), execution_id),
    )
    conn.commit()


def increment_execution_retry(conn: sqlite3.Connection, execution_id: str) -> None:
    conn.execute(
        "UPDATE script_executions SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
        (_now(), execution_id),
    )
    conn.commit()


def complete_execution(conn: sqlite3.Connection, execution_id: str) -> None:
    validate_execution_transition(conn, execution_id, "completed")
    now = _now()
    conn.execute(
        """UPDATE script_executions
           SET status = 'completed', current_project_id = NULL,
               completed_at = ?, updated_at = ?
           WHERE id = ?""",
        (now, now, execution_id),
    )
    conn.commit()


def fail_execution(conn: sqlite3.Connection, execution_id: str, error: str) -> None:
    """Record a terminal failure, keeping current_project_id for inspection."""
    validate_execution_transition(conn, execution_id, "failed")
    now = _now()
    conn.execute(
        """UPDATE script_executions
           SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
           WHERE id = ?""",
        (error, now, now, execution_id),
    )
    conn.commit()


def mark_execution_cancelled(conn: sqlite3.Connection, execution_id: str) -> None:
    validate_execution_transition(conn, execution_id, "cancelled")
    now = _now()
    conn.execute(
        """UPDATE script_executions
           SET status = 'cancelled', completed_at = ?, updated_at = ?
           WHERE id = ?""",
        (now, now, execution_id),
    )
    conn.commit()


# ── Project executions ─────────────────────────────────────


def start_project(conn: sqlite3.Connection, project_exec_id: str) -> None:
    """Mark a project execution running. Keeps the first started_at on re-entry."""
    validate_project_transition(conn, project_exec_id, "running")
    now = _now()
    conn.execute(
        """UPDATE script_project_executions
           SET status = 'running', started_at = COALESCE(started_at, ?), updated_at = ?
           WHERE id = ?""",
        (now, now, project_exec_id),
    )
    conn.commit()


def complete_project(conn: sqlite3.Connection, project_exec_id: str) -> None:
    validate_project_transition(conn, project_exec_id, "completed")
    now = _now()
    conn.execute(
        """UPDATE script_project_executions
           SET status = 'completed', completed_at = ?, error_message = NULL, updated_at = ?
           WHERE id = ?""",
        (now, now, project_exec_id),
    )
    conn.commit()


def record_project_failure(
    conn: sqlite3.Connection, project_exec_id: str, error: str
) -> int:
    """Count one failed attempt and return the project's new retry_count."""
    conn.execute(
        """UPDATE script_project_executions
           SET retry_count = retry_count + 1, error_message = ?, updated_at = ?
           WHERE id = ?""",
        (error, _now(), project_exec_id),
    )
    conn.commit()
    row = conn.execute(
        "SELECT retry_count FROM script_project_executions WHERE id = ?",
        (project_exec_id,),
    ).fetchone()
    return row["retry_count"]


def fail_project(conn: sqlite3.Connection, project_exec_id: str, error: str) -> None:
    validate_project_transition(conn, project_exec_id, "failed")
    now = _now()
    conn.execute(
        """UPDATE script_project_executions
           SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
           WHERE id = ?""",
        (error, now, now, project_exec_id),
    )
    conn.commit()
