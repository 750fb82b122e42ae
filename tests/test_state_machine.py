"""Tests for db/state_machine.py: execution and project execution statuses.

Validates:
- Allowed forward moves
- Terminal statuses never move again
- Project executions may re-enter running on resume
- Row-backed validation for missing rows
"""

import sqlite3
from pathlib import Path

import pytest

from db.migrations import init_db
from db.state_machine import (
    EXECUTION_TRANSITIONS,
    InvalidTransitionError,
    check_execution_transition,
    check_project_transition,
    validate_execution_transition,
    validate_project_transition,
)
from runner.recorder import create_execution


@pytest.fixture()
def conn(tmp_path: Path) -> sqlite3.Connection:
    connection = init_db(tmp_path / "test.db")
    yield connection
    connection.close()


def _seed_execution(conn: sqlite3.Connection) -> str:
    now = "2024-01-01T00:00:00+00:00"
    conn.execute(
        "INSERT INTO scripts (id, topic_id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        ("s1", "topic-1", "user-1", now, now),
    )
    conn.execute(
        """INSERT INTO script_projects
           (script_id, project_id, name, created_at, created_at_db)
           VALUES ('s1', 'p1', 'One', ?, ?)""",
        (now, now),
    )
    conn.commit()
    return create_execution(conn, "s1", "topic-1", "user-1", ["p1"])


class TestExecutionTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("pending", "running"),
            ("pending", "failed"),
            ("pending", "cancelled"),
            ("running", "completed"),
            ("running", "failed"),
            ("running", "cancelled"),
        ],
    )
    def test_allowed(self, current: str, target: str) -> None:
        check_execution_transition(current, target)

    @pytest.mark.parametrize("terminal", ["completed", "failed", "cancelled"])
    def test_terminal_statuses_are_final(self, terminal: str) -> None:
        for target in EXECUTION_TRANSITIONS:
            with pytest.raises(InvalidTransitionError):
                check_execution_transition(terminal, target)

    def test_no_regression_to_pending(self) -> None:
        with pytest.raises(InvalidTransitionError, match="Cannot move"):
            check_execution_transition("running", "pending")

    def test_unknown_status(self) -> None:
        with pytest.raises(InvalidTransitionError, match="Unknown"):
            check_execution_transition("running", "paused")


class TestProjectTransitions:
    def test_running_may_reenter_running(self) -> None:
        check_project_transition("running", "running")

    def test_pending_cannot_complete_directly(self) -> None:
        with pytest.raises(InvalidTransitionError):
            check_project_transition("pending", "completed")

    def test_completed_is_final(self) -> None:
        with pytest.raises(InvalidTransitionError):
            check_project_transition("completed", "running")

    def test_project_has_no_cancelled_status(self) -> None:
        with pytest.raises(InvalidTransitionError, match="Unknown"):
            check_project_transition("running", "cancelled")


class TestRowValidation:
    def test_returns_current_row(self, conn: sqlite3.Connection) -> None:
        eid = _seed_execution(conn)
        row = validate_execution_transition(conn, eid, "running")
        assert row["id"] == eid
        assert row["status"] == "pending"

    def test_missing_execution(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(InvalidTransitionError, match="not found"):
            validate_execution_transition(conn, "nope", "running")

    def test_missing_project_execution(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(InvalidTransitionError, match="not found"):
            validate_project_transition(conn, "nope", "running")

    def test_project_row_checked(self, conn: sqlite3.Connection) -> None:
        eid = _seed_execution(conn)
        pe_id = conn.execute(
            "SELECT id FROM script_project_executions WHERE execution_id = ?", (eid,)
        ).fetchone()["id"]
        with pytest.raises(InvalidTransitionError):
            validate_project_transition(conn, pe_id, "completed")
