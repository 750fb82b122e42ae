"""Execution status state machine for prompt-relay.

Execution:          pending -> running -> completed | failed | cancelled
                    pending -> failed | cancelled
Project execution:  pending -> running -> completed | failed

Statuses never regress. ``running -> running`` is allowed for project
executions so a resumed walk can re-enter the project that was in
flight when the process stopped.

Import validate_*_transition() from here. Do not duplicate this logic.
"""

import sqlite3
from typing import Any


class InvalidTransitionError(Exception):
    """Raised when a status transition is not allowed by the state machine."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


EXECUTION_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

PROJECT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed"}),
    "running": frozenset({"running", "completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed", "cancelled"})
ACTIVE_EXECUTION_STATUSES = frozenset({"pending", "running"})


def _check(
    transitions: dict[str, frozenset[str]], kind: str, current: str, target: str
) -> None:
    if current not in transitions:
        raise InvalidTransitionError(f"Unknown {kind} status '{current}'")
    if target not in transitions:
        raise InvalidTransitionError(f"Unknown {kind} status '{target}'")
    if target not in transitions[current]:
        raise InvalidTransitionError(
            f"Cannot move {kind} from '{current}' to '{target}'"
        )


def check_execution_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless an execution may move current -> target."""
    _check(EXECUTION_TRANSITIONS, "execution", current, target)


def check_project_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless a project execution may move current -> target."""
    _check(PROJECT_TRANSITIONS, "project execution", current, target)


def validate_execution_transition(
    conn: sqlite3.Connection, execution_id: str, target_status: str
) -> dict[str, Any]:
    """Validate an execution status change against the stored row.

    Returns the current row as a dict on success.
    Raises InvalidTransitionError if the execution is missing or the move is invalid.
    """
    row = conn.execute(
        "SELECT * FROM script_executions WHERE id = ?", (execution_id,)
    ).fetchone()
    if row is None:
        raise InvalidTransitionError(f"Execution '{execution_id}' not found")
    check_execution_transition(row["status"], target_status)
    return dict(row)


def validate_project_transition(
    conn: sqlite3.Connection, project_exec_id: str, target_status: str
) -> dict[str, Any]:
    """Validate a project execution status change against the stored row."""
    row = conn.execute(
        "SELECT * FROM script_project_executions WHERE id = ?", (project_exec_id,)
    ).fetchone()
    if row is None:
        raise InvalidTransitionError(f"Project execution '{project_exec_id}' not found")
    check_project_transition(row["status"], target_status)
    return dict(row)
