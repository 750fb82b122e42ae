"""Script execution engine for prompt-relay.

Starts executions (resolving the project order up front), walks them in a
worker thread one project at a time against the automation backend, and
resumes executions left running by a previous process.

Progress is reported through a LogIngestor under the
``("script_execution", topic_id)`` entity, with the execution id in the
metadata of every entry.
"""

import asyncio
import logging
import sqlite3
from typing import Any

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from api.ingest import LogIngestor
from db.client import get_connection
from db.state_machine import (
    ACTIVE_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    InvalidTransitionError,
)
from prompt_relay.scripts import load_graph
from runner.automation import AutomationClient, AutomationError, ProjectRunResult
from runner.recorder import (
    complete_execution,
    complete_project,
    create_execution,
    fail_execution,
    fail_project,
    increment_execution_retry,
    mark_execution_cancelled,
    mark_execution_running,
    record_project_failure,
    set_current_project,
    start_project,
)
from runner.scheduler import CycleError, GraphError, predecessors, resolve_order

logger = logging.getLogger(__name__)

ENTITY_TYPE = "script_execution"


class ExecutionError(Exception):
    """Raised when an execution cannot be started or run."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


# ── Start / status / cancel ────────────────────────────────


def _count_active_executions(conn: sqlite3.Connection, user_id: str) -> int:
    placeholders = ", ".join("?" for _ in ACTIVE_EXECUTION_STATUSES)
    row = conn.execute(
        f"""SELECT COUNT(*) as cnt FROM script_executions
            WHERE user_id = ? AND status IN ({placeholders})""",
        (user_id, *sorted(ACTIVE_EXECUTION_STATUSES)),
    ).fetchone()
    return row["cnt"]


def start_execution(
    conn: sqlite3.Connection,
    topic_id: str,
    user_id: str,
    config: dict[str, Any],
) -> dict[str, Any]:
    """Create a running execution for the caller's script on ``topic_id``.

    The project order is resolved before anything is written, so an empty
    or cyclic script leaves no rows behind.

    Returns:
        The accepted payload: execution_id, script_id, topic_id, status, message.

    Raises:
        ExecutionError: ``not_found``, ``invalid_input``, ``cycle`` or ``limit``.
    """
    script = conn.execute(
        "SELECT id FROM scripts WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    ).fetchone()
    if script is None:
        raise ExecutionError("not_found", f"No script for topic '{topic_id}'")
    script_id = script["id"]

    graph = load_graph(conn, script_id)
    if not graph["projects"]:
        raise ExecutionError("invalid_input", f"Script {script_id} has no projects")

    try:
        order = resolve_order(graph["projects"], graph["edges"])
    except CycleError as e:
        raise ExecutionError("cycle", f"Script {script_id} cannot run: {e}") from e
    except GraphError as e:
        raise ExecutionError("invalid_input", f"Script {script_id} is invalid: {e}") from e

    limit = config.get("max_concurrent_per_user", 1)
    if _count_active_executions(conn, user_id) >= limit:
        raise ExecutionError(
            "limit",
            f"User already has {limit} execution(s) in progress",
        )

    execution_id = create_execution(conn, script_id, topic_id, user_id, order)
    mark_execution_running(conn, execution_id)
    logger.info(
        "Execution %s accepted for script %s (%d projects)",
        execution_id,
        script_id,
        len(order),
    )

    return {
        "execution_id": execution_id,
        "script_id": script_id,
        "topic_id": topic_id,
        "status": "running",
        "message": f"Script execution started with {len(order)} project(s)",
    }


def _project_executions(conn: sqlite3.Connection, execution_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """SELECT * FROM script_project_executions
           WHERE execution_id = ? ORDER BY project_order""",
        (execution_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def get_execution_status(conn: sqlite3.Connection, execution_id: str) -> dict[str, Any] | None:
    """Return the execution with its project executions, or None if unknown."""
    row = conn.execute(
        "SELECT * FROM script_executions WHERE id = ?", (execution_id,)
    ).fetchone()
    if row is None:
        return None
    execution = dict(row)
    execution["projects"] = _project_executions(conn, execution_id)
    return execution


def list_executions(
    conn: sqlite3.Connection, topic_id: str, user_id: str
) -> list[dict[str, Any]]:
    """Executions of a user's script on a topic, newest first."""
    rows = conn.execute(
        """SELECT * FROM script_executions
           WHERE topic_id = ? AND user_id = ?
           ORDER BY created_at DESC, rowid DESC""",
        (topic_id, user_id),
    ).fetchall()
    return [dict(row) for row in rows]


def cancel_execution(conn: sqlite3.Connection, execution_id: str) -> dict[str, Any]:
    """Cancel a pending or running execution.

    The walk notices the cancellation before its next project.
    """
    status = get_execution_status(conn, execution_id)
    if status is None:
        return {"error": "not_found", "message": f"Execution {execution_id} not found"}
    try:
        mark_execution_cancelled(conn, execution_id)
    except InvalidTransitionError as e:
        return {"error": "invalid_transition", "message": str(e)}
    logger.info("Execution %s cancelled", execution_id)
    return get_execution_status(conn, execution_id)


def find_resumable_executions(conn: sqlite3.Connection) -> list[str]:
    """Ids of executions left running, oldest first."""
    rows = conn.execute(
        "SELECT id FROM script_executions WHERE status = 'running' ORDER BY created_at, rowid"
    ).fetchall()
    return [row["id"] for row in rows]


# ── Walk ───────────────────────────────────────────────────


class _Reporter:
    """Emits engine progress entries for one execution."""

    def __init__(
        self, conn: sqlite3.Connection, ingestor: LogIngestor, execution: dict[str, Any]
    ) -> None:
        self.conn = conn
        self.ingestor = ingestor
        self.execution = execution

    def emit(self, stage: str, status: str, message: str, metadata: dict[str, Any]) -> None:
        metadata = {"execution_id": self.execution["id"], **metadata}
        try:
            self.ingestor.log(
                self.conn,
                entity_type=ENTITY_TYPE,
                entity_id=self.execution["topic_id"],
                user_id=self.execution["user_id"],
                stage=stage,
                status=status,
                message=message,
                metadata=metadata,
            )
        except sqlite3.Error:
            self.conn.rollback()
            logger.exception(
                "Failed to record %s log for execution %s", stage, self.execution["id"]
            )

    def project(
        self,
        stage: str,
        status: str,
        message: str,
        project_exec: dict[str, Any],
        **extra: Any,
    ) -> None:
        metadata = {
            "project_id": project_exec["project_id"],
            "project_order": project_exec["project_order"],
            **extra,
        }
        self.emit(stage, status, message, metadata)


def _current_status(conn: sqlite3.Connection, execution_id: str) -> str:
    row = conn.execute(
        "SELECT status FROM script_executions WHERE id = ?", (execution_id,)
    ).fetchone()
    return row["status"]


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, AutomationError) and not error.permanent


def _give_up(
    conn: sqlite3.Connection,
    reporter: _Reporter,
    project_exec: dict[str, Any],
    project: dict[str, Any],
    attempt: int,
    error: str,
) -> str:
    fail_project(conn, project_exec["id"], error)
    logger.error(
        "Project %s failed after %d attempts: %s", project_exec["project_id"], attempt, error
    )
    reporter.project(
        "project_failed",
        "failed",
        f"Project '{project['name']}' failed after {attempt} attempt(s)",
        project_exec,
        attempt=attempt,
        error=error,
    )
    return error


def _run_project(
    conn: sqlite3.Connection,
    client: AutomationClient,
    reporter: _Reporter,
    execution: dict[str, Any],
    project_exec: dict[str, Any],
    project: dict[str, Any],
    merge_from: list[str] | None,
    config: dict[str, Any],
) -> str | None:
    """Run one project with retries. Returns None on success, else the last error.

    Failed attempts already recorded on the project execution (from a run
    that was interrupted) count against ``max_project_retries``. Retries
    stop early on a permanent backend error or once the execution has been
    cancelled; the backoff before retry N is ``retry_backoff_seconds * N``.
    """
    max_retries = config.get("max_project_retries", 3)
    backoff = config.get("retry_backoff_seconds", 10)
    execution_id = execution["id"]
    project_id = project_exec["project_id"]
    prior_failures = project_exec["retry_count"]

    start_project(conn, project_exec["id"])
    set_current_project(conn, execution_id, project_id)
    if prior_failures >= max_retries:
        return _give_up(
            conn,
            reporter,
            project_exec,
            project,
            prior_failures,
            project_exec["error_message"] or "retry limit reached",
        )

    def cancelled(retry_state: RetryCallState) -> bool:
        return _current_status(conn, execution_id) == "cancelled"

    def announce_retry(retry_state: RetryCallState) -> None:
        attempt = prior_failures + retry_state.attempt_number
        delay = retry_state.next_action.sleep
        error = str(retry_state.outcome.exception())
        logger.warning(
            "Project %s failed (attempt %d/%d), retrying in %ss: %s",
            project_id,
            attempt,
            max_retries,
            delay,
            error,
        )
        reporter.project(
            "project_retry",
            "warning",
            f"Project '{project['name']}' failed, retrying in {delay}s",
            project_exec,
            attempt=attempt,
            error=error,
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_retries - prior_failures) | cancelled,
        wait=wait_incrementing(start=backoff * (prior_failures + 1), increment=backoff),
        retry=retry_if_exception(_is_retryable),
        before_sleep=announce_retry,
        reraise=True,
    )

    attempt = prior_failures
    result: ProjectRunResult | None = None
    try:
        for attempt_state in retrying:
            with attempt_state:
                attempt = prior_failures + attempt_state.retry_state.attempt_number
                reporter.project(
                    "project_started",
                    "info",
                    f"Project '{project['name']}' started (attempt {attempt})",
                    project_exec,
                    attempt=attempt,
                )
                try:
                    result = client.run_project(
                        execution_id=execution_id,
                        topic_id=execution["topic_id"],
                        user_id=execution["user_id"],
                        project=project,
                        prompts=project["prompts"],
                        merge_from=merge_from,
                    )
                except AutomationError as e:
                    record_project_failure(conn, project_exec["id"], str(e))
                    increment_execution_retry(conn, execution_id)
                    raise
    except AutomationError as e:
        return _give_up(conn, reporter, project_exec, project, attempt, str(e))

    complete_project(conn, project_exec["id"])
    extra: dict[str, Any] = {}
    if result is not None and result.body is not None:
        extra["response"] = result.body
    reporter.project(
        "project_completed",
        "success",
        f"Project '{project['name']}' completed",
        project_exec,
        attempt=attempt,
        **extra,
    )
    return None


def _fail_run(
    conn: sqlite3.Connection, reporter: _Reporter, execution_id: str, error: str
) -> str:
    if _current_status(conn, execution_id) == "cancelled":
        return "cancelled"
    fail_execution(conn, execution_id, error)
    reporter.emit("execution_failed", "failed", "Script execution failed", {"error": error})
    return "failed"


def run_execution(
    execution_id: str,
    config: dict[str, Any],
    ingestor: LogIngestor,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Walk an execution's projects in order until done, failed, or cancelled.

    Safe to call again on an execution that was interrupted: completed
    projects are skipped and the one in flight is re-run.

    Args:
        execution_id: The execution to run.
        config: Validated prompt-relay config dict.
        ingestor: Where progress entries go.
        transport: Optional httpx transport for the automation client.

    Returns:
        The execution's final status.

    Raises:
        ExecutionError: If the execution does not exist.
    """
    conn = get_connection(config["db_path"])
    try:
        row = conn.execute(
            "SELECT * FROM script_executions WHERE id = ?", (execution_id,)
        ).fetchone()
        if row is None:
            raise ExecutionError("not_found", f"Execution {execution_id} not found")
        execution = dict(row)
        if execution["status"] in TERMINAL_EXECUTION_STATUSES:
            return execution["status"]
        if execution["status"] == "pending":
            mark_execution_running(conn, execution_id)

        graph = load_graph(conn, execution["script_id"])
        projects = {p["project_id"]: p for p in graph["projects"]}
        preds = predecessors(graph["edges"])
        project_execs = _project_executions(conn, execution_id)
        reporter = _Reporter(conn, ingestor, execution)

        resumed = any(pe["status"] != "pending" for pe in project_execs)
        reporter.emit(
            "execution_started",
            "info",
            "Script execution resumed" if resumed else "Script execution started",
            {"script_id": execution["script_id"], "project_count": len(project_execs)},
        )

        timeout = config.get("automation_timeout_seconds", 30)
        with AutomationClient(config["automation_url"], timeout, transport) as client:
            for project_exec in project_execs:
                if project_exec["status"] == "completed":
                    continue
                if project_exec["status"] == "failed":
                    # Stopped after the project failed but before the execution did
                    return _fail_run(
                        conn,
                        reporter,
                        execution_id,
                        f"project {project_exec['project_id']} failed: "
                        f"{project_exec['error_message']}",
                    )

                if _current_status(conn, execution_id) == "cancelled":
                    logger.info("Execution %s cancelled, stopping walk", execution_id)
                    reporter.emit(
                        "execution_cancelled", "warning", "Script execution cancelled", {}
                    )
                    return "cancelled"

                project_id = project_exec["project_id"]
                project = projects.get(project_id)
                if project is None:
                    error = f"project {project_id} is no longer part of the script"
                    fail_project(conn, project_exec["id"], error)
                    return _fail_run(conn, reporter, execution_id, error)

                sources = preds.get(project_id, [])
                merge_from = sources if len(sources) > 1 else None
                error = _run_project(
                    conn, client, reporter, execution, project_exec, project, merge_from, config
                )
                if error is not None:
                    return _fail_run(
                        conn, reporter, execution_id, f"project {project_id} failed: {error}"
                    )

        if _current_status(conn, execution_id) == "cancelled":
            return "cancelled"
        complete_execution(conn, execution_id)
        logger.info("Execution %s completed", execution_id)
        reporter.emit(
            "execution_completed",
            "success",
            "Script execution completed",
            {"project_count": len(project_execs)},
        )
        return "completed"
    finally:
        conn.close()


def _mark_crashed(db_path: str, execution_id: str, error: str) -> None:
    conn = get_connection(db_path)
    try:
        if _current_status(conn, execution_id) not in TERMINAL_EXECUTION_STATUSES:
            fail_execution(conn, execution_id, error)
    finally:
        conn.close()


async def launch_execution(
    execution_id: str,
    config: dict[str, Any],
    ingestor: LogIngestor,
    transport: httpx.BaseTransport | None = None,
) -> None:
    """Run an execution in a background thread."""
    try:
        status = await asyncio.to_thread(
            run_execution, execution_id, config, ingestor, transport
        )
        logger.info("Execution %s finished: %s", execution_id, status)
    except ExecutionError as e:
        logger.error("Failed to run execution %s: %s", execution_id, e)
    except Exception as e:
        logger.exception("Unexpected error running execution %s", execution_id)
        try:
            await asyncio.to_thread(
                _mark_crashed, config["db_path"], execution_id, f"execution crashed: {e}"
            )
        except Exception:
            logger.exception("Could not mark execution %s failed", execution_id)
