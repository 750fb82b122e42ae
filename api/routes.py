"""REST route handlers for the prompt-relay API.

Routes wrap the domain functions in prompt_relay.scripts, prompt_relay.logs
and runner.engine with HTTP semantics. Those functions stay the source of
truth for business logic; error dicts they return are mapped onto statuses
by ``_check_error``.
"""

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from api.deps import get_config, get_db, get_hub, get_user_id
from api.hub import LogHub
from api.models import (
    CreateLogRequest,
    ExecuteScriptResponse,
    ExecutionDetailResponse,
    ExecutionResponse,
    LogEntryResponse,
    SaveScriptRequest,
    ScriptResponse,
)
from db.client import get_connection
from prompt_relay.logs import get_logs_by_entity, get_logs_by_user, get_recent_logs
from prompt_relay.scripts import delete_script, get_script, save_script
from runner.engine import (
    ExecutionError,
    cancel_execution,
    get_execution_status,
    launch_execution,
    list_executions,
    start_execution,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_error(result: dict[str, Any]) -> None:
    """Convert domain error dicts to HTTPException."""
    if "error" not in result:
        return
    error = result["error"]
    message = result.get("message", "Unknown error")
    if error == "not_found":
        raise HTTPException(status_code=404, detail=message)
    if error in ("invalid_transition", "invalid_input", "cycle"):
        raise HTTPException(status_code=422, detail=message)
    if error == "limit":
        raise HTTPException(status_code=409, detail=message)
    raise HTTPException(status_code=400, detail=message)


def _owned_execution(
    conn: sqlite3.Connection, execution_id: str, user_id: str
) -> dict[str, Any]:
    execution = get_execution_status(conn, execution_id)
    if execution is None or execution["user_id"] != user_id:
        raise HTTPException(status_code=404, detail=f"Execution '{execution_id}' not found")
    return execution


# ── Script endpoints ───────────────────────────────────────


@router.put("/scripts/{topic_id}", response_model=ScriptResponse)
def save_script_endpoint(
    topic_id: str,
    body: SaveScriptRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    """Create or replace the caller's script for a topic."""
    result = save_script(
        conn,
        topic_id,
        user_id,
        projects=[p.model_dump() for p in body.projects],
        edges=[e.model_dump() for e in body.edges],
    )
    _check_error(result)
    return result


@router.get("/scripts/{topic_id}", response_model=ScriptResponse)
def get_script_endpoint(
    topic_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    """Get the caller's script with ordered prompts and edges."""
    result = get_script(conn, topic_id, user_id)
    _check_error(result)
    return result


@router.delete("/scripts/{topic_id}")
def delete_script_endpoint(
    topic_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> dict[str, str]:
    result = delete_script(conn, topic_id, user_id)
    _check_error(result)
    return {"status": "deleted"}


# ── Execution endpoints ────────────────────────────────────


@router.post(
    "/scripts/{topic_id}/execute",
    status_code=202,
    response_model=ExecuteScriptResponse,
)
async def execute_script_endpoint(
    topic_id: str,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
    config: dict[str, Any] = Depends(get_config),
) -> dict[str, Any]:
    """Start a run of the caller's script and return without waiting for it."""
    try:
        accepted = await asyncio.to_thread(start_execution, conn, topic_id, user_id, config)
    except ExecutionError as e:
        _check_error({"error": e.code, "message": e.message})
        raise

    state = request.app.state
    task = asyncio.create_task(
        launch_execution(accepted["execution_id"], config, state.ingestor, state.transport)
    )
    state.execution_tasks.add(task)
    task.add_done_callback(state.execution_tasks.discard)
    return accepted


@router.get("/scripts/{topic_id}/executions", response_model=list[ExecutionResponse])
def list_executions_endpoint(
    topic_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> list[dict[str, Any]]:
    """List the caller's executions for a topic, newest first."""
    return list_executions(conn, topic_id, user_id)


@router.get("/executions/{execution_id}", response_model=ExecutionDetailResponse)
def get_execution_endpoint(
    execution_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    """Get an execution with its per-project status."""
    return _owned_execution(conn, execution_id, user_id)


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionDetailResponse)
def cancel_execution_endpoint(
    execution_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> dict[str, Any]:
    _owned_execution(conn, execution_id, user_id)
    result = cancel_execution(conn, execution_id)
    _check_error(result)
    return result


# ── Process log endpoints ──────────────────────────────────


@router.post("/process-logs", status_code=201, response_model=LogEntryResponse)
def create_log_endpoint(
    body: CreateLogRequest,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Store a log entry reported by a remote producer and push it to live viewers."""
    try:
        return request.app.state.ingestor.ingest(conn, body)
    except sqlite3.Error as e:
        logger.error(
            "Failed to store process log for %s/%s: %s", body.entity_type, body.entity_id, e
        )
        raise HTTPException(status_code=500, detail="Failed to store log") from e


@router.get("/process-logs", response_model=list[LogEntryResponse])
def list_user_logs_endpoint(
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    conn: sqlite3.Connection = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> list[dict[str, Any]]:
    return get_logs_by_user(conn, user_id, limit, offset)


@router.get(
    "/process-logs/{entity_type}/{entity_id}",
    response_model=list[LogEntryResponse],
    dependencies=[Depends(get_user_id)],
)
def list_entity_logs_endpoint(
    entity_type: str,
    entity_id: str,
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    """Entries for one entity, newest first."""
    return get_logs_by_entity(conn, entity_type, entity_id, limit, offset)


def _format_sse(event_type: str, data: dict[str, Any]) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


async def stream_log_events(
    request: Request,
    hub: LogHub,
    db_path: str,
    entity_type: str,
    entity_id: str,
    keepalive_seconds: float = 15.0,
    replay_limit: int = 100,
) -> AsyncGenerator[str, None]:
    """Generate SSE frames for an entity: connected, replay, then live entries.

    The subscription is registered before the replay is read, so an entry
    stored in between is seen twice at most; the live side skips ids that
    were already replayed.
    """
    subscription = hub.subscribe(entity_type, entity_id)
    try:
        yield _format_sse(
            "connected",
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "message": "Connected to log stream",
            },
        )

        conn = get_connection(db_path)
        try:
            history = get_recent_logs(conn, entity_type, entity_id, replay_limit)
        finally:
            conn.close()
        replayed = {entry["id"] for entry in history}
        for entry in history:
            yield _format_sse("log", entry)

        while True:
            if await request.is_disconnected():
                logger.info("Log stream client disconnected: %s/%s", entity_type, entity_id)
                break
            try:
                entry = await asyncio.wait_for(subscription.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if entry["id"] in replayed:
                continue
            yield _format_sse("log", entry)
    finally:
        hub.unsubscribe(entity_type, entity_id, subscription)


@router.get(
    "/process-logs/{entity_type}/{entity_id}/stream",
    dependencies=[Depends(get_user_id)],
)
async def stream_entity_logs_endpoint(
    entity_type: str,
    entity_id: str,
    request: Request,
    hub: LogHub = Depends(get_hub),
    config: dict[str, Any] = Depends(get_config),
) -> StreamingResponse:
    """Stream an entity's log entries via Server-Sent Events."""
    return StreamingResponse(
        stream_log_events(
            request,
            hub,
            request.app.state.db_path,
            entity_type,
            entity_id,
            keepalive_seconds=config.get("stream_keepalive_seconds", 15),
            replay_limit=config.get("stream_replay_limit", 100),
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
