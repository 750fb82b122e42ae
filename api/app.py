"""FastAPI application for prompt-relay."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.hub import LogHub
from api.ingest import LogIngestor, consume_log_queue
from api.routes import router
from db.migrations import init_db
from prompt_relay.config import DEFAULTS
from runner.engine import find_resumable_executions, launch_execution
from runner.retention import run_retention_sweeper

logger = logging.getLogger(__name__)


def create_app(
    db_path: str,
    config: dict[str, Any] | None = None,
    transport: httpx.BaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Path to the SQLite database. Tables are created if missing.
        config: prompt-relay config dict; missing optional fields take defaults.
        transport: Optional httpx transport for the automation backend client.
    """
    config = {**DEFAULTS, **(config or {}), "db_path": db_path}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        stop = asyncio.Event()
        tasks: list[asyncio.Task[None]] = [
            asyncio.create_task(
                consume_log_queue(
                    db_path,
                    app.state.ingestor,
                    stop,
                    poll_interval=config["queue_poll_interval"],
                    max_deliveries=config["queue_max_deliveries"],
                )
            ),
            asyncio.create_task(
                run_retention_sweeper(
                    db_path,
                    config["log_retention_days"],
                    config["retention_interval_seconds"],
                    stop,
                )
            ),
        ]

        if config["resume_on_startup"]:
            conn = init_db(db_path)
            try:
                resumable = find_resumable_executions(conn)
            finally:
                conn.close()
            for execution_id in resumable:
                logger.info("Resuming execution %s", execution_id)
                task = asyncio.create_task(
                    launch_execution(execution_id, config, app.state.ingestor, transport)
                )
                app.state.execution_tasks.add(task)
                task.add_done_callback(app.state.execution_tasks.discard)

        yield

        stop.set()
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Background task did not stop in time, cancelling")

    init_db(db_path).close()

    app = FastAPI(title="prompt-relay", lifespan=lifespan)
    app.state.db_path = db_path
    app.state.config = config
    app.state.hub = LogHub(outbox_size=config["hub_outbox_size"])
    app.state.ingestor = LogIngestor(app.state.hub)
    app.state.transport = transport
    app.state.execution_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app
