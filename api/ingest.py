"""Log ingestion for prompt-relay.

Two ways in, one way out. Co-located producers (the execution engine, the
``POST /process-logs`` route) call ``LogIngestor.ingest`` directly. Remote
producers put JSON events on the ``log_queue`` table, which a single
background task per process drains. Either way the entry is persisted
first and then handed to the hub.

Queue delivery is at-least-once: a message is acknowledged only after its
entry is stored and published, a storage failure leaves it for
redelivery, and after ``max_deliveries`` attempts it is dead-lettered.
"""

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from api.deps import (
    ack_message,
    dead_letter_message,
    get_pending_messages,
    mark_delivery_attempt,
    record_delivery_failure,
)
from api.hub import LogHub
from db.client import get_connection
from prompt_relay.logs import LogEventRequest, create_log

logger = logging.getLogger(__name__)

UNKNOWN_ID = "unknown"


class LogIngestor:
    """Persists log events and republishes them to the hub."""

    def __init__(self, hub: LogHub) -> None:
        self.hub = hub

    def ingest(self, conn: sqlite3.Connection, event: LogEventRequest) -> dict[str, Any]:
        """Store ``event`` and publish it. Raises sqlite3.Error if the write fails."""
        entry = create_log(conn, event)
        self.hub.publish_log(entry)
        return entry

    def log(
        self,
        conn: sqlite3.Connection,
        *,
        entity_type: str,
        entity_id: str,
        user_id: str,
        stage: str,
        status: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        machine_id: str | None = None,
    ) -> dict[str, Any]:
        """Convenience wrapper building the LogEventRequest from keywords."""
        event = LogEventRequest(
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            machine_id=machine_id,
            stage=stage,
            status=status,
            message=message,
            metadata=metadata,
        )
        return self.ingest(conn, event)


@dataclass
class DrainResult:
    acked: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    failed: int = 0


def drain_log_queue(
    conn: sqlite3.Connection,
    ingestor: LogIngestor,
    max_deliveries: int = 5,
    batch_size: int = 100,
) -> DrainResult:
    """Process one batch of pending queue messages in enqueue order.

    A storage failure stops the batch so later events for the same
    entity are not delivered ahead of the one being retried.
    """
    result = DrainResult()

    for message in get_pending_messages(conn, batch_size):
        message_id = message["id"]
        attempt = mark_delivery_attempt(conn, message_id)

        try:
            event = LogEventRequest.model_validate(json.loads(message["body"]))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Dead-lettering malformed log message %s: %s", message_id, e)
            dead_letter_message(conn, message_id, f"malformed: {e}")
            result.dead_lettered += 1
            continue

        if event.entity_id == UNKNOWN_ID or event.user_id == UNKNOWN_ID:
            logger.warning(
                "Skipping log with unknown IDs: entity_id=%s user_id=%s",
                event.entity_id,
                event.user_id,
            )
            ack_message(conn, message_id)
            result.skipped += 1
            continue

        try:
            ingestor.ingest(conn, event)
        except sqlite3.Error as e:
            conn.rollback()
            result.failed += 1
            if attempt >= max_deliveries:
                logger.error(
                    "Log message %s failed %d times, dead-lettering: %s",
                    message_id,
                    attempt,
                    e,
                )
                dead_letter_message(conn, message_id, str(e))
                result.dead_lettered += 1
                continue
            logger.warning(
                "Failed to store log message %s (attempt %d/%d): %s",
                message_id,
                attempt,
                max_deliveries,
                e,
            )
            record_delivery_failure(conn, message_id, str(e))
            break

        ack_message(conn, message_id)
        result.acked += 1

    return result


async def consume_log_queue(
    db_path: str,
    ingestor: LogIngestor,
    stop: asyncio.Event,
    poll_interval: float = 0.5,
    max_deliveries: int = 5,
) -> None:
    """Background task that drains the log queue until ``stop`` is set.

    Opens its own DB connection per poll cycle.
    """
    logger.info("Log queue consumer started")
    while not stop.is_set():
        try:
            conn = get_connection(db_path)
            try:
                drained = drain_log_queue(conn, ingestor, max_deliveries)
                if drained.dead_lettered:
                    logger.warning("Dead-lettered %d log message(s)", drained.dead_lettered)
            finally:
                conn.close()
        except Exception:
            logger.exception("Error in log queue consumer")

        try:
            await asyncio.wait_for(stop.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Log queue consumer stopped")
