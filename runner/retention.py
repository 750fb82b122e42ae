"""Process log retention for prompt-relay.

Runs as an asyncio background task inside the FastAPI lifespan and as the
one-shot ``prompt-relay sweep-logs`` command.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from db.client import get_connection

logger = logging.getLogger(__name__)


def retention_cutoff(retention_days: int, now: datetime | None = None) -> str:
    """ISO timestamp before which log entries are expired."""
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(days=retention_days)).isoformat()


def delete_old_logs(
    conn: sqlite3.Connection, retention_days: int, now: datetime | None = None
) -> int:
    """Delete every process log created before the retention cutoff.

    Returns:
        Number of rows deleted.
    """
    cutoff = retention_cutoff(retention_days, now)
    cursor = conn.execute("DELETE FROM process_logs WHERE created_at < ?", (cutoff,))
    conn.commit()
    return cursor.rowcount


async def run_retention_sweeper(
    db_path: str,
    retention_days: int,
    interval_seconds: float,
    stop: asyncio.Event,
) -> None:
    """Sweep expired logs now and then every ``interval_seconds`` until ``stop`` is set."""
    logger.info(
        "Retention sweeper started (retention=%d day(s), interval=%ss)",
        retention_days,
        interval_seconds,
    )
    while not stop.is_set():
        try:
            conn = get_connection(db_path)
            try:
                deleted = delete_old_logs(conn, retention_days)
            finally:
                conn.close()
            if deleted:
                logger.info("Deleted %d expired process log(s)", deleted)
        except Exception:
            logger.exception("Error in retention sweeper")

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Retention sweeper stopped")
