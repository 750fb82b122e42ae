"""Tests for prompt_relay/logs.py and api/ingest.py: storing and queueing log events."""

import asyncio
import json
import sqlite3
from pathlib import Path

import pytest
from pydantic import ValidationError

from api.deps import get_dead_letters
from api.hub import LogHub
from api.ingest import LogIngestor, consume_log_queue, drain_log_queue
from db.migrations import init_db
from prompt_relay.logs import (
    LogEventRequest,
    enqueue_log,
    get_logs_by_entity,
    get_logs_by_user,
    get_recent_logs,
)


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "test.db")
    init_db(path).close()
    return path


@pytest.fixture()
def conn(db_path: str) -> sqlite3.Connection:
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture()
def ingestor() -> LogIngestor:
    return LogIngestor(LogHub())


class FlakyIngestor(LogIngestor):
    """Fails the first ``failures`` ingest calls with a storage error."""

    def __init__(self, hub: LogHub, failures: int) -> None:
        super().__init__(hub)
        self.failures = failures

    def ingest(self, conn, event):
        if self.failures > 0:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().ingest(conn, event)


def _event(**overrides) -> dict:
    event = {
        "entity_type": "topic",
        "entity_id": "topic-1",
        "user_id": "user-1",
        "stage": "upload",
        "status": "info",
        "message": "uploading",
    }
    event.update(overrides)
    return event


def _queue_row(conn: sqlite3.Connection, message_id: str) -> sqlite3.Row:
    return conn.execute("SELECT * FROM log_queue WHERE id = ?", (message_id,)).fetchone()


def _log_count(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM process_logs").fetchone()[0]


class TestLogEventRequest:
    def test_open_metadata_for_custom_stage(self):
        event = LogEventRequest(**_event(metadata={"anything": [1, 2]}))
        assert event.metadata == {"anything": [1, 2]}

    def test_engine_stage_requires_shape(self):
        with pytest.raises(ValidationError, match="metadata does not match stage"):
            LogEventRequest(**_event(stage="project_started", metadata={"execution_id": "e"}))

    def test_engine_stage_metadata_normalized(self):
        event = LogEventRequest(
            **_event(stage="execution_started", metadata={"execution_id": "e", "extra": 1})
        )
        assert event.metadata == {"execution_id": "e", "extra": 1}

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            LogEventRequest(**_event(status="meh"))


class TestIngest:
    def test_persists_and_publishes(self, conn):
        hub = LogHub()
        published = []
        hub.publish_log = published.append
        entry = LogIngestor(hub).ingest(conn, LogEventRequest(**_event(metadata={"k": "v"})))

        assert published == [entry]
        stored = get_logs_by_entity(conn, "topic", "topic-1")
        assert stored[0]["id"] == entry["id"]
        assert stored[0]["metadata"] == {"k": "v"}

    def test_log_keyword_helper(self, conn, ingestor):
        entry = ingestor.log(
            conn,
            entity_type="topic",
            entity_id="topic-1",
            user_id="user-1",
            stage="upload",
            status="success",
            message="done",
        )
        assert entry["status"] == "success"
        assert entry["metadata"] is None


class TestQueries:
    def test_entity_newest_first_and_recent_chronological(self, conn, ingestor):
        for i in range(5):
            ingestor.ingest(conn, LogEventRequest(**_event(message=f"m{i}")))

        newest = get_logs_by_entity(conn, "topic", "topic-1", limit=2)
        assert [e["message"] for e in newest] == ["m4", "m3"]

        page = get_logs_by_entity(conn, "topic", "topic-1", limit=2, offset=2)
        assert [e["message"] for e in page] == ["m2", "m1"]

        recent = get_recent_logs(conn, "topic", "topic-1", limit=3)
        assert [e["message"] for e in recent] == ["m2", "m3", "m4"]

    def test_by_user(self, conn, ingestor):
        ingestor.ingest(conn, LogEventRequest(**_event(user_id="alice")))
        ingestor.ingest(conn, LogEventRequest(**_event(user_id="bob")))
        assert [e["user_id"] for e in get_logs_by_user(conn, "alice")] == ["alice"]


class TestDrainLogQueue:
    def test_acks_valid_messages_in_order(self, conn, ingestor):
        first = enqueue_log(conn, _event(message="first"))
        second = enqueue_log(conn, _event(message="second"))

        result = drain_log_queue(conn, ingestor)

        assert result.acked == 2
        assert _queue_row(conn, first)["acked_at"] is not None
        assert _queue_row(conn, second)["delivery_count"] == 1
        recent = get_recent_logs(conn, "topic", "topic-1")
        assert [e["message"] for e in recent] == ["first", "second"]

    def test_acked_messages_not_redelivered(self, conn, ingestor):
        enqueue_log(conn, _event())
        drain_log_queue(conn, ingestor)
        assert drain_log_queue(conn, ingestor).acked == 0
        assert _log_count(conn) == 1

    def test_malformed_json_dead_lettered(self, conn, ingestor):
        conn.execute(
            "INSERT INTO log_queue (id, body, enqueued_at) VALUES ('bad', '{not json', '2024-01-01')"
        )
        conn.commit()

        result = drain_log_queue(conn, ingestor)

        assert result.dead_lettered == 1
        dead = get_dead_letters(conn)
        assert dead[0]["id"] == "bad"
        assert dead[0]["last_error"].startswith("malformed")

    def test_schema_violation_dead_lettered(self, conn, ingestor):
        message_id = enqueue_log(conn, {"entity_type": "topic"})
        result = drain_log_queue(conn, ingestor)
        assert result.dead_lettered == 1
        assert _queue_row(conn, message_id)["dead_lettered_at"] is not None
        assert _log_count(conn) == 0

    def test_unknown_ids_acked_and_skipped(self, conn, ingestor):
        message_id = enqueue_log(conn, _event(entity_id="unknown"))
        result = drain_log_queue(conn, ingestor)
        assert result.skipped == 1
        assert _queue_row(conn, message_id)["acked_at"] is not None
        assert _log_count(conn) == 0

    def test_storage_failure_redelivers_and_preserves_order(self, conn):
        ingestor = FlakyIngestor(LogHub(), failures=1)
        first = enqueue_log(conn, _event(message="first"))
        second = enqueue_log(conn, _event(message="second"))

        result = drain_log_queue(conn, ingestor)
        assert result.failed == 1
        assert result.acked == 0
        row = _queue_row(conn, first)
        assert row["acked_at"] is None
        assert row["last_error"] == "database is locked"
        # Batch stopped before the second message
        assert _queue_row(conn, second)["delivery_count"] == 0

        result = drain_log_queue(conn, ingestor)
        assert result.acked == 2
        assert _queue_row(conn, first)["delivery_count"] == 2
        recent = get_recent_logs(conn, "topic", "topic-1")
        assert [e["message"] for e in recent] == ["first", "second"]

    def test_dead_lettered_after_max_deliveries(self, conn):
        ingestor = FlakyIngestor(LogHub(), failures=10)
        message_id = enqueue_log(conn, _event())

        for _ in range(2):
            drain_log_queue(conn, ingestor, max_deliveries=3)
        assert _queue_row(conn, message_id)["dead_lettered_at"] is None

        result = drain_log_queue(conn, ingestor, max_deliveries=3)
        assert result.dead_lettered == 1
        assert _queue_row(conn, message_id)["dead_lettered_at"] is not None
        assert drain_log_queue(conn, ingestor, max_deliveries=3).failed == 0


class TestConsumeLogQueue:
    @pytest.mark.asyncio
    async def test_drains_until_stopped(self, db_path, conn, ingestor):
        enqueue_log(conn, _event(message="queued"))
        stop = asyncio.Event()
        task = asyncio.create_task(
            consume_log_queue(db_path, ingestor, stop, poll_interval=0.01)
        )

        for _ in range(100):
            if _log_count(conn):
                break
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert task.done()
        assert [e["message"] for e in get_logs_by_entity(conn, "topic", "topic-1")] == ["queued"]

    def test_enqueue_stores_json_body(self, conn):
        message_id = enqueue_log(conn, _event())
        assert json.loads(_queue_row(conn, message_id)["body"])["stage"] == "upload"
