"""Tests for api/hub.py: live log fan-out."""

import asyncio
import threading

import pytest

from api.hub import LogHub, entity_key


def _entry(entry_id: str, entity_id: str = "topic-1", user_id: str = "user-1") -> dict:
    return {
        "id": entry_id,
        "entity_type": "script_execution",
        "entity_id": entity_id,
        "user_id": user_id,
        "message": f"entry {entry_id}",
    }


async def _drain(queue: asyncio.Queue) -> list[dict]:
    # Let call_soon_threadsafe callbacks run
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestSubscribe:
    def test_entity_key(self):
        assert entity_key("topic", "abc") == "topic:abc"

    @pytest.mark.asyncio
    async def test_two_subscribers_both_receive(self):
        hub = LogHub()
        first = hub.subscribe("script_execution", "topic-1")
        second = hub.subscribe("script_execution", "topic-1")

        offered = hub.publish("script_execution", "topic-1", _entry("1"))

        assert offered == 2
        assert [e["id"] for e in await _drain(first.queue)] == ["1"]
        assert [e["id"] for e in await _drain(second.queue)] == ["1"]

    @pytest.mark.asyncio
    async def test_unsubscribed_viewer_stops_receiving(self):
        hub = LogHub()
        first = hub.subscribe("script_execution", "topic-1")
        second = hub.subscribe("script_execution", "topic-1")

        hub.unsubscribe("script_execution", "topic-1", first)
        hub.publish("script_execution", "topic-1", _entry("2"))

        assert await _drain(first.queue) == []
        assert [e["id"] for e in await _drain(second.queue)] == ["2"]
        assert hub.subscriber_count("script_execution", "topic-1") == 1

    @pytest.mark.asyncio
    async def test_last_unsubscribe_removes_key(self):
        hub = LogHub()
        sub = hub.subscribe("script_execution", "topic-1")
        hub.unsubscribe("script_execution", "topic-1", sub)
        hub.unsubscribe("script_execution", "topic-1", sub)
        assert hub.subscriber_count("script_execution", "topic-1") == 0
        assert hub.publish("script_execution", "topic-1", _entry("x")) == 0

    @pytest.mark.asyncio
    async def test_other_entities_not_delivered(self):
        hub = LogHub()
        sub = hub.subscribe("script_execution", "topic-1")
        hub.publish("script_execution", "topic-2", _entry("1", entity_id="topic-2"))
        assert await _drain(sub.queue) == []


class TestPublish:
    @pytest.mark.asyncio
    async def test_fifo_per_subscriber(self):
        hub = LogHub()
        sub = hub.subscribe("script_execution", "topic-1")
        for i in range(5):
            hub.publish("script_execution", "topic-1", _entry(str(i)))
        assert [e["id"] for e in await _drain(sub.queue)] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_full_outbox_drops_newest(self):
        hub = LogHub(outbox_size=2)
        slow = hub.subscribe("script_execution", "topic-1")
        fast = hub.subscribe("script_execution", "topic-1")

        for i in range(2):
            hub.publish("script_execution", "topic-1", _entry(str(i)))
        await asyncio.sleep(0)
        assert [e["id"] for e in await _drain(fast.queue)] == ["0", "1"]

        hub.publish("script_execution", "topic-1", _entry("2"))
        await asyncio.sleep(0)

        assert [e["id"] for e in await _drain(slow.queue)] == ["0", "1"]
        assert slow.dropped == 1
        assert [e["id"] for e in await _drain(fast.queue)] == ["2"]
        assert fast.dropped == 0

    @pytest.mark.asyncio
    async def test_publish_log_reaches_user_feed(self):
        hub = LogHub()
        entity_sub = hub.subscribe("script_execution", "topic-1")
        user_sub = hub.subscribe("user", "user-1")

        offered = hub.publish_log(_entry("1"))

        assert offered == 2
        assert len(await _drain(entity_sub.queue)) == 1
        assert len(await _drain(user_sub.queue)) == 1

    @pytest.mark.asyncio
    async def test_user_entity_not_published_twice(self):
        hub = LogHub()
        user_sub = hub.subscribe("user", "user-1")
        entry = {**_entry("1"), "entity_type": "user", "entity_id": "user-1"}
        assert hub.publish_log(entry) == 1
        assert len(await _drain(user_sub.queue)) == 1

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        hub = LogHub()
        sub = hub.subscribe("script_execution", "topic-1")

        thread = threading.Thread(
            target=lambda: [
                hub.publish("script_execution", "topic-1", _entry(str(i))) for i in range(3)
            ]
        )
        thread.start()
        thread.join()

        received = [await asyncio.wait_for(sub.get(), timeout=1) for _ in range(3)]
        assert [e["id"] for e in received] == ["0", "1", "2"]
