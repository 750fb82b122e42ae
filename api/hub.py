"""Live log fan-out for prompt-relay.

A LogHub maps an entity key (``entity_type:entity_id``) to the outboxes of
the viewers currently streaming that entity. One hub is created per app in
``create_app`` and stored on ``app.state.hub``; nothing here is global.

Publishing never blocks: each outbox is a bounded asyncio.Queue owned by
the subscriber's event loop, entries are handed over with
``call_soon_threadsafe`` (so the engine's worker threads can publish too),
and a full outbox drops the new entry for that subscriber only.
"""

import asyncio
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


def entity_key(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


class Subscription:
    """One viewer's bounded outbox."""

    def __init__(self, key: str, maxsize: int, loop: asyncio.AbstractEventLoop) -> None:
        self.key = key
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._loop = loop

    def offer(self, entry: dict[str, Any]) -> None:
        """Schedule ``entry`` onto the outbox. Safe from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._put, entry)
        except RuntimeError:
            # Loop already closed: the viewer is gone
            self.dropped += 1

    def _put(self, entry: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Log outbox full, dropping entry for %s", self.key)

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()


class LogHub:
    """Registry of live log subscribers keyed by entity."""

    def __init__(self, outbox_size: int = 64) -> None:
        self.outbox_size = outbox_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, entity_type: str, entity_id: str) -> Subscription:
        """Register a new outbox. Must be called from the subscriber's event loop."""
        key = entity_key(entity_type, entity_id)
        subscription = Subscription(key, self.outbox_size, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(key, set()).add(subscription)
            count = len(self._subscribers[key])
        logger.info("Log subscriber registered for %s (total: %d)", key, count)
        return subscription

    def unsubscribe(
        self, entity_type: str, entity_id: str, subscription: Subscription
    ) -> None:
        key = entity_key(entity_type, entity_id)
        with self._lock:
            subscribers = self._subscribers.get(key)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            remaining = len(subscribers)
            if not subscribers:
                del self._subscribers[key]
        logger.info("Log subscriber removed for %s (remaining: %d)", key, remaining)

    def publish(self, entity_type: str, entity_id: str, entry: dict[str, Any]) -> int:
        """Offer ``entry`` to every subscriber of the entity. Returns how many were offered."""
        key = entity_key(entity_type, entity_id)
        with self._lock:
            snapshot = list(self._subscribers.get(key, ()))
        for subscription in snapshot:
            subscription.offer(entry)
        return len(snapshot)

    def publish_log(self, entry: dict[str, Any]) -> int:
        """Publish a stored log entry to its entity and to its user's feed."""
        offered = self.publish(entry["entity_type"], entry["entity_id"], entry)
        if entry["entity_type"] != "user":
            offered += self.publish("user", entry["user_id"], entry)
        return offered

    def subscriber_count(self, entity_type: str, entity_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(entity_key(entity_type, entity_id), ()))
