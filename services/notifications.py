"""Queue change notifications.

The core only ever calls `publish(event_kind, payload)` and never waits on
delivery. Subscribers get their own asyncio.Queue; a subscriber that falls
behind loses events rather than slowing the publisher down.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)

INSERTED = "inserted"
HIGH_PRIORITY_ALERT = "high-priority-alert"
DEQUEUED = "dequeued"
QUEUE_UPDATED = "queue-updated"
REMOVED = "removed"
UPDATED = "updated"
STATUS_UPDATED = "status-updated"


class EventPublisher:
    def __init__(self, history_size: int = 100, subscriber_queue_size: int = 100):
        self.history: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=history_size)
        self.subscriber_queue_size = subscriber_queue_size
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.subscriber_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event_kind: str, payload: Dict[str, Any]):
        self.history.append((event_kind, payload))
        logger.debug("Publishing %s to %d subscribers", event_kind, len(self._subscribers))
        for queue in self._subscribers:
            try:
                queue.put_nowait((event_kind, payload))
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping %s event", event_kind)

    def events(self, event_kind: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.history if kind == event_kind]
