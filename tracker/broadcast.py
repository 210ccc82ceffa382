"""
broadcast.py
------------
Fan-out of roster events to every connected WebSocket.

Each connection is a Subscriber with its own FIFO queue, drained by a
``pump()`` coroutine running next to the connection's receive loop.
Publishing only enqueues, so it never blocks a mutation handler.

Wire format (JSON text frame)::

    {"event": "student-added", "data": {...}, "seq": 42}

``seq`` increases by one for every event derived from the roster.  Ephemeral
events (selection spotlight) carry ``seq: null`` and are never replayed.
"""

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

log = logging.getLogger("tracker.broadcast")


class Event(str, Enum):
    # full state, sent first on every connection
    CLASSES_UPDATED = "classes-updated"

    CLASS_CREATED = "class-created"
    CLASS_DELETED = "class-deleted"
    STUDENT_ADDED = "student-added"
    STUDENT_DELETED = "student-deleted"
    STUDENT_POINTS_UPDATED = "student-points-updated"
    STUDENT_UPDATED = "student-updated"
    WEEK_RESET = "week-reset"
    ALL_POINTS_UPDATED = "all-points-updated"
    ROLLOVER_OCCURRED = "rollover-occurred"

    # ephemeral
    STUDENT_SELECTED = "student-selected"
    SELECTION_CLEARED = "selection-cleared"


class ClientEvent(str, Enum):
    """Messages a client may send up the socket (relayed, never persisted)."""

    SELECT_RANDOM_STUDENT = "select-random-student"
    CLEAR_SELECTION = "clear-selection"


def encode(event: Event, data: Dict[str, Any], seq: Optional[int]) -> str:
    return json.dumps({"event": event.value, "data": data, "seq": seq})


class Subscriber:
    def __init__(self, websocket, queue_size: int = 1000):
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def offer(self, message: str) -> bool:
        """Enqueue without waiting; a full queue drops the message."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            log.warning(f"[{self.id}] queue full, dropping event")
            return False
        return True

    async def pump(self) -> None:
        """Send queued messages in order until the socket fails or is cancelled."""
        while True:
            message = await self.queue.get()
            try:
                await self.websocket.send_text(message)
            except Exception as exc:
                log.info(f"[{self.id}] send failed, dropping subscriber: {exc}")
                self.closed = True
                return


class Broadcaster:
    """Registry of live subscribers."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Subscriber] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._subscribers)

    @property
    def seq(self) -> int:
        """Sequence number of the last roster event emitted."""
        return self._seq

    # ------------------------------------------------------------------
    def subscribe(self, websocket, snapshot: Dict[str, Any]) -> Subscriber:
        """Register a connection; its first queued message is the full *snapshot*."""
        subscriber = Subscriber(websocket, self.queue_size)
        subscriber.offer(encode(Event.CLASSES_UPDATED, {"classes": snapshot}, self._seq))
        self._subscribers[subscriber.id] = subscriber
        log.info(f"[{subscriber.id}] subscribed (total: {len(self)})")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        if self._subscribers.pop(subscriber.id, None) is not None:
            log.info(f"[{subscriber.id}] unsubscribed (total: {len(self)})")

    # ------------------------------------------------------------------
    def publish(self, event: Event, data: Dict[str, Any]) -> int:
        """Emit a roster event to everyone; returns its sequence number."""
        self._seq += 1
        self._fan_out(encode(event, data, self._seq))
        log.debug(f"published {event.value} seq={self._seq}")
        return self._seq

    def publish_ephemeral(self, event: Event, data: Dict[str, Any]) -> None:
        self._fan_out(encode(event, data, None))

    def _fan_out(self, message: str) -> None:
        for subscriber in list(self._subscribers.values()):
            if subscriber.closed:
                self._subscribers.pop(subscriber.id, None)
                continue
            subscriber.offer(message)
