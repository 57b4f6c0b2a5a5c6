"""In-process notification bus.

Events are published to named channels:

- ``broadcast``: every connected user (new tasks appear here)
- ``user:<id>``: one user
- ``task:<id>``: the parties watching one task (live tasker location)

Delivery is at-most-once. Publishing never blocks: a subscriber whose queue
is full simply misses the event.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from errandly.config import settings
from errandly.utils import utcnow

logger = logging.getLogger("errandly.events")

BROADCAST = "broadcast"

EventType = Literal[
    "task_posted",
    "task_assigned",
    "task_started",
    "task_completed",
    "task_paid",
    "task_cancelled",
    "task_refunded",
    "offer_received",
    "offer_accepted",
    "offer_rejected",
    "tasker_location",
    "expense_submitted",
    "expense_reviewed",
]


class Event(BaseModel):
    type: EventType
    task_id: str | None = None
    data: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def payload(self) -> dict:
        return {"type": self.type, "task_id": self.task_id, **self.data}


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def task_channel(task_id: str) -> str:
    return f"task:{task_id}"


class EventBus:
    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or settings.event_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self.dropped = 0

    def subscribe(self, *channels: str) -> asyncio.Queue:
        """Return one queue receiving events from all given channels."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        for channel in channels:
            self._subscribers.setdefault(channel, set()).add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, *channels: str) -> None:
        targets = channels or tuple(self._subscribers)
        for channel in targets:
            queues = self._subscribers.get(channel)
            if not queues:
                continue
            queues.discard(queue)
            if not queues:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, event: Event) -> int:
        """Deliver to every queue on the channel. Returns how many got it."""
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug("Dropped %s event on %s: subscriber queue full", event.type, channel)
        return delivered

    def publish_many(self, channels, event: Event) -> int:
        # A queue subscribed to several of the channels gets the event once
        seen: set[int] = set()
        delivered = 0
        for channel in channels:
            for queue in list(self._subscribers.get(channel, ())):
                if id(queue) in seen:
                    continue
                seen.add(id(queue))
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    self.dropped += 1
        return delivered

    def to_user(self, user_id: str | None, event: Event) -> int:
        if not user_id:
            return 0
        return self.publish(user_channel(user_id), event)

    def close(self) -> None:
        """Wake every subscriber with a ``None`` sentinel and forget them."""
        queues = {id(q): q for qs in self._subscribers.values() for q in qs}
        for queue in queues.values():
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
        self._subscribers.clear()


event_bus = EventBus()
