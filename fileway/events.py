"""
Notification channel between the core services and their host.

Each service publishes typed events into its own bounded queue; the host
consumes them at its own pace. Publishing never blocks the service: when
the queue is full the oldest event is discarded.
"""

import asyncio
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel

from fileway.config import EVENT_QUEUE_SIZE

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Every notification a service can emit."""
    DEVICE_FOUND = "device_found"
    DEVICE_LIST_CHANGED = "device_list_changed"
    DEVICE_LOST = "device_lost"
    TRANSFER_OFFERED = "transfer_offered"
    TRANSFER_PROGRESS = "transfer_progress"
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_ACCEPTED = "transfer_accepted"
    TRANSFER_REJECTED = "transfer_rejected"
    TRANSFER_CANCELLED = "transfer_cancelled"
    TRANSFER_FAILED = "transfer_failed"
    SEND_COMPLETED = "send_completed"


class Event(BaseModel):
    type: EventType
    data: dict[str, Any] = {}


class EventChannel:
    """Bounded FIFO of events with drop-oldest overflow."""

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, data=data or {})
        while True:
            try:
                self._queue.put_nowait(event)
                return event
            except asyncio.QueueFull:
                stale = self._queue.get_nowait()
                self.dropped += 1
                logger.warning(f"Event queue full, dropping {stale.type.value}")

    async def get(self) -> Event:
        return await self._queue.get()

    def drain(self) -> list[Event]:
        """Return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __len__(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self._queue.get()
