"""Per-job progress fan-out with bounded, drop-oldest subscriber queues."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .types import EventType, ProgressEvent

logger = logging.getLogger(__name__)

_TERMINAL_TYPES = (EventType.ANSWER, EventType.COMPLETE, EventType.ERROR)


def _offer(queue: "asyncio.Queue[Optional[ProgressEvent]]", item: Optional[ProgressEvent]) -> int:
    """Enqueue without blocking, evicting the oldest entries when full."""

    dropped = 0
    while True:
        try:
            queue.put_nowait(item)
            return dropped
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                dropped += 1
            except asyncio.QueueEmpty:
                pass


class Subscription:
    """Async iterator over one subscriber's events; ends when the job finishes."""

    def __init__(self, broadcaster: "ProgressBroadcaster", queue: "asyncio.Queue[Optional[ProgressEvent]]"):
        self._broadcaster = broadcaster
        self._queue = queue
        self.dropped = 0
        self._done = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            self._done = True
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._broadcaster._unsubscribe(self)


class ProgressBroadcaster:
    def __init__(self, job_id: str, queue_size: int = 64):
        self.job_id = job_id
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._sequence = 0
        self._last_status: Optional[ProgressEvent] = None
        self._terminal: List[ProgressEvent] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_status(self) -> Optional[ProgressEvent]:
        return self._last_status

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: EventType, data: Dict[str, Any]) -> ProgressEvent:
        """Fan an event out to every subscriber; never blocks the caller."""

        if self._closed:
            raise RuntimeError(f"progress channel for {self.job_id} is closed")
        self._sequence += 1
        event = ProgressEvent(type=event_type, job_id=self.job_id, sequence=self._sequence, data=data)
        if event_type == EventType.STATUS:
            self._last_status = event
        elif event_type in _TERMINAL_TYPES:
            self._terminal.append(event)
        for subscription in list(self._subscribers):
            dropped = _offer(subscription._queue, event)
            if dropped:
                subscription.dropped += dropped
                logger.debug("Dropped %s events for slow subscriber on %s", dropped, self.job_id)
        return event

    def subscribe(self) -> Subscription:
        queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue(maxsize=self.queue_size)
        subscription = Subscription(self, queue)
        if self._last_status is not None:
            queue.put_nowait(self._last_status)
        if self._closed:
            for event in self._terminal:
                _offer(queue, event)
            _offer(queue, None)
        else:
            self._subscribers.append(subscription)
        return subscription

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers):
            _offer(subscription._queue, None)
        self._subscribers.clear()

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
