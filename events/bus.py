"""
Event Bus — in-process fan-out of job and conversation events.

publish() never blocks and never awaits: each subscriber owns a bounded
asyncio.Queue and a full queue drops per its policy instead of slowing
the publisher (a dispatcher worker or the conversation manager).

    bus = EventBus(buffer=256)
    sub = bus.subscribe(device_id="d1", types={EventType.JOB_COMPLETED})
    bus.publish(Event(type=EventType.JOB_COMPLETED, device_id="d1", data={...}))
    event = await sub.get(timeout=5)
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Callable, Iterable, Optional

from models.schemas import Event, EventType

logger = structlog.get_logger()

DROP_OLDEST = "drop_oldest"
DROP_NEW = "drop_new"


class Subscription:
    """One consumer's view of the bus. Iterate it, or call get()."""

    def __init__(
        self,
        bus: EventBus,
        buffer: int,
        drop_policy: str = DROP_OLDEST,
        device_id: str = None,
        types: Iterable[EventType] = None,
    ):
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=buffer)
        self.drop_policy = drop_policy
        self.device_id = device_id
        self.types = frozenset(EventType(t) for t in types) if types else None
        self.dropped = 0
        self.closed = False

    def matches(self, event: Event) -> bool:
        if self.device_id is not None and event.device_id != self.device_id:
            return False
        if self.types is not None and event.type not in self.types:
            return False
        return True

    def offer(self, event: Event) -> bool:
        """Enqueue without blocking. Returns False when the event was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass

        self.dropped += 1
        if self.drop_policy == DROP_NEW:
            return False
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self._queue.put_nowait(event)
        return True

    async def get(self, timeout: float = None) -> Optional[Event]:
        """Next event, or None when `timeout` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class EventBus:
    """Publish/subscribe hub with bounded, per-subscriber buffers."""

    def __init__(self, buffer: int = 256, drop_policy: str = DROP_OLDEST):
        if drop_policy not in (DROP_OLDEST, DROP_NEW):
            raise ValueError(f"Unknown drop policy: {drop_policy}")
        self.buffer = buffer
        self.drop_policy = drop_policy
        self._subscribers: list[Subscription] = []
        self._listeners: list[Callable[[Event], None]] = []

    def subscribe(
        self, device_id: str = None, types: Iterable[EventType] = None,
        buffer: int = None, drop_policy: str = None,
    ) -> Subscription:
        sub = Subscription(
            self,
            buffer=buffer or self.buffer,
            drop_policy=drop_policy or self.drop_policy,
            device_id=device_id,
            types=types,
        )
        self._subscribers.append(sub)
        logger.debug("event_subscriber_added", device_id=device_id, subscribers=len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
            logger.debug("event_subscriber_removed", dropped=sub.dropped, subscribers=len(self._subscribers))

    def add_listener(self, listener: Callable[[Event], None]) -> None:
        """Register a synchronous callback invoked for every event (e.g. the Redis relay)."""
        self._listeners.append(listener)

    def publish(self, event: Event) -> None:
        for sub in list(self._subscribers):
            if sub.matches(event) and not sub.offer(event):
                logger.warning("event_dropped", event_type=event.type.value,
                               device_id=event.device_id, dropped=sub.dropped)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("event_listener_failed", event_type=event.type.value, error=str(e))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()


class ProgressThrottle:
    """
    Rate-limits job.progress events per job.

    allow() is True for the first update of a job and then at most once per
    `interval` seconds; terminal events bypass it and call forget().
    """

    def __init__(self, interval: float = 1.5, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: dict[str, float] = {}

    def allow(self, job_id: str) -> bool:
        now = self._clock()
        last = self._last.get(job_id)
        if last is not None and now - last < self.interval:
            return False
        self._last[job_id] = now
        return True

    def forget(self, job_id: str) -> None:
        self._last.pop(job_id, None)
