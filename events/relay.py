"""
RedisEventRelay — mirrors bus events into a Redis Stream.

Lets UI processes other than the one running the dispatcher follow job
progress and handoffs (XREAD on the stream). The bus hands events over
synchronously; the relay buffers them and a background task XADDs them,
so a slow or unreachable Redis never blocks publish().
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

from models.schemas import Event

logger = structlog.get_logger()


class RedisEventRelay:

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        stream: str = "automation:events",
        maxlen: int = 10000,
        buffer: int = 1024,
        client: Any = None,
    ):
        self._redis_url = redis_url
        self.stream = stream
        self.maxlen = maxlen
        self._redis = client
        self._pending: asyncio.Queue[Event] = asyncio.Queue(maxsize=buffer)
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0
        self.relayed = 0

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=10,
            )
        await self._redis.ping()
        logger.info("event_relay_connected", url=self._redis_url, stream=self.stream)

    def __call__(self, event: Event) -> None:
        """Bus listener entry point; never blocks."""
        try:
            self._pending.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("event_relay_overflow", event_type=event.type.value, dropped=self.dropped)

    @staticmethod
    def to_fields(event: Event) -> dict[str, str]:
        return {
            "id": event.id,
            "type": event.type.value,
            "device_id": event.device_id,
            "data": json.dumps(event.data, default=str),
            "timestamp": event.timestamp.isoformat(),
        }

    async def forward(self, event: Event) -> bool:
        try:
            await self._redis.xadd(self.stream, self.to_fields(event), maxlen=self.maxlen, approximate=True)
        except Exception as e:
            logger.error("event_relay_failed", event_type=event.type.value, error=str(e))
            return False
        self.relayed += 1
        return True

    async def _run(self):
        while True:
            event = await self._pending.get()
            await self.forward(event)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def close(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._pending.empty():
            await self.forward(self._pending.get_nowait())
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
