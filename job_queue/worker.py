"""
Dispatch Worker Pool — drains the recipient queue, one loop per device.

Each device with open work gets its own asyncio task that claims batches
and sends them with at most `device_concurrency` sends in flight, through
the device's token-bucket limiter. Devices never wait on each other.

    pool = DispatchWorkerPool(dispatcher, transport, settings.dispatch)
    await pool.start()      # requeues stale claims, resumes devices with open work
    ...
    await pool.stop()       # in-flight sends finish and record their outcome

Outcome handling per send:
  success                  → record Sent(message_id)
  TransientDeliveryError   → release with backoff while attempts < max_attempts, else Failed
  (timeouts, rate limits)
  PermanentDeliveryError   → Failed on the first attempt
  DeviceUnavailableError   → the whole job fails, this item with it
  anything else            → Failed (logged with traceback)
  job closed before send   → cancelled / failed with the job, never sent
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from channels.base import (
    OutboundTransport, ChannelError, RateLimitedError, DeviceUnavailableError,
    DeviceRateLimiters,
)
from config.settings import DispatchConfig
from job_queue.dispatcher import JobDispatcher
from job_queue.retry import RetryPolicy
from models.schemas import JobItem, Sent, Failed, utcnow

logger = structlog.get_logger()


class DispatchWorkerPool:

    def __init__(
        self,
        dispatcher: JobDispatcher,
        transport: OutboundTransport,
        config: DispatchConfig = None,
    ):
        self.dispatcher = dispatcher
        self.transport = transport
        self.config = config or DispatchConfig()
        self.retry = RetryPolicy.from_config(self.config)
        self.limiters = DeviceRateLimiters(self.config.rate_per_second, self.config.burst)

        self._device_tasks: dict[str, asyncio.Task] = {}
        self._wake_events: dict[str, asyncio.Event] = {}
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running = False

        dispatcher.add_wake_listener(self.wake)

    @property
    def running(self) -> bool:
        return self._running

    def active_devices(self) -> list[str]:
        return [d for d, t in self._device_tasks.items() if not t.done()]

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self):
        if self._running:
            return
        self._running = True
        await self.dispatcher.requeue_stale_claims(self.config.claim_ttl_seconds)
        for device_id in await self.dispatcher.devices_with_open_work():
            self.wake(device_id)
        self._maintenance_task = asyncio.create_task(self._maintenance())
        logger.info("dispatch_pool_started",
                    device_concurrency=self.config.device_concurrency,
                    max_attempts=self.config.max_attempts)

    async def stop(self, timeout: float = None):
        """Stop claiming; let in-flight batches finish (cancelled after `timeout`, if given)."""
        self._running = False
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        for event in self._wake_events.values():
            event.set()

        tasks = [t for t in self._device_tasks.values() if not t.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._device_tasks.clear()
        logger.info("dispatch_pool_stopped")

    def wake(self, device_id: str) -> None:
        """Signal new work for a device, starting its loop if it is idle."""
        if not self._running:
            return
        event = self._wake_events.setdefault(device_id, asyncio.Event())
        event.set()
        task = self._device_tasks.get(device_id)
        if task is None or task.done():
            self._device_tasks[device_id] = asyncio.create_task(self._device_loop(device_id))

    # ── Device loop ───────────────────────────────────────

    async def _device_loop(self, device_id: str):
        event = self._wake_events.setdefault(device_id, asyncio.Event())
        semaphore = self._semaphores.setdefault(device_id, asyncio.Semaphore(self.config.device_concurrency))
        logger.debug("device_loop_started", device_id=device_id)

        while self._running:
            event.clear()
            try:
                batch = await self.dispatcher.claim_next_batch(device_id, self.config.batch_size)
            except Exception as e:
                logger.error("claim_failed", device_id=device_id, error=str(e))
                batch = []

            if batch:
                results = await asyncio.gather(*(
                    self._process(device_id, item, semaphore)
                    for item in batch
                ), return_exceptions=True)
                for item, result in zip(batch, results):
                    if isinstance(result, Exception):
                        # left in flight; requeued once its claim goes stale
                        logger.error("item_outcome_not_recorded", device_id=device_id,
                                     item_id=item.id, error=str(result))
                continue

            if not await self.dispatcher.has_open_work(device_id) and not event.is_set():
                break
            # open work but nothing due yet (retries backing off, or claimed elsewhere)
            try:
                await asyncio.wait_for(event.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.debug("device_loop_idle", device_id=device_id)

    async def _process(self, device_id: str, item: JobItem, semaphore: asyncio.Semaphore):
        async with semaphore:
            await self.limiters.acquire(device_id)
            # read after the wait: the job may have been cancelled or failed meanwhile
            job = await self.dispatcher.store.get_job(item.job_id)
            if job is None:
                await self.dispatcher.record_outcome(item.id, Failed(error="job no longer exists"))
                return
            if job.is_terminal:
                await self.dispatcher.abandon_item(item.id, job)
                return

            try:
                message_id = await asyncio.wait_for(
                    self.transport.send(device_id, item.recipient, job.payload),
                    timeout=self.config.send_timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self._retry_or_fail(item, f"send timed out after {self.config.send_timeout_seconds}s")
            except DeviceUnavailableError as e:
                await self.dispatcher.fail_job(item.job_id, f"device unavailable: {e}")
                await self.dispatcher.record_outcome(item.id, Failed(error=str(e)))
            except RateLimitedError as e:
                await self._retry_or_fail(item, str(e), retry_after=e.retry_after)
            except ChannelError as e:
                if e.retryable:
                    await self._retry_or_fail(item, str(e))
                else:
                    logger.warning("item_send_rejected", job_id=item.job_id, item_id=item.id,
                                   recipient=item.recipient, error=str(e))
                    await self.dispatcher.record_outcome(item.id, Failed(error=str(e)))
            except Exception as e:
                logger.error("item_send_error", job_id=item.job_id, item_id=item.id,
                             error=str(e), exc_info=True)
                await self.dispatcher.record_outcome(item.id, Failed(error=f"unexpected error: {e}"))
            else:
                await self.dispatcher.record_outcome(item.id, Sent(message_id=message_id))

    async def _retry_or_fail(self, item: JobItem, error: str, retry_after: float = None):
        if self.retry.should_retry(item.attempts):
            at = self.retry.next_attempt_at(item.attempts, utcnow(), retry_after)
            await self.dispatcher.release_for_retry(item.id, error, at)
            logger.info("item_retry_scheduled", job_id=item.job_id, item_id=item.id,
                        attempt=item.attempts, next_attempt_at=at.isoformat(), error=error)
        else:
            logger.warning("item_retries_exhausted", job_id=item.job_id, item_id=item.id,
                           attempts=item.attempts, error=error)
            await self.dispatcher.record_outcome(item.id, Failed(error=error))

    # ── Maintenance ───────────────────────────────────────

    async def _maintenance(self):
        """Periodically requeue stale claims and pick up work enqueued by other processes."""
        interval = max(self.config.claim_ttl_seconds / 2, self.config.poll_interval_seconds)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.dispatcher.requeue_stale_claims(self.config.claim_ttl_seconds)
                for device_id in await self.dispatcher.devices_with_open_work():
                    self.wake(device_id)
            except Exception as e:
                logger.error("dispatch_maintenance_error", error=str(e))
