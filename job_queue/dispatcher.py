"""
Job Dispatcher — the public face of the bulk-send queue.

Validates and enqueues jobs, records per-item outcomes, cancels, fails and
retries jobs, and publishes job events. It does not send anything itself;
DispatchWorkerPool (job_queue/worker.py) claims items and calls back into
record_outcome / release_for_retry.

Job:      queued → processing → completed | failed,  cancelled from queued | processing
JobItem:  pending → in_flight → sent | failed,  in_flight → pending (transient retry),
          pending | unsent in_flight → cancelled | failed (job cancelled / failed)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Callable

from core.errors import ValidationError, StateConflict, JobNotFoundError
from database.store_base import BaseStore
from events.bus import EventBus, ProgressThrottle
from models.schemas import (
    Job, JobItem, JobItemStatus, JobStatus, Event, EventType,
    Outcome, Sent, Failed, utcnow,
)
from utils.addressing import validate_recipients

logger = structlog.get_logger()

_TERMINAL_EVENTS = {
    JobStatus.COMPLETED: EventType.JOB_COMPLETED,
    JobStatus.FAILED: EventType.JOB_FAILED,
    JobStatus.CANCELLED: EventType.JOB_CANCELLED,
}


class JobDispatcher:
    """
    Usage:
        dispatcher = JobDispatcher(store, bus)
        job_id = await dispatcher.enqueue_job("device-1", ["+1 555 0100"], {"text": "Hi"})
        await dispatcher.record_outcome(item.id, Sent(message_id="wamid.1"))
    """

    def __init__(self, store: BaseStore, bus: EventBus, progress_interval: float = 1.5):
        self.store = store
        self.bus = bus
        self.throttle = ProgressThrottle(progress_interval)
        self._wake_listeners: list[Callable[[str], None]] = []

    def add_wake_listener(self, listener: Callable[[str], None]) -> None:
        """Called with a device id whenever that device gets new work."""
        self._wake_listeners.append(listener)

    def _notify(self, device_id: str) -> None:
        for listener in self._wake_listeners:
            listener(device_id)

    # ── Enqueue ───────────────────────────────────────────

    async def enqueue_job(
        self, device_id: str, recipients: list[str], payload: dict[str, Any],
        options: dict[str, Any] = None,
    ) -> str:
        """Validate, persist Job(queued) + one pending item per recipient, return the job id."""
        if not device_id:
            raise ValidationError("device_id is required")
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("payload must be a non-empty object")
        normalized = validate_recipients(recipients)

        job = await self.store.create_job(
            Job(device_id=device_id, payload=payload, options=options or {}),
            normalized,
        )
        logger.info("job_enqueued", job_id=job.id, device_id=device_id, total=len(normalized))
        self._notify(device_id)
        return job.id

    # ── Worker callbacks ──────────────────────────────────

    async def claim_next_batch(self, device_id: str, limit: int) -> list[JobItem]:
        return await self.store.claim_next_batch(device_id, limit, utcnow())

    async def release_for_retry(self, item_id: int, error: str, next_attempt_at: datetime) -> bool:
        return await self.store.release_for_retry(item_id, error, next_attempt_at)

    async def record_outcome(self, item_id: int, outcome: Outcome) -> bool:
        """
        Record the final result of one item. Idempotent: a repeated call for
        an item that is already final returns False and changes nothing.
        """
        if isinstance(outcome, Sent):
            changed, job = await self.store.finalize_item(
                item_id, JobItemStatus.SENT, message_id=outcome.message_id,
            )
        elif isinstance(outcome, Failed):
            changed, job = await self.store.finalize_item(
                item_id, JobItemStatus.FAILED, error=outcome.error,
            )
        else:
            raise ValidationError(f"Unknown outcome: {outcome!r}")

        if not changed:
            logger.debug("outcome_already_recorded", item_id=item_id)
            return False
        if job is not None:
            self._publish_progress(job)
        return True

    async def abandon_item(self, item_id: int, job: Job) -> bool:
        """
        Finalize a claimed item that was never handed to the transport because
        its job closed in the meantime: cancelled for a cancelled job, failed
        with the job error otherwise.
        """
        if job.status == JobStatus.CANCELLED:
            changed, _ = await self.store.finalize_item(item_id, JobItemStatus.CANCELLED)
        else:
            changed, _ = await self.store.finalize_item(
                item_id, JobItemStatus.FAILED, error=job.error or f"job {job.status.value}",
            )
        if changed:
            logger.debug("claimed_item_abandoned", job_id=job.id, item_id=item_id, job_status=job.status.value)
        return changed

    def _publish_progress(self, job: Job) -> None:
        # only the write that finalized the last item sees finalized == total
        if job.status == JobStatus.COMPLETED and job.progress.finalized == job.progress.total:
            self._publish_terminal(job)
            logger.info("job_completed", job_id=job.id, device_id=job.device_id,
                        completed=job.progress.completed, failed=job.progress.failed)
            return
        if self.throttle.allow(job.id):
            self.bus.publish(Event(type=EventType.JOB_PROGRESS, device_id=job.device_id, data=job.summary()))

    def _publish_terminal(self, job: Job) -> None:
        self.throttle.forget(job.id)
        self.bus.publish(Event(type=_TERMINAL_EVENTS[job.status], device_id=job.device_id, data=job.summary()))

    # ── Job control ───────────────────────────────────────

    async def cancel_job(self, job_id: str) -> Job:
        """
        Cooperative cancel: pending items are cancelled now. Claimed items the
        worker has not sent yet are cancelled by the worker before sending;
        sends already handed to the transport finish and record their outcome.
        """
        job = await self.get_job(job_id)
        if job.is_terminal:
            if job.status == JobStatus.CANCELLED:
                return job
            raise StateConflict(f"Job {job_id} is already {job.status.value}")

        job = await self.store.cancel_job(job_id)
        if job.status == JobStatus.CANCELLED:
            self._publish_terminal(job)
            logger.info("job_cancelled", job_id=job_id, cancelled=job.progress.cancelled)
        return job

    async def fail_job(self, job_id: str, error: str) -> Job:
        """Job-level fatal error (device gone): the job fails and its pending items with it."""
        job = await self.get_job(job_id)
        if job.is_terminal:
            return job

        job = await self.store.fail_job(job_id, error)
        if job.status == JobStatus.FAILED:
            self._publish_terminal(job)
            logger.error("job_failed", job_id=job_id, device_id=job.device_id, error=error)
        return job

    async def retry_job(self, job_id: str) -> str:
        """Enqueue a new job for the failed and cancelled recipients of a finished job."""
        job = await self.get_job(job_id)
        if not job.is_terminal:
            raise ValidationError(f"Job {job_id} is still {job.status.value}")

        items = await self.store.list_job_items(job_id)
        recipients = [
            i.recipient for i in items
            if i.status in (JobItemStatus.FAILED, JobItemStatus.CANCELLED)
        ]
        if not recipients:
            raise ValidationError(f"Job {job_id} has no failed or cancelled recipients")

        new_id = await self.enqueue_job(
            job.device_id, recipients, job.payload,
            options={**job.options, "retry_of": job_id},
        )
        logger.info("job_retried", job_id=job_id, new_job_id=new_id, recipients=len(recipients))
        return new_id

    # ── Reads & housekeeping ──────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self, device_id: str = None, status: JobStatus = None, limit: int = 50,
    ) -> list[Job]:
        return await self.store.list_jobs(device_id=device_id, status=status, limit=limit)

    async def list_job_items(self, job_id: str, status: JobItemStatus = None) -> list[JobItem]:
        await self.get_job(job_id)
        return await self.store.list_job_items(job_id, status=status)

    async def job_statistics(self, device_id: str = None) -> dict[str, Any]:
        return await self.store.job_statistics(device_id)

    async def purge_finished_jobs(self, older_than_hours: float = 24) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        purged = await self.store.purge_finished_jobs(cutoff)
        if purged:
            logger.info("jobs_purged", count=purged, older_than_hours=older_than_hours)
        return purged

    async def requeue_stale_claims(self, ttl_seconds: float) -> int:
        requeued = await self.store.requeue_stale_claims(utcnow() - timedelta(seconds=ttl_seconds))
        if requeued:
            logger.warning("stale_claims_requeued", count=requeued, ttl_seconds=ttl_seconds)
        return requeued

    async def devices_with_open_work(self) -> list[str]:
        return await self.store.devices_with_open_work()

    async def has_open_work(self, device_id: str) -> bool:
        return await self.store.has_open_work(device_id)
