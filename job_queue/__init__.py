"""
Job Queue — bulk-send jobs drained by per-device workers.

- JobDispatcher: enqueue / record outcome / cancel / retry, job events
- DispatchWorkerPool: per-device send loops with bounded concurrency
- RetryPolicy: exponential backoff for transient delivery failures
"""
from job_queue.retry import RetryPolicy
from job_queue.dispatcher import JobDispatcher
from job_queue.worker import DispatchWorkerPool

__all__ = ["RetryPolicy", "JobDispatcher", "DispatchWorkerPool"]
