"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Same semantics as SqlStore, including atomic claims
  - Safe under concurrent tasks on one event loop (queue writes hold a lock)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import itertools
import structlog
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseStore, truncate
from models.schemas import (
    Job, JobItem, JobItemStatus, JobStatus, AutoReplyRule, Conversation,
    ControlState, DeviceBotConfig, BotActionLog, OPEN_JOB_STATUSES,
    TERMINAL_JOB_STATUSES, utcnow,
)

logger = structlog.get_logger()


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Values handed out are copies; mutating them does not touch stored state.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._items: dict[int, JobItem] = {}
        self._job_items: dict[str, list[int]] = {}          # job_id → item ids (creation order)
        self._rules: dict[int, AutoReplyRule] = {}
        self._conversations: dict[tuple[str, str], Conversation] = {}
        self._bot_configs: dict[str, DeviceBotConfig] = {}
        self._actions: list[BotActionLog] = []

        self._item_ids = itertools.count(1)
        self._rule_ids = itertools.count(1)
        self._action_ids = itertools.count(1)
        self._job_seq = itertools.count()
        self._job_order: dict[str, int] = {}                # job_id → insertion sequence

        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Jobs ──────────────────────────────────────────────

    async def create_job(self, job: Job, recipients: list[str]) -> Job:
        async with self._lock:
            job = job.model_copy(deep=True)
            job.progress.total = len(recipients)
            ids = []
            for recipient in recipients:
                item_id = next(self._item_ids)
                self._items[item_id] = JobItem(id=item_id, job_id=job.id, recipient=recipient)
                ids.append(item_id)
            self._jobs[job.id] = job
            self._job_items[job.id] = ids
            self._job_order[job.id] = next(self._job_seq)
            return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, device_id: str = None, status: JobStatus = None, limit: int = 50) -> list[Job]:
        jobs = [
            j for j in self._jobs.values()
            if (device_id is None or j.device_id == device_id)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: (j.created_at, self._job_order[j.id]), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def list_job_items(self, job_id: str, status: JobItemStatus = None) -> list[JobItem]:
        return [
            self._items[i].model_copy()
            for i in self._job_items.get(job_id, [])
            if status is None or self._items[i].status == status
        ]

    async def get_job_item(self, item_id: int) -> Optional[JobItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    # ── Recipient queue ───────────────────────────────────

    def _open_jobs(self, device_id: str) -> list[Job]:
        jobs = [
            j for j in self._jobs.values()
            if j.device_id == device_id and j.status in OPEN_JOB_STATUSES
        ]
        jobs.sort(key=lambda j: (j.created_at, self._job_order[j.id]))
        return jobs

    async def claim_next_batch(self, device_id: str, limit: int, now: datetime) -> list[JobItem]:
        claimed: list[JobItem] = []
        async with self._lock:
            for job in self._open_jobs(device_id):
                for item_id in self._job_items[job.id]:
                    if len(claimed) >= limit:
                        break
                    item = self._items[item_id]
                    if item.status != JobItemStatus.PENDING:
                        continue
                    if item.next_attempt_at is not None and item.next_attempt_at > now:
                        continue
                    item.status = JobItemStatus.IN_FLIGHT
                    item.claimed_at = now
                    item.attempts += 1
                    claimed.append(item.model_copy())

                    if job.status == JobStatus.QUEUED:
                        job.status = JobStatus.PROCESSING
                        job.started_at = now
                if len(claimed) >= limit:
                    break
        return claimed

    async def release_for_retry(self, item_id: int, error: str, next_attempt_at: datetime) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != JobItemStatus.IN_FLIGHT:
                return False
            item.status = JobItemStatus.PENDING
            item.error = error
            item.next_attempt_at = next_attempt_at
            item.claimed_at = None
            return True

    async def finalize_item(
        self, item_id: int, status: JobItemStatus,
        message_id: str = None, error: str = None,
    ) -> tuple[bool, Optional[Job]]:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False, None
            job = self._jobs.get(item.job_id)
            if item.is_final:
                return False, job.model_copy(deep=True) if job else None

            now = utcnow()
            item.status = status
            item.message_id = message_id if status == JobItemStatus.SENT else item.message_id
            item.error = None if status == JobItemStatus.SENT else error
            item.processed_at = now
            item.claimed_at = None

            if job is not None:
                self._count(job, status, 1)
                self._maybe_complete(job, now)
                return True, job.model_copy(deep=True)
            return True, None

    @staticmethod
    def _count(job: Job, status: JobItemStatus, n: int) -> None:
        if status == JobItemStatus.SENT:
            job.progress.completed += n
        elif status == JobItemStatus.FAILED:
            job.progress.failed += n
        elif status == JobItemStatus.CANCELLED:
            job.progress.cancelled += n

    @staticmethod
    def _maybe_complete(job: Job, now: datetime) -> None:
        if job.status in OPEN_JOB_STATUSES and job.progress.finalized >= job.progress.total:
            job.status = JobStatus.COMPLETED
            job.completed_at = now

    def _finalize_pending(self, job: Job, status: JobItemStatus, error: str = None) -> int:
        now = utcnow()
        n = 0
        for item_id in self._job_items[job.id]:
            item = self._items[item_id]
            if item.status == JobItemStatus.PENDING:
                item.status = status
                item.error = error
                item.processed_at = now
                n += 1
        self._count(job, status, n)
        return n

    async def cancel_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status in OPEN_JOB_STATUSES:
                job.status = JobStatus.CANCELLED
                job.completed_at = utcnow()
                self._finalize_pending(job, JobItemStatus.CANCELLED)
            return job.model_copy(deep=True)

    async def fail_job(self, job_id: str, error: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status in OPEN_JOB_STATUSES:
                job.status = JobStatus.FAILED
                job.error = error
                job.completed_at = utcnow()
                self._finalize_pending(job, JobItemStatus.FAILED, error)
            return job.model_copy(deep=True)

    async def requeue_stale_claims(self, older_than: datetime) -> int:
        n = 0
        async with self._lock:
            for item in self._items.values():
                if item.status != JobItemStatus.IN_FLIGHT or item.claimed_at is None:
                    continue
                if item.claimed_at >= older_than:
                    continue
                if self._jobs[item.job_id].status not in OPEN_JOB_STATUSES:
                    continue
                item.status = JobItemStatus.PENDING
                item.claimed_at = None
                item.next_attempt_at = None
                n += 1
        return n

    async def devices_with_open_work(self) -> list[str]:
        return sorted({j.device_id for j in self._jobs.values() if j.status in OPEN_JOB_STATUSES})

    async def has_open_work(self, device_id: str) -> bool:
        return any(
            j.device_id == device_id and j.status in OPEN_JOB_STATUSES
            for j in self._jobs.values()
        )

    async def purge_finished_jobs(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                j.id for j in self._jobs.values()
                if j.status in TERMINAL_JOB_STATUSES
                and j.completed_at is not None and j.completed_at < before
            ]
            for job_id in doomed:
                for item_id in self._job_items.pop(job_id, []):
                    self._items.pop(item_id, None)
                self._jobs.pop(job_id)
                self._job_order.pop(job_id, None)
            return len(doomed)

    async def job_statistics(self, device_id: str = None) -> dict[str, Any]:
        jobs = [j for j in self._jobs.values() if device_id is None or j.device_id == device_id]
        job_counts = Counter(j.status.value for j in jobs)
        item_counts: Counter = Counter()
        for job in jobs:
            for item_id in self._job_items[job.id]:
                item_counts[self._items[item_id].status.value] += 1
        return {
            "total_jobs": len(jobs),
            "jobs": {s.value: job_counts.get(s.value, 0) for s in JobStatus},
            "items": {s.value: item_counts.get(s.value, 0) for s in JobItemStatus},
        }

    # ── Rules ─────────────────────────────────────────────

    async def create_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        rule = rule.model_copy(deep=True, update={"id": next(self._rule_ids)})
        self._rules[rule.id] = rule
        return rule.model_copy(deep=True)

    async def get_rule(self, rule_id: int) -> Optional[AutoReplyRule]:
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def save_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    async def delete_rule(self, rule_id: int) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def list_rules(self, device_id: str, active_only: bool = False) -> list[AutoReplyRule]:
        rules = [
            r for r in self._rules.values()
            if r.device_id == device_id and (r.is_active or not active_only)
        ]
        rules.sort(key=lambda r: r.sort_key)
        return [r.model_copy(deep=True) for r in rules]

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, device_id: str, counterpart_id: str) -> Optional[Conversation]:
        conv = self._conversations.get((device_id, counterpart_id))
        return conv.model_copy() if conv else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation = conversation.model_copy(update={"updated_at": utcnow()})
        self._conversations[conversation.key] = conversation
        return conversation.model_copy()

    async def list_conversations(
        self, device_id: str, state: ControlState = None, limit: int = 100,
    ) -> list[Conversation]:
        convs = [
            c for c in self._conversations.values()
            if c.device_id == device_id and (state is None or c.state == state)
        ]
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in convs[:limit]]

    async def count_conversations(self, device_id: str) -> dict[str, int]:
        states = Counter(c.state.value for c in self._conversations.values() if c.device_id == device_id)
        return {
            "total": sum(states.values()),
            "bot": states.get(ControlState.BOT.value, 0),
            "handoff": states.get(ControlState.HANDOFF.value, 0),
        }

    # ── Bot config ────────────────────────────────────────

    async def get_bot_config(self, device_id: str) -> Optional[DeviceBotConfig]:
        cfg = self._bot_configs.get(device_id)
        return cfg.model_copy(deep=True) if cfg else None

    async def save_bot_config(self, config: DeviceBotConfig) -> DeviceBotConfig:
        self._bot_configs[config.device_id] = config.model_copy(deep=True)
        return config

    # ── Action log ────────────────────────────────────────

    async def add_action(self, entry: BotActionLog) -> BotActionLog:
        entry = entry.model_copy(update={
            "id": next(self._action_ids),
            "incoming_message": truncate(entry.incoming_message),
            "response_message": truncate(entry.response_message),
        })
        self._actions.append(entry)
        return entry.model_copy()

    async def list_actions(
        self, device_id: str, counterpart_id: str = None, limit: int = 100,
    ) -> list[BotActionLog]:
        entries = [
            a for a in reversed(self._actions)
            if a.device_id == device_id
            and (counterpart_id is None or a.counterpart_id == counterpart_id)
        ]
        return [a.model_copy() for a in entries[:limit]]

    # ── Utilities ─────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        """Return counts of all stored entities (for debugging)."""
        return {
            "jobs": len(self._jobs),
            "job_items": len(self._items),
            "rules": len(self._rules),
            "conversations": len(self._conversations),
            "actions": len(self._actions),
        }
