"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Both backends share the same semantics; the recipient queue operations
(claim / release / finalize) are the only place job and item state changes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Job, JobItem, JobItemStatus, JobStatus, AutoReplyRule, Conversation,
    ControlState, DeviceBotConfig, BotActionLog,
)

# BotActionLog text columns are capped at this length
MAX_LOGGED_TEXT = 1000


def truncate(text: Optional[str], limit: int = MAX_LOGGED_TEXT) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: Job, recipients: list[str]) -> Job:
        """Persist a job and one pending item per recipient in one transaction."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(
        self, device_id: str = None, status: JobStatus = None, limit: int = 50,
    ) -> list[Job]:
        """Newest first."""

    @abstractmethod
    async def list_job_items(self, job_id: str, status: JobItemStatus = None) -> list[JobItem]:
        ...

    @abstractmethod
    async def get_job_item(self, item_id: int) -> Optional[JobItem]:
        ...

    # ── Recipient queue ───────────────────────────────────────

    @abstractmethod
    async def claim_next_batch(self, device_id: str, limit: int, now: datetime) -> list[JobItem]:
        """
        Atomically move up to `limit` due pending items of the device's open
        jobs to in_flight (FIFO by job creation, then item id). Increments
        attempts and flips a queued job to processing on its first claim.
        """

    @abstractmethod
    async def release_for_retry(self, item_id: int, error: str, next_attempt_at: datetime) -> bool:
        """in_flight → pending with a retry time. False when the item is no longer in flight."""

    @abstractmethod
    async def finalize_item(
        self, item_id: int, status: JobItemStatus,
        message_id: str = None, error: str = None,
    ) -> tuple[bool, Optional[Job]]:
        """
        Terminal write for an item. Returns (changed, job). A second write to
        an already-final item changes nothing and returns changed=False.
        Completes the job when every item is final.
        """

    @abstractmethod
    async def cancel_job(self, job_id: str) -> Optional[Job]:
        """Open job → cancelled; pending items → cancelled. Terminal jobs are returned as-is."""

    @abstractmethod
    async def fail_job(self, job_id: str, error: str) -> Optional[Job]:
        """Open job → failed; pending items → failed with the job error."""

    @abstractmethod
    async def requeue_stale_claims(self, older_than: datetime) -> int:
        """Return in_flight items of open jobs claimed before `older_than` to pending."""

    @abstractmethod
    async def devices_with_open_work(self) -> list[str]:
        ...

    @abstractmethod
    async def has_open_work(self, device_id: str) -> bool:
        ...

    @abstractmethod
    async def purge_finished_jobs(self, before: datetime) -> int:
        """Delete terminal jobs (and their items) finished before `before`."""

    @abstractmethod
    async def job_statistics(self, device_id: str = None) -> dict[str, Any]:
        ...

    # ── Auto-reply rules ──────────────────────────────────────

    @abstractmethod
    async def create_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        ...

    @abstractmethod
    async def get_rule(self, rule_id: int) -> Optional[AutoReplyRule]:
        ...

    @abstractmethod
    async def save_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        ...

    @abstractmethod
    async def delete_rule(self, rule_id: int) -> bool:
        ...

    @abstractmethod
    async def list_rules(self, device_id: str, active_only: bool = False) -> list[AutoReplyRule]:
        """Ordered by (priority, id)."""

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, device_id: str, counterpart_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        """Insert or update by (device_id, counterpart_id)."""

    @abstractmethod
    async def list_conversations(
        self, device_id: str, state: ControlState = None, limit: int = 100,
    ) -> list[Conversation]:
        """Most recently updated first."""

    @abstractmethod
    async def count_conversations(self, device_id: str) -> dict[str, int]:
        """{"total": n, "bot": n, "handoff": n}"""

    # ── Device bot config ─────────────────────────────────────

    @abstractmethod
    async def get_bot_config(self, device_id: str) -> Optional[DeviceBotConfig]:
        ...

    @abstractmethod
    async def save_bot_config(self, config: DeviceBotConfig) -> DeviceBotConfig:
        ...

    # ── Bot action log ────────────────────────────────────────

    @abstractmethod
    async def add_action(self, entry: BotActionLog) -> BotActionLog:
        ...

    @abstractmethod
    async def list_actions(
        self, device_id: str, counterpart_id: str = None, limit: int = 100,
    ) -> list[BotActionLog]:
        """Newest first."""
