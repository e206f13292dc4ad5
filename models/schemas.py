"""
Core data models for the automation core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    BULK_SEND = "bulk-send"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
OPEN_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


class JobItemStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINAL_ITEM_STATUSES = frozenset({JobItemStatus.SENT, JobItemStatus.FAILED, JobItemStatus.CANCELLED})


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    REGEX = "regex"


class ControlState(str, Enum):
    BOT = "bot"
    HANDOFF = "handoff"


class ActionType(str, Enum):
    AUTO_REPLY = "auto_reply"
    NO_AUTO_REPLY = "no_auto_reply"


class BotActionType(str, Enum):
    AUTO_REPLY = "auto_reply"
    HANDOFF_INITIATED = "handoff_initiated"
    HANDOFF_RESUMED = "handoff_resumed"
    OFF_HOURS_REPLY = "off_hours_reply"
    RATE_LIMITED = "rate_limited"
    NO_MATCH = "no_match"


class EventType(str, Enum):
    JOB_PROGRESS = "job.progress"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_CANCELLED = "job.cancelled"
    HANDOFF_STARTED = "conversation.handoff_started"
    BOT_RESUMED = "conversation.bot_resumed"
    AUTO_REPLY_SENT = "auto_reply.sent"


# ──────────────────────────────────────────────────────────────
#  Jobs — one bulk-send request and its per-recipient items
# ──────────────────────────────────────────────────────────────

class JobProgress(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def finalized(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.finalized)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: JobType = JobType.BULK_SEND
    status: JobStatus = JobStatus.QUEUED
    device_id: str
    payload: dict[str, Any] = {}              # opaque to the dispatcher (message template etc.)
    progress: JobProgress = Field(default_factory=JobProgress)
    options: dict[str, Any] = {}
    error: Optional[str] = None               # job-level fatal error only
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "device_id": self.device_id,
            "status": self.status.value,
            "progress": self.progress.model_dump(),
            "error": self.error,
        }


class JobItem(BaseModel):
    id: int = 0
    job_id: str
    recipient: str                            # normalized phone number or group id
    status: JobItemStatus = JobItemStatus.PENDING
    message_id: Optional[str] = None          # transport idempotency token
    error: Optional[str] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_ITEM_STATUSES


class Sent(BaseModel):
    message_id: str


class Failed(BaseModel):
    error: str


Outcome = Union[Sent, Failed]


# ──────────────────────────────────────────────────────────────
#  Auto-reply rules
# ──────────────────────────────────────────────────────────────

class AutoReplyRule(BaseModel):
    id: int = 0                               # assigned by the store, creation order
    device_id: str
    name: str
    match_type: MatchType = MatchType.CONTAINS
    trigger: str
    response: str
    priority: int = 0                         # lower value is checked first
    is_active: bool = True
    cooldown_seconds: int = 0                 # per counterpart, 0 disables
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.id)


# ──────────────────────────────────────────────────────────────
#  Conversations — bot vs. human control per counterpart
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    device_id: str
    counterpart_id: str
    state: ControlState = ControlState.BOT
    last_bot_activity_at: Optional[datetime] = None
    last_handoff_requested_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    handoff_reason: Optional[str] = None
    last_rule_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.counterpart_id)

    @property
    def in_handoff(self) -> bool:
        return self.state == ControlState.HANDOFF


class InboundAction(BaseModel):
    """What the caller should do after an inbound message was evaluated."""
    type: ActionType
    reason: str = ""
    response: Optional[str] = None
    rule_id: Optional[int] = None

    @classmethod
    def auto_reply(cls, response: str, reason: str = "rule_matched", rule_id: int = None) -> InboundAction:
        return cls(type=ActionType.AUTO_REPLY, reason=reason, response=response, rule_id=rule_id)

    @classmethod
    def no_reply(cls, reason: str) -> InboundAction:
        return cls(type=ActionType.NO_AUTO_REPLY, reason=reason)

    @property
    def should_reply(self) -> bool:
        return self.type == ActionType.AUTO_REPLY


class InboundMessage(BaseModel):
    device_id: str
    sender_id: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    message_id: Optional[str] = None
    from_me: bool = False
    sender_name: str = ""


# ──────────────────────────────────────────────────────────────
#  Per-device bot configuration & audit log
# ──────────────────────────────────────────────────────────────

class BusinessHoursWindow(BaseModel):
    day: int                                  # 0 = Sunday … 6 = Saturday
    start: str                                # "HH:MM"
    end: str


class DeviceBotConfig(BaseModel):
    device_id: str
    bot_enabled: bool = True
    timezone: str = "UTC"
    business_hours: list[BusinessHoursWindow] = []
    off_hours_enabled: bool = False
    off_hours_message: Optional[str] = None
    handoff_keywords: list[str] = []
    resume_keywords: list[str] = []
    handoff_message: Optional[str] = "Connecting you with our team. Please wait."
    resume_message: Optional[str] = "The assistant is back. Type 'menu' to see options."
    ignore_groups: bool = True
    metadata: dict[str, Any] = {}


class BotActionLog(BaseModel):
    id: int = 0
    device_id: str
    counterpart_id: str
    action_type: BotActionType
    rule_id: Optional[int] = None
    incoming_message: Optional[str] = None
    response_message: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class Event(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    type: EventType
    device_id: str = ""
    data: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    def to_sse(self) -> str:
        return f"id: {self.id}\nevent: {self.type.value}\ndata: {self.model_dump_json()}\n\n"
