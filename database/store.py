"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Queue state changes are conditional UPDATEs (`... WHERE status = 'pending'`)
so a lost race touches zero rows instead of double-processing, and job
counters are incremented in SQL (`completed = completed + 1`) rather than
read-modify-written in Python.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import StateConflict, RuleNotFoundError
from database.models import (
    JobRow, JobItemRow, AutoReplyRuleRow, ConversationRow,
    DeviceBotConfigRow, BotActionLogRow,
)
from database.session import get_session, session_scope
from database.store_base import BaseStore, truncate
from models.schemas import (
    Job, JobItem, JobItemStatus, JobProgress, JobStatus, JobType,
    AutoReplyRule, MatchType, Conversation, ControlState, DeviceBotConfig,
    BotActionLog, BotActionType, OPEN_JOB_STATUSES, TERMINAL_JOB_STATUSES,
    utcnow,
)

logger = structlog.get_logger()

_OPEN = [s.value for s in OPEN_JOB_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_JOB_STATUSES]
_NOT_FINAL = [JobItemStatus.PENDING.value, JobItemStatus.IN_FLIGHT.value]

# Which job counter a final item status feeds
_COUNTER_COLUMN = {
    JobItemStatus.SENT: "completed",
    JobItemStatus.FAILED: "failed",
    JobItemStatus.CANCELLED: "cancelled",
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    Uses the global engine from database.session unless a session factory
    is passed in (tests bind one to a temporary SQLite file).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = None):
        self._session_factory = session_factory

    def _session(self):
        if self._session_factory is not None:
            return session_scope(self._session_factory)
        return get_session()

    # ── Jobs ───────────────────────────────────────────────

    async def create_job(self, job: Job, recipients: list[str]) -> Job:
        async with self._session() as db:
            row = JobRow(
                id=job.id,
                type=job.type.value,
                status=job.status.value,
                device_id=job.device_id,
                payload=job.payload,
                options=job.options,
                total=len(recipients),
                completed=0, failed=0, cancelled=0,
                created_at=job.created_at,
            )
            db.add(row)
            await db.flush()
            db.add_all([
                JobItemRow(job_id=job.id, recipient=r, status=JobItemStatus.PENDING.value, attempts=0)
                for r in recipients
            ])
            await db.flush()
            return self._row_to_job(row)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._session() as db:
            row = await db.get(JobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_jobs(self, device_id: str = None, status: JobStatus = None, limit: int = 50) -> list[Job]:
        async with self._session() as db:
            stmt = select(JobRow)
            if device_id is not None:
                stmt = stmt.where(JobRow.device_id == device_id)
            if status is not None:
                stmt = stmt.where(JobRow.status == JobStatus(status).value)
            stmt = stmt.order_by(JobRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars()]

    async def list_job_items(self, job_id: str, status: JobItemStatus = None) -> list[JobItem]:
        async with self._session() as db:
            stmt = select(JobItemRow).where(JobItemRow.job_id == job_id)
            if status is not None:
                stmt = stmt.where(JobItemRow.status == JobItemStatus(status).value)
            result = await db.execute(stmt.order_by(JobItemRow.id))
            return [self._row_to_item(r) for r in result.scalars()]

    async def get_job_item(self, item_id: int) -> Optional[JobItem]:
        async with self._session() as db:
            row = await db.get(JobItemRow, item_id)
            return self._row_to_item(row) if row else None

    # ── Recipient queue ────────────────────────────────────

    async def claim_next_batch(self, device_id: str, limit: int, now: datetime) -> list[JobItem]:
        async with self._session() as db:
            stmt = (
                select(JobItemRow.id, JobItemRow.job_id)
                .join(JobRow, JobRow.id == JobItemRow.job_id)
                .where(and_(
                    JobRow.device_id == device_id,
                    JobRow.status.in_(_OPEN),
                    JobItemRow.status == JobItemStatus.PENDING.value,
                    or_(JobItemRow.next_attempt_at.is_(None), JobItemRow.next_attempt_at <= now),
                ))
                .order_by(JobRow.created_at, JobItemRow.id)
                .limit(limit)
            )
            candidates = (await db.execute(stmt)).all()

            claimed: list[int] = []
            job_ids: set[str] = set()
            for item_id, job_id in candidates:
                try:
                    await self._claim_row(db, item_id, now)
                except StateConflict:
                    logger.debug("claim_conflict", device_id=device_id, item_id=item_id)
                    continue
                claimed.append(item_id)
                job_ids.add(job_id)

            if not claimed:
                return []

            await db.execute(
                update(JobRow)
                .where(JobRow.id.in_(job_ids), JobRow.status == JobStatus.QUEUED.value)
                .values(status=JobStatus.PROCESSING.value, started_at=now)
                .execution_options(synchronize_session=False)
            )

            result = await db.execute(select(JobItemRow).where(JobItemRow.id.in_(claimed)))
            by_id = {r.id: self._row_to_item(r) for r in result.scalars()}
            return [by_id[i] for i in claimed]

    @staticmethod
    async def _claim_row(db: AsyncSession, item_id: int, now: datetime) -> None:
        result = await db.execute(
            update(JobItemRow)
            .where(JobItemRow.id == item_id, JobItemRow.status == JobItemStatus.PENDING.value)
            .values(
                status=JobItemStatus.IN_FLIGHT.value,
                claimed_at=now,
                attempts=JobItemRow.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflict(f"Item {item_id} was claimed elsewhere")

    async def release_for_retry(self, item_id: int, error: str, next_attempt_at: datetime) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(JobItemRow)
                .where(JobItemRow.id == item_id, JobItemRow.status == JobItemStatus.IN_FLIGHT.value)
                .values(
                    status=JobItemStatus.PENDING.value,
                    error=error,
                    next_attempt_at=next_attempt_at,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def finalize_item(
        self, item_id: int, status: JobItemStatus,
        message_id: str = None, error: str = None,
    ) -> tuple[bool, Optional[Job]]:
        status = JobItemStatus(status)
        now = utcnow()
        async with self._session() as db:
            job_id = (await db.execute(
                select(JobItemRow.job_id).where(JobItemRow.id == item_id)
            )).scalar_one_or_none()
            if job_id is None:
                return False, None

            values: dict[str, Any] = {"status": status.value, "processed_at": now, "claimed_at": None}
            if status == JobItemStatus.SENT:
                values.update(message_id=message_id, error=None)
            else:
                values["error"] = error

            result = await db.execute(
                update(JobItemRow)
                .where(JobItemRow.id == item_id, JobItemRow.status.in_(_NOT_FINAL))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1

            if changed:
                column = _COUNTER_COLUMN[status]
                await db.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id)
                    .values({column: getattr(JobRow, column) + 1})
                    .execution_options(synchronize_session=False)
                )
                await self._complete_if_done(db, job_id, now)

            row = await db.get(JobRow, job_id, populate_existing=True)
            return changed, self._row_to_job(row) if row else None

    @staticmethod
    async def _complete_if_done(db: AsyncSession, job_id: str, now: datetime) -> None:
        await db.execute(
            update(JobRow)
            .where(and_(
                JobRow.id == job_id,
                JobRow.status.in_(_OPEN),
                (JobRow.completed + JobRow.failed + JobRow.cancelled) >= JobRow.total,
            ))
            .values(status=JobStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _close_job(
        self, job_id: str, job_status: JobStatus, item_status: JobItemStatus, error: str = None,
    ) -> Optional[Job]:
        now = utcnow()
        async with self._session() as db:
            job_values: dict[str, Any] = {"status": job_status.value, "completed_at": now}
            if error is not None:
                job_values["error"] = error
            result = await db.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status.in_(_OPEN))
                .values(**job_values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                items = await db.execute(
                    update(JobItemRow)
                    .where(JobItemRow.job_id == job_id, JobItemRow.status == JobItemStatus.PENDING.value)
                    .values(status=item_status.value, error=error, processed_at=now)
                    .execution_options(synchronize_session=False)
                )
                column = _COUNTER_COLUMN[item_status]
                await db.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id)
                    .values({column: getattr(JobRow, column) + items.rowcount})
                    .execution_options(synchronize_session=False)
                )
            row = await db.get(JobRow, job_id, populate_existing=True)
            return self._row_to_job(row) if row else None

    async def cancel_job(self, job_id: str) -> Optional[Job]:
        return await self._close_job(job_id, JobStatus.CANCELLED, JobItemStatus.CANCELLED)

    async def fail_job(self, job_id: str, error: str) -> Optional[Job]:
        return await self._close_job(job_id, JobStatus.FAILED, JobItemStatus.FAILED, error)

    async def requeue_stale_claims(self, older_than: datetime) -> int:
        async with self._session() as db:
            open_jobs = select(JobRow.id).where(JobRow.status.in_(_OPEN))
            result = await db.execute(
                update(JobItemRow)
                .where(and_(
                    JobItemRow.status == JobItemStatus.IN_FLIGHT.value,
                    JobItemRow.claimed_at < older_than,
                    JobItemRow.job_id.in_(open_jobs),
                ))
                .values(status=JobItemStatus.PENDING.value, claimed_at=None, next_attempt_at=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def devices_with_open_work(self) -> list[str]:
        async with self._session() as db:
            result = await db.execute(
                select(JobRow.device_id).where(JobRow.status.in_(_OPEN)).distinct()
            )
            return sorted(result.scalars())

    async def has_open_work(self, device_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                select(JobRow.id)
                .where(JobRow.device_id == device_id, JobRow.status.in_(_OPEN))
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def purge_finished_jobs(self, before: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                select(JobRow.id).where(and_(
                    JobRow.status.in_(_TERMINAL),
                    JobRow.completed_at.is_not(None),
                    JobRow.completed_at < before,
                ))
            )
            job_ids = list(result.scalars())
            if not job_ids:
                return 0
            await db.execute(
                delete(JobItemRow).where(JobItemRow.job_id.in_(job_ids))
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                delete(JobRow).where(JobRow.id.in_(job_ids))
                .execution_options(synchronize_session=False)
            )
            return len(job_ids)

    async def job_statistics(self, device_id: str = None) -> dict[str, Any]:
        async with self._session() as db:
            job_stmt = select(JobRow.status, func.count()).group_by(JobRow.status)
            item_stmt = (
                select(JobItemRow.status, func.count())
                .join(JobRow, JobRow.id == JobItemRow.job_id)
                .group_by(JobItemRow.status)
            )
            if device_id is not None:
                job_stmt = job_stmt.where(JobRow.device_id == device_id)
                item_stmt = item_stmt.where(JobRow.device_id == device_id)
            job_counts = dict((await db.execute(job_stmt)).all())
            item_counts = dict((await db.execute(item_stmt)).all())
        return {
            "total_jobs": sum(job_counts.values()),
            "jobs": {s.value: job_counts.get(s.value, 0) for s in JobStatus},
            "items": {s.value: item_counts.get(s.value, 0) for s in JobItemStatus},
        }

    # ── Rules ──────────────────────────────────────────────

    async def create_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        async with self._session() as db:
            row = AutoReplyRuleRow(
                device_id=rule.device_id,
                name=rule.name,
                match_type=rule.match_type.value,
                trigger=rule.trigger,
                response=rule.response,
                priority=rule.priority,
                is_active=rule.is_active,
                cooldown_seconds=rule.cooldown_seconds,
                metadata_=rule.metadata,
                created_at=rule.created_at,
            )
            db.add(row)
            await db.flush()
            return self._row_to_rule(row)

    async def get_rule(self, rule_id: int) -> Optional[AutoReplyRule]:
        async with self._session() as db:
            row = await db.get(AutoReplyRuleRow, rule_id)
            return self._row_to_rule(row) if row else None

    async def save_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        async with self._session() as db:
            row = await db.get(AutoReplyRuleRow, rule.id)
            if row is None:
                raise RuleNotFoundError(rule.id)
            row.name = rule.name
            row.match_type = rule.match_type.value
            row.trigger = rule.trigger
            row.response = rule.response
            row.priority = rule.priority
            row.is_active = rule.is_active
            row.cooldown_seconds = rule.cooldown_seconds
            row.metadata_ = rule.metadata
            return rule

    async def delete_rule(self, rule_id: int) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(AutoReplyRuleRow).where(AutoReplyRuleRow.id == rule_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def list_rules(self, device_id: str, active_only: bool = False) -> list[AutoReplyRule]:
        async with self._session() as db:
            stmt = select(AutoReplyRuleRow).where(AutoReplyRuleRow.device_id == device_id)
            if active_only:
                stmt = stmt.where(AutoReplyRuleRow.is_active.is_(True))
            stmt = stmt.order_by(AutoReplyRuleRow.priority, AutoReplyRuleRow.id)
            result = await db.execute(stmt)
            return [self._row_to_rule(r) for r in result.scalars()]

    # ── Conversations ──────────────────────────────────────

    @staticmethod
    def _conversation_stmt(device_id: str, counterpart_id: str):
        return select(ConversationRow).where(
            ConversationRow.device_id == device_id,
            ConversationRow.counterpart_id == counterpart_id,
        )

    async def get_conversation(self, device_id: str, counterpart_id: str) -> Optional[Conversation]:
        async with self._session() as db:
            result = await db.execute(self._conversation_stmt(device_id, counterpart_id))
            row = result.scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        now = utcnow()
        async with self._session() as db:
            result = await db.execute(
                self._conversation_stmt(conversation.device_id, conversation.counterpart_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = ConversationRow(
                    device_id=conversation.device_id,
                    counterpart_id=conversation.counterpart_id,
                    created_at=conversation.created_at,
                )
                db.add(row)
            row.state = conversation.state.value
            row.last_bot_activity_at = conversation.last_bot_activity_at
            row.last_handoff_requested_at = conversation.last_handoff_requested_at
            row.last_message_at = conversation.last_message_at
            row.handoff_reason = conversation.handoff_reason
            row.last_rule_id = conversation.last_rule_id
            row.updated_at = now
            await db.flush()
            return self._row_to_conversation(row)

    async def list_conversations(
        self, device_id: str, state: ControlState = None, limit: int = 100,
    ) -> list[Conversation]:
        async with self._session() as db:
            stmt = select(ConversationRow).where(ConversationRow.device_id == device_id)
            if state is not None:
                stmt = stmt.where(ConversationRow.state == ControlState(state).value)
            stmt = stmt.order_by(ConversationRow.updated_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars()]

    async def count_conversations(self, device_id: str) -> dict[str, int]:
        async with self._session() as db:
            result = await db.execute(
                select(ConversationRow.state, func.count())
                .where(ConversationRow.device_id == device_id)
                .group_by(ConversationRow.state)
            )
            counts = dict(result.all())
        return {
            "total": sum(counts.values()),
            "bot": counts.get(ControlState.BOT.value, 0),
            "handoff": counts.get(ControlState.HANDOFF.value, 0),
        }

    # ── Bot config ─────────────────────────────────────────

    async def get_bot_config(self, device_id: str) -> Optional[DeviceBotConfig]:
        async with self._session() as db:
            row = await db.get(DeviceBotConfigRow, device_id)
            if row is None:
                return None
            return DeviceBotConfig.model_validate({**(row.config or {}), "device_id": device_id})

    async def save_bot_config(self, config: DeviceBotConfig) -> DeviceBotConfig:
        async with self._session() as db:
            row = await db.get(DeviceBotConfigRow, config.device_id)
            data = config.model_dump(mode="json", exclude={"device_id"})
            if row is None:
                db.add(DeviceBotConfigRow(device_id=config.device_id, config=data))
            else:
                row.config = data
            return config

    # ── Action log ─────────────────────────────────────────

    async def add_action(self, entry: BotActionLog) -> BotActionLog:
        async with self._session() as db:
            row = BotActionLogRow(
                device_id=entry.device_id,
                counterpart_id=entry.counterpart_id,
                action_type=entry.action_type.value,
                rule_id=entry.rule_id,
                incoming_message=truncate(entry.incoming_message),
                response_message=truncate(entry.response_message),
                metadata_=entry.metadata,
                created_at=entry.created_at,
            )
            db.add(row)
            await db.flush()
            return self._row_to_action(row)

    async def list_actions(
        self, device_id: str, counterpart_id: str = None, limit: int = 100,
    ) -> list[BotActionLog]:
        async with self._session() as db:
            stmt = select(BotActionLogRow).where(BotActionLogRow.device_id == device_id)
            if counterpart_id is not None:
                stmt = stmt.where(BotActionLogRow.counterpart_id == counterpart_id)
            stmt = stmt.order_by(BotActionLogRow.id.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_action(r) for r in result.scalars()]

    # ── Row conversion ─────────────────────────────────────

    @staticmethod
    def _row_to_job(row: JobRow) -> Job:
        return Job(
            id=row.id,
            type=JobType(row.type),
            status=JobStatus(row.status),
            device_id=row.device_id,
            payload=row.payload or {},
            options=row.options or {},
            progress=JobProgress(
                total=row.total, completed=row.completed,
                failed=row.failed, cancelled=row.cancelled,
            ),
            error=row.error,
            created_at=_aware(row.created_at),
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
        )

    @staticmethod
    def _row_to_item(row: JobItemRow) -> JobItem:
        return JobItem(
            id=row.id,
            job_id=row.job_id,
            recipient=row.recipient,
            status=JobItemStatus(row.status),
            message_id=row.message_id,
            error=row.error,
            attempts=row.attempts,
            next_attempt_at=_aware(row.next_attempt_at),
            claimed_at=_aware(row.claimed_at),
            processed_at=_aware(row.processed_at),
        )

    @staticmethod
    def _row_to_rule(row: AutoReplyRuleRow) -> AutoReplyRule:
        return AutoReplyRule(
            id=row.id,
            device_id=row.device_id,
            name=row.name,
            match_type=MatchType(row.match_type),
            trigger=row.trigger,
            response=row.response,
            priority=row.priority,
            is_active=row.is_active,
            cooldown_seconds=row.cooldown_seconds,
            metadata=row.metadata_ or {},
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            device_id=row.device_id,
            counterpart_id=row.counterpart_id,
            state=ControlState(row.state),
            last_bot_activity_at=_aware(row.last_bot_activity_at),
            last_handoff_requested_at=_aware(row.last_handoff_requested_at),
            last_message_at=_aware(row.last_message_at),
            handoff_reason=row.handoff_reason,
            last_rule_id=row.last_rule_id,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_action(row: BotActionLogRow) -> BotActionLog:
        return BotActionLog(
            id=row.id,
            device_id=row.device_id,
            counterpart_id=row.counterpart_id,
            action_type=BotActionType(row.action_type),
            rule_id=row.rule_id,
            incoming_message=row.incoming_message,
            response_message=row.response_message,
            metadata=row.metadata_ or {},
            created_at=_aware(row.created_at),
        )
