"""
Tests for both store backends.

Covers:
  - InMemoryStore
  - SqlStore (via SQLite for test portability)
  - Store factory

Every test taking `any_store` runs once per backend, so the two must agree.
"""
from datetime import timedelta

import pytest

from config.settings import DatabaseConfig
from models.schemas import (
    AutoReplyRule, BotActionLog, BotActionType, BusinessHoursWindow, ControlState,
    Conversation, DeviceBotConfig, Job, JobItemStatus, JobStatus, MatchType, utcnow,
)

A, B, C = "15550000001", "15550000002", "15550000003"


async def _job(store, recipients=(A, B, C), device_id="device-1"):
    return await store.create_job(Job(device_id=device_id, payload={"text": "hi"}), list(recipients))


# ──────────────────────────────────────────────────────────────
#  Jobs & recipient queue
# ──────────────────────────────────────────────────────────────

class TestJobQueue:

    @pytest.mark.asyncio
    async def test_create_job_sets_total_and_pending_items(self, any_store):
        job = await _job(any_store)
        assert job.status == JobStatus.QUEUED
        assert job.progress.total == 3

        items = await any_store.list_job_items(job.id)
        assert [i.recipient for i in items] == [A, B, C]
        assert all(i.status == JobItemStatus.PENDING and i.attempts == 0 for i in items)

    @pytest.mark.asyncio
    async def test_claim_marks_in_flight_and_starts_job(self, any_store):
        job = await _job(any_store)
        claimed = await any_store.claim_next_batch("device-1", 2, utcnow())

        assert [i.recipient for i in claimed] == [A, B]
        assert all(i.status == JobItemStatus.IN_FLIGHT and i.attempts == 1 for i in claimed)
        stored = await any_store.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.started_at is not None

    @pytest.mark.asyncio
    async def test_claimed_items_are_not_claimed_twice(self, any_store):
        await _job(any_store)
        first = await any_store.claim_next_batch("device-1", 10, utcnow())
        second = await any_store.claim_next_batch("device-1", 10, utcnow())
        assert len(first) == 3
        assert second == []

    @pytest.mark.asyncio
    async def test_claim_is_fifo_across_jobs_and_scoped_to_device(self, any_store):
        first = await _job(any_store, [A])
        second = await _job(any_store, [B])
        await _job(any_store, [C], device_id="device-2")

        claimed = await any_store.claim_next_batch("device-1", 10, utcnow())
        assert [(i.job_id, i.recipient) for i in claimed] == [(first.id, A), (second.id, B)]

    @pytest.mark.asyncio
    async def test_released_item_waits_for_next_attempt(self, any_store):
        await _job(any_store, [A])
        now = utcnow()
        [item] = await any_store.claim_next_batch("device-1", 1, now)

        assert await any_store.release_for_retry(item.id, "timeout", now + timedelta(seconds=30))
        assert await any_store.claim_next_batch("device-1", 1, now) == []

        [again] = await any_store.claim_next_batch("device-1", 1, now + timedelta(seconds=31))
        assert again.id == item.id
        assert again.attempts == 2
        assert again.error == "timeout"

    @pytest.mark.asyncio
    async def test_release_requires_in_flight(self, any_store):
        await _job(any_store, [A])
        [item] = await any_store.claim_next_batch("device-1", 1, utcnow())
        await any_store.finalize_item(item.id, JobItemStatus.SENT, message_id="m1")
        assert not await any_store.release_for_retry(item.id, "late", utcnow())

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, any_store):
        job = await _job(any_store, [A, B])
        [item, _] = await any_store.claim_next_batch("device-1", 2, utcnow())

        changed, job_after = await any_store.finalize_item(item.id, JobItemStatus.SENT, message_id="m1")
        assert changed
        assert job_after.progress.completed == 1

        changed, job_after = await any_store.finalize_item(item.id, JobItemStatus.FAILED, error="late")
        assert not changed
        assert job_after.progress.completed == 1
        assert job_after.progress.failed == 0

        stored = await any_store.get_job_item(item.id)
        assert stored.status == JobItemStatus.SENT
        assert stored.message_id == "m1"

    @pytest.mark.asyncio
    async def test_job_completes_when_every_item_is_final(self, any_store):
        job = await _job(any_store)
        items = await any_store.claim_next_batch("device-1", 3, utcnow())

        await any_store.finalize_item(items[0].id, JobItemStatus.SENT, message_id="m1")
        await any_store.finalize_item(items[1].id, JobItemStatus.FAILED, error="blocked")
        changed, done = await any_store.finalize_item(items[2].id, JobItemStatus.SENT, message_id="m3")

        assert changed
        assert done.status == JobStatus.COMPLETED
        assert done.completed_at is not None
        assert (done.progress.completed, done.progress.failed) == (2, 1)
        assert done.progress.finalized == done.progress.total == 3

    @pytest.mark.asyncio
    async def test_cancel_finalizes_pending_but_not_in_flight(self, any_store):
        job = await _job(any_store)
        [in_flight] = await any_store.claim_next_batch("device-1", 1, utcnow())

        cancelled = await any_store.cancel_job(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.progress.cancelled == 2

        # the in-flight send still records its outcome
        changed, after = await any_store.finalize_item(in_flight.id, JobItemStatus.SENT, message_id="m1")
        assert changed
        assert after.status == JobStatus.CANCELLED
        assert after.progress.finalized == 3
        assert await any_store.claim_next_batch("device-1", 10, utcnow()) == []

    @pytest.mark.asyncio
    async def test_fail_job_fails_pending_items(self, any_store):
        job = await _job(any_store)
        failed = await any_store.fail_job(job.id, "device unavailable")

        assert failed.status == JobStatus.FAILED
        assert failed.error == "device unavailable"
        assert failed.progress.failed == 3
        items = await any_store.list_job_items(job.id, status=JobItemStatus.FAILED)
        assert len(items) == 3

    @pytest.mark.asyncio
    async def test_closing_a_terminal_job_changes_nothing(self, any_store):
        job = await _job(any_store)
        await any_store.cancel_job(job.id)
        after = await any_store.fail_job(job.id, "too late")
        assert after.status == JobStatus.CANCELLED
        assert after.error is None

    @pytest.mark.asyncio
    async def test_requeue_stale_claims(self, any_store):
        job = await _job(any_store, [A, B])
        claimed_at = utcnow() - timedelta(minutes=10)
        await any_store.claim_next_batch("device-1", 2, claimed_at)

        requeued = await any_store.requeue_stale_claims(utcnow() - timedelta(minutes=5))
        assert requeued == 2
        items = await any_store.list_job_items(job.id)
        assert all(i.status == JobItemStatus.PENDING for i in items)
        assert all(i.attempts == 1 for i in items)

    @pytest.mark.asyncio
    async def test_fresh_claims_are_not_requeued(self, any_store):
        await _job(any_store, [A])
        await any_store.claim_next_batch("device-1", 1, utcnow())
        assert await any_store.requeue_stale_claims(utcnow() - timedelta(minutes=5)) == 0

    @pytest.mark.asyncio
    async def test_open_work_tracking(self, any_store):
        job = await _job(any_store, [A])
        await _job(any_store, [B], device_id="device-2")
        assert await any_store.devices_with_open_work() == ["device-1", "device-2"]
        assert await any_store.has_open_work("device-1")

        await any_store.cancel_job(job.id)
        assert not await any_store.has_open_work("device-1")
        assert await any_store.devices_with_open_work() == ["device-2"]

    @pytest.mark.asyncio
    async def test_purge_removes_only_old_terminal_jobs(self, any_store):
        done = await _job(any_store, [A])
        open_job = await _job(any_store, [B])
        await any_store.cancel_job(done.id)

        assert await any_store.purge_finished_jobs(utcnow() - timedelta(hours=1)) == 0
        assert await any_store.purge_finished_jobs(utcnow() + timedelta(seconds=1)) == 1
        assert await any_store.get_job(done.id) is None
        assert await any_store.list_job_items(done.id) == []
        assert await any_store.get_job(open_job.id) is not None

    @pytest.mark.asyncio
    async def test_job_statistics(self, any_store):
        first = await _job(any_store, [A, B])
        await _job(any_store, [C], device_id="device-2")
        await any_store.cancel_job(first.id)

        stats = await any_store.job_statistics()
        assert stats["total_jobs"] == 2
        assert stats["jobs"]["cancelled"] == 1
        assert stats["jobs"]["queued"] == 1
        assert stats["items"]["cancelled"] == 2
        assert stats["items"]["pending"] == 1

        device_stats = await any_store.job_statistics("device-2")
        assert device_stats["total_jobs"] == 1

    @pytest.mark.asyncio
    async def test_list_jobs_filters_and_orders_newest_first(self, any_store):
        first = await _job(any_store, [A])
        second = await _job(any_store, [B])
        await any_store.cancel_job(first.id)

        jobs = await any_store.list_jobs(device_id="device-1")
        assert [j.id for j in jobs] == [second.id, first.id]
        cancelled = await any_store.list_jobs(status=JobStatus.CANCELLED)
        assert [j.id for j in cancelled] == [first.id]


# ──────────────────────────────────────────────────────────────
#  Rules, conversations, bot config, action log
# ──────────────────────────────────────────────────────────────

class TestAutomationRecords:

    @pytest.mark.asyncio
    async def test_rule_crud_and_priority_order(self, any_store):
        low = await any_store.create_rule(AutoReplyRule(
            device_id="device-1", name="help", trigger="help", response="How can I help?", priority=2,
        ))
        high = await any_store.create_rule(AutoReplyRule(
            device_id="device-1", name="hi", match_type=MatchType.EXACT, trigger="hi",
            response="Hello!", priority=1,
        ))
        assert low.id < high.id

        rules = await any_store.list_rules("device-1")
        assert [r.name for r in rules] == ["hi", "help"]

        low.is_active = False
        await any_store.save_rule(low)
        active = await any_store.list_rules("device-1", active_only=True)
        assert [r.id for r in active] == [high.id]

        assert await any_store.delete_rule(high.id)
        assert not await any_store.delete_rule(high.id)
        assert await any_store.get_rule(high.id) is None

    @pytest.mark.asyncio
    async def test_conversation_is_unique_per_counterpart(self, any_store):
        conv = Conversation(device_id="device-1", counterpart_id=A)
        await any_store.save_conversation(conv)

        conv.state = ControlState.HANDOFF
        conv.handoff_reason = "operator"
        await any_store.save_conversation(conv)

        stored = await any_store.get_conversation("device-1", A)
        assert stored.state == ControlState.HANDOFF
        assert stored.handoff_reason == "operator"
        assert await any_store.count_conversations("device-1") == {"total": 1, "bot": 0, "handoff": 1}

        handoffs = await any_store.list_conversations("device-1", state=ControlState.HANDOFF)
        assert [c.counterpart_id for c in handoffs] == [A]

    @pytest.mark.asyncio
    async def test_bot_config_round_trip(self, any_store):
        assert await any_store.get_bot_config("device-1") is None
        config = DeviceBotConfig(
            device_id="device-1",
            timezone="Asia/Kolkata",
            business_hours=[BusinessHoursWindow(day=1, start="09:00", end="17:00")],
            handoff_keywords=["agent"],
        )
        await any_store.save_bot_config(config)

        stored = await any_store.get_bot_config("device-1")
        assert stored.timezone == "Asia/Kolkata"
        assert stored.business_hours[0].start == "09:00"
        assert stored.handoff_keywords == ["agent"]

    @pytest.mark.asyncio
    async def test_action_log_newest_first_and_truncated(self, any_store):
        await any_store.add_action(BotActionLog(
            device_id="device-1", counterpart_id=A, action_type=BotActionType.NO_MATCH,
            incoming_message="x" * 5000,
        ))
        await any_store.add_action(BotActionLog(
            device_id="device-1", counterpart_id=B, action_type=BotActionType.AUTO_REPLY, rule_id=1,
        ))

        actions = await any_store.list_actions("device-1")
        assert [a.counterpart_id for a in actions] == [B, A]
        assert len(actions[1].incoming_message) <= 1000
        only_a = await any_store.list_actions("device-1", counterpart_id=A)
        assert len(only_a) == 1


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:

    @pytest.fixture(autouse=True)
    def fresh_factory(self):
        from database.store_factory import reset_store
        reset_store()
        yield
        reset_store()

    def test_memory_backend(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStore
        assert isinstance(create_store(DatabaseConfig(store_backend="memory")), InMemoryStore)

    def test_sql_backend(self):
        from database.store_factory import create_store
        from database.store import SqlStore
        assert isinstance(create_store(DatabaseConfig(store_backend="sql")), SqlStore)

    def test_store_is_a_singleton(self):
        from database.store_factory import create_store, get_store
        store = create_store(DatabaseConfig(store_backend="memory"))
        assert get_store() is store
