"""
Orchestrator — wires the automation core together and exposes its operations.

Architecture:
  Outbound: enqueue_job → JobDispatcher persists Job + items
            → DispatchWorkerPool (one loop per device) claims and sends
            → record_outcome → job.progress / job.completed events

  Inbound:  transport webhook → on_inbound_event → SafetyGuard
            → ConversationStateManager (handoff state, keywords, hours, rules)
            → auto-reply sent → auto_reply.sent event

  Events:   EventBus fan-out to SSE subscribers and the optional Redis relay.

Usage:
    orchestrator = await create_orchestrator()
    await orchestrator.start()
    job_id = await orchestrator.enqueue_job("device-1", ["+15551230001"], {"text": "Hello"})
    ...
    await orchestrator.stop()
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Iterable, Optional

from channels.base import OutboundTransport
from config.settings import Settings, get_settings
from context.manager import ConversationStateManager
from context.safety import SafetyGuard
from core.automation import InboundAutomation
from core.errors import ConfigurationError
from database.store_base import BaseStore
from events.bus import EventBus, Subscription
from events.relay import RedisEventRelay
from job_queue.dispatcher import JobDispatcher
from job_queue.worker import DispatchWorkerPool
from models.schemas import (
    AutoReplyRule, BotActionLog, Conversation, DeviceBotConfig, EventType,
    InboundAction, InboundMessage, Job, JobItem, JobItemStatus, JobStatus, Outcome,
)
from rules.service import RuleService

logger = structlog.get_logger()


class Orchestrator:
    """Single entry point for the API layer, transports and background workers."""

    def __init__(
        self,
        store: BaseStore,
        transport: OutboundTransport,
        settings: Settings = None,
        bus: EventBus = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.transport = transport
        self.bus = bus or EventBus(
            buffer=self.settings.events.subscriber_buffer,
            drop_policy=self.settings.events.drop_policy,
        )

        self.dispatcher = JobDispatcher(store, self.bus, self.settings.events.progress_interval_seconds)
        self.workers = DispatchWorkerPool(self.dispatcher, transport, self.settings.dispatch)
        self.rules = RuleService(store)
        self.conversations = ConversationStateManager(store, self.bus)
        self.safety = SafetyGuard.from_config(self.settings.bot)
        self.automation = InboundAutomation(self.conversations, transport, self.safety, self.settings.bot)
        self.relay: Optional[RedisEventRelay] = None

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self):
        for device_id, rules in self.settings.rules.items():
            await self.rules.load_rules(device_id, rules)

        events = self.settings.events
        if events.redis_url and self.relay is None:
            relay = RedisEventRelay(events.redis_url, stream=events.redis_stream, maxlen=events.redis_maxlen)
            try:
                await relay.connect()
            except Exception as e:
                logger.warning("event_relay_unavailable", url=events.redis_url, error=str(e))
            else:
                self.bus.add_listener(relay)
                relay.start()
                self.relay = relay

        await self.workers.start()
        logger.info("orchestrator_started", app=self.settings.app_name)

    async def stop(self, timeout: float = None):
        await self.workers.stop(timeout=timeout)
        if self.relay is not None:
            await self.relay.close()
            self.relay = None
        await self.transport.close()
        self.bus.close()
        logger.info("orchestrator_stopped")

    # ══════════════════════════════════════════════════════════
    #  JOBS
    # ══════════════════════════════════════════════════════════

    async def enqueue_job(
        self, device_id: str, recipients: list[str], payload: dict[str, Any],
        options: dict[str, Any] = None,
    ) -> str:
        return await self.dispatcher.enqueue_job(device_id, recipients, payload, options)

    async def record_outcome(self, item_id: int, outcome: Outcome) -> bool:
        return await self.dispatcher.record_outcome(item_id, outcome)

    async def cancel_job(self, job_id: str) -> Job:
        return await self.dispatcher.cancel_job(job_id)

    async def retry_job(self, job_id: str) -> str:
        return await self.dispatcher.retry_job(job_id)

    async def get_job(self, job_id: str) -> Job:
        return await self.dispatcher.get_job(job_id)

    async def list_jobs(self, device_id: str = None, status: JobStatus = None, limit: int = 50) -> list[Job]:
        return await self.dispatcher.list_jobs(device_id=device_id, status=status, limit=limit)

    async def list_job_items(self, job_id: str, status: JobItemStatus = None) -> list[JobItem]:
        return await self.dispatcher.list_job_items(job_id, status=status)

    async def job_statistics(self, device_id: str = None) -> dict[str, Any]:
        return await self.dispatcher.job_statistics(device_id)

    async def purge_finished_jobs(self, older_than_hours: float = 24) -> int:
        return await self.dispatcher.purge_finished_jobs(older_than_hours)

    # ══════════════════════════════════════════════════════════
    #  RULES & BOT CONFIG
    # ══════════════════════════════════════════════════════════

    async def create_rule(self, device_id: str, **fields: Any) -> AutoReplyRule:
        return await self.rules.create_rule(device_id, **fields)

    async def update_rule(self, rule_id: int, **changes: Any) -> AutoReplyRule:
        return await self.rules.update_rule(rule_id, **changes)

    async def delete_rule(self, rule_id: int) -> None:
        await self.rules.delete_rule(rule_id)

    async def get_rule(self, rule_id: int) -> AutoReplyRule:
        return await self.rules.get_rule(rule_id)

    async def list_rules(self, device_id: str, active_only: bool = False) -> list[AutoReplyRule]:
        return await self.rules.list_rules(device_id, active_only=active_only)

    async def get_bot_config(self, device_id: str) -> DeviceBotConfig:
        return await self.conversations.get_bot_config(device_id)

    async def save_bot_config(self, config: DeviceBotConfig) -> DeviceBotConfig:
        return await self.conversations.save_bot_config(config)

    async def update_bot_config(self, device_id: str, **changes: Any) -> DeviceBotConfig:
        return await self.conversations.update_bot_config(device_id, **changes)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    async def on_inbound_event(
        self, device_id: str, sender_id: str, text: str,
        timestamp: datetime = None, message_id: str = None, from_me: bool = False,
    ) -> InboundAction:
        return await self.automation.on_inbound_event(
            device_id, sender_id, text, timestamp=timestamp, message_id=message_id, from_me=from_me,
        )

    async def handle_inbound(self, messages: Iterable[InboundMessage]) -> list[InboundAction]:
        """Feed parsed webhook messages through the inbound flow, in arrival order."""
        actions = []
        for msg in messages:
            actions.append(await self.on_inbound_event(
                msg.device_id, msg.sender_id, msg.text,
                timestamp=msg.timestamp, message_id=msg.message_id, from_me=msg.from_me,
            ))
        return actions

    async def handle_webhook(self, device_id: str, raw_payload: dict[str, Any]) -> list[InboundAction]:
        parse = getattr(self.transport, "parse_inbound", None)
        if parse is None:
            raise ConfigurationError(f"{type(self.transport).__name__} does not accept webhooks")
        return await self.handle_inbound(parse(device_id, raw_payload))

    async def request_handoff(self, device_id: str, counterpart_id: str, reason: str = "operator") -> Conversation:
        return await self.conversations.request_handoff(device_id, counterpart_id, reason)

    async def resume_bot(self, device_id: str, counterpart_id: str, resumed_by: str = "operator") -> Conversation:
        return await self.conversations.resume_bot(device_id, counterpart_id, resumed_by)

    async def get_conversation(self, device_id: str, counterpart_id: str) -> Optional[Conversation]:
        return await self.conversations.get_conversation(device_id, counterpart_id)

    async def list_handoffs(self, device_id: str) -> list[Conversation]:
        return await self.conversations.list_handoffs(device_id)

    async def conversation_stats(self, device_id: str) -> dict[str, int]:
        return await self.conversations.conversation_stats(device_id)

    async def list_actions(self, device_id: str, counterpart_id: str = None, limit: int = 100) -> list[BotActionLog]:
        return await self.conversations.list_actions(device_id, counterpart_id=counterpart_id, limit=limit)

    # ══════════════════════════════════════════════════════════
    #  EVENTS
    # ══════════════════════════════════════════════════════════

    def subscribe(self, device_id: str = None, types: Iterable[EventType] = None) -> Subscription:
        return self.bus.subscribe(device_id=device_id, types=types)


async def create_orchestrator(
    settings: Settings = None, transport: OutboundTransport = None, store: BaseStore = None,
) -> Orchestrator:
    """Build an Orchestrator from settings: store backend, tables, WhatsApp transport."""
    settings = settings or get_settings()

    if store is None:
        from database.store_factory import create_store
        store = create_store(settings.database)
        if settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db()

    if transport is None:
        from channels.whatsapp_adapter import WhatsAppCloudTransport
        transport = WhatsAppCloudTransport(settings.whatsapp)

    return Orchestrator(store, transport, settings)
