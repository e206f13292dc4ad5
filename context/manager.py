"""
Conversation State Manager — who is talking to a counterpart: the bot or a human.

Each (device_id, counterpart_id) conversation is in one of two states:

    bot ──request_handoff / escalation keyword──▶ handoff
    handoff ──resume_bot / resume keyword──▶ bot

While in handoff the rule matcher is never consulted. In bot state an
inbound message goes through the device's bot config (enabled, escalation
keywords, business hours) and then the rule matcher:

    on_inbound_message("d1", "15551234567", "hi")
      → InboundAction(type=auto_reply, response="Hello!", rule_id=1)

All reads and writes for one key run under that key's lock; different
counterparts are evaluated concurrently.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from context.business_hours import is_off_hours, validate_business_hours
from context.locks import KeyedLock
from database.store_base import BaseStore
from events.bus import EventBus
from models.schemas import (
    BotActionLog, BotActionType, ControlState, Conversation, DeviceBotConfig,
    Event, EventType, InboundAction, utcnow,
)
from rules.matcher import match

logger = structlog.get_logger()

# InboundAction.reason → what a sent reply is logged as
_REPLY_ACTIONS = {
    "rule_matched": BotActionType.AUTO_REPLY,
    "off_hours_reply": BotActionType.OFF_HOURS_REPLY,
}


def keyword_hit(keywords: list[str], text: str) -> Optional[str]:
    """First keyword contained in `text` (case-insensitive), if any."""
    lowered = (text or "").strip().lower()
    for keyword in keywords:
        if keyword and keyword.strip().lower() in lowered:
            return keyword
    return None


class ConversationStateManager:

    def __init__(self, store: BaseStore, bus: EventBus):
        self.store = store
        self.bus = bus
        self.locks = KeyedLock()
        self._cooldowns: dict[tuple[str, str, int], datetime] = {}   # (device, counterpart, rule) → until

    # ── Bot config ────────────────────────────────────────

    async def get_bot_config(self, device_id: str) -> DeviceBotConfig:
        """Stored config, or the defaults (bot on, no keywords, no business hours)."""
        config = await self.store.get_bot_config(device_id)
        return config or DeviceBotConfig(device_id=device_id)

    async def save_bot_config(self, config: DeviceBotConfig) -> DeviceBotConfig:
        config = config.model_copy(update={
            "business_hours": validate_business_hours(config.business_hours),
            "handoff_keywords": [k.strip() for k in config.handoff_keywords if k.strip()],
            "resume_keywords": [k.strip() for k in config.resume_keywords if k.strip()],
        })
        await self.store.save_bot_config(config)
        logger.info("bot_config_saved", device_id=config.device_id, bot_enabled=config.bot_enabled)
        return config

    async def update_bot_config(self, device_id: str, **changes: Any) -> DeviceBotConfig:
        """Merge `changes` over the stored config (or the defaults) and save."""
        current = await self.get_bot_config(device_id)
        return await self.save_bot_config(DeviceBotConfig(**{**current.model_dump(), **changes, "device_id": device_id}))

    # ── Inbound ───────────────────────────────────────────

    async def on_inbound_message(
        self, device_id: str, counterpart_id: str, text: str, now: datetime = None,
    ) -> InboundAction:
        now = now or utcnow()
        events: list[Event] = []
        async with self.locks((device_id, counterpart_id)):
            conversation = await self._load(device_id, counterpart_id, now)
            conversation.last_message_at = now
            config = await self.get_bot_config(device_id)
            action = await self._evaluate(conversation, config, text, now, events)
            await self.store.save_conversation(conversation)

        for event in events:
            self.bus.publish(event)
        logger.info("inbound_evaluated", device_id=device_id, counterpart_id=counterpart_id,
                    action=action.type.value, reason=action.reason, rule_id=action.rule_id)
        return action

    async def _evaluate(
        self, conversation: Conversation, config: DeviceBotConfig, text: str,
        now: datetime, events: list[Event],
    ) -> InboundAction:
        device_id, counterpart_id = conversation.key

        if conversation.in_handoff:
            keyword = keyword_hit(config.resume_keywords, text)
            if keyword is None:
                return InboundAction.no_reply("in_handoff")
            self._enter_bot(conversation)
            await self._log(conversation, BotActionType.HANDOFF_RESUMED, incoming=text,
                            metadata={"resumed_by": "user", "keyword": keyword})
            events.append(self._state_event(EventType.BOT_RESUMED, conversation, resumed_by="user"))
            if config.resume_message:
                return InboundAction.auto_reply(config.resume_message, reason="resumed_by_user")
            return InboundAction.no_reply("resumed_by_user")

        if not config.bot_enabled:
            return InboundAction.no_reply("bot_disabled")

        keyword = keyword_hit(config.handoff_keywords, text)
        if keyword is not None:
            self._enter_handoff(conversation, "escalation_keyword", now)
            await self._log(conversation, BotActionType.HANDOFF_INITIATED, incoming=text,
                            metadata={"reason": "escalation_keyword", "keyword": keyword})
            events.append(self._state_event(EventType.HANDOFF_STARTED, conversation,
                                            reason="escalation_keyword"))
            if config.handoff_message:
                return InboundAction.auto_reply(config.handoff_message, reason="handoff_initiated")
            return InboundAction.no_reply("handoff_initiated")

        if is_off_hours(config, now):
            if config.off_hours_message:
                return InboundAction.auto_reply(config.off_hours_message, reason="off_hours_reply")
            return InboundAction.no_reply("off_hours")

        rules = await self.store.list_rules(device_id, active_only=True)
        available = [r for r in rules if not self.on_cooldown(device_id, counterpart_id, r.id, now)]
        rule = match(available, text)
        if rule is None:
            await self._log(conversation, BotActionType.NO_MATCH, incoming=text)
            return InboundAction.no_reply("no_match")
        return InboundAction.auto_reply(rule.response, rule_id=rule.id)

    async def record_auto_reply_sent(
        self, device_id: str, counterpart_id: str, rule_id: int = None,
        message_id: str = None, response: str = None, incoming: str = None,
        reason: str = "rule_matched",
    ) -> Conversation:
        """Note a delivered auto-reply: bot activity, rule cooldown, audit log, event."""
        now = utcnow()
        async with self.locks((device_id, counterpart_id)):
            conversation = await self._load(device_id, counterpart_id, now)
            conversation.last_bot_activity_at = now
            if rule_id is not None:
                conversation.last_rule_id = rule_id
            conversation = await self.store.save_conversation(conversation)

        if rule_id is not None:
            rule = await self.store.get_rule(rule_id)
            if rule is not None and rule.cooldown_seconds > 0:
                self._expire_cooldowns(now)
                self._cooldowns[(device_id, counterpart_id, rule_id)] = now + timedelta(seconds=rule.cooldown_seconds)

        action_type = _REPLY_ACTIONS.get(reason)
        if action_type is not None:
            await self._log(conversation, action_type, rule_id=rule_id, incoming=incoming,
                            response=response, metadata={"message_id": message_id})

        self.bus.publish(Event(
            type=EventType.AUTO_REPLY_SENT, device_id=device_id,
            data={"counterpart_id": counterpart_id, "rule_id": rule_id,
                  "message_id": message_id, "reason": reason},
        ))
        return conversation

    # ── Handoff control ───────────────────────────────────

    async def request_handoff(self, device_id: str, counterpart_id: str, reason: str = "operator") -> Conversation:
        """Hand the conversation to a human. Repeating it refreshes the timestamp only."""
        now = utcnow()
        async with self.locks((device_id, counterpart_id)):
            conversation = await self._load(device_id, counterpart_id, now)
            changed = self._enter_handoff(conversation, reason, now)
            conversation = await self.store.save_conversation(conversation)
            if changed:
                await self._log(conversation, BotActionType.HANDOFF_INITIATED, metadata={"reason": reason})

        if changed:
            self.bus.publish(self._state_event(EventType.HANDOFF_STARTED, conversation, reason=reason))
            logger.info("handoff_started", device_id=device_id, counterpart_id=counterpart_id, reason=reason)
        return conversation

    async def resume_bot(self, device_id: str, counterpart_id: str, resumed_by: str = "operator") -> Conversation:
        """Give the conversation back to the bot. A no-op when the bot already has it."""
        now = utcnow()
        async with self.locks((device_id, counterpart_id)):
            conversation = await self._load(device_id, counterpart_id, now)
            changed = self._enter_bot(conversation)
            if changed:
                conversation = await self.store.save_conversation(conversation)
                await self._log(conversation, BotActionType.HANDOFF_RESUMED, metadata={"resumed_by": resumed_by})

        if changed:
            self.bus.publish(self._state_event(EventType.BOT_RESUMED, conversation, resumed_by=resumed_by))
            logger.info("bot_resumed", device_id=device_id, counterpart_id=counterpart_id, resumed_by=resumed_by)
        return conversation

    @staticmethod
    def _enter_handoff(conversation: Conversation, reason: str, now: datetime) -> bool:
        changed = conversation.state != ControlState.HANDOFF
        conversation.state = ControlState.HANDOFF
        conversation.last_handoff_requested_at = now
        if changed:
            conversation.handoff_reason = reason
        return changed

    @staticmethod
    def _enter_bot(conversation: Conversation) -> bool:
        if conversation.state == ControlState.BOT:
            return False
        conversation.state = ControlState.BOT
        conversation.handoff_reason = None
        return True

    # ── Reads ─────────────────────────────────────────────

    async def get_conversation(self, device_id: str, counterpart_id: str) -> Optional[Conversation]:
        return await self.store.get_conversation(device_id, counterpart_id)

    async def list_handoffs(self, device_id: str, limit: int = 100) -> list[Conversation]:
        return await self.store.list_conversations(device_id, state=ControlState.HANDOFF, limit=limit)

    async def conversation_stats(self, device_id: str) -> dict[str, int]:
        return await self.store.count_conversations(device_id)

    async def list_actions(self, device_id: str, counterpart_id: str = None, limit: int = 100) -> list[BotActionLog]:
        return await self.store.list_actions(device_id, counterpart_id=counterpart_id, limit=limit)

    async def log_action(self, device_id: str, counterpart_id: str, action_type: BotActionType, **kwargs: Any) -> None:
        await self.store.add_action(BotActionLog(
            device_id=device_id, counterpart_id=counterpart_id, action_type=action_type, **kwargs,
        ))

    # ── Cooldowns ─────────────────────────────────────────

    def on_cooldown(self, device_id: str, counterpart_id: str, rule_id: int, now: datetime = None) -> bool:
        key = (device_id, counterpart_id, rule_id)
        until = self._cooldowns.get(key)
        if until is None:
            return False
        if (now or utcnow()) >= until:
            del self._cooldowns[key]
            return False
        return True

    def _expire_cooldowns(self, now: datetime) -> None:
        for key in [k for k, until in self._cooldowns.items() if until <= now]:
            del self._cooldowns[key]

    # ── Internals ─────────────────────────────────────────

    async def _load(self, device_id: str, counterpart_id: str, now: datetime) -> Conversation:
        conversation = await self.store.get_conversation(device_id, counterpart_id)
        if conversation is None:
            conversation = Conversation(device_id=device_id, counterpart_id=counterpart_id,
                                        created_at=now, updated_at=now)
        return conversation

    async def _log(
        self, conversation: Conversation, action_type: BotActionType, rule_id: int = None,
        incoming: str = None, response: str = None, metadata: dict[str, Any] = None,
    ) -> None:
        await self.store.add_action(BotActionLog(
            device_id=conversation.device_id,
            counterpart_id=conversation.counterpart_id,
            action_type=action_type,
            rule_id=rule_id,
            incoming_message=incoming,
            response_message=response,
            metadata=metadata or {},
        ))

    @staticmethod
    def _state_event(event_type: EventType, conversation: Conversation, **data: Any) -> Event:
        return Event(
            type=event_type,
            device_id=conversation.device_id,
            data={"counterpart_id": conversation.counterpart_id,
                  "state": conversation.state.value, **data},
        )
