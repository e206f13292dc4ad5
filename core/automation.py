"""
Inbound Automation — the path from a received message to a sent auto-reply.

    transport webhook
      → SafetyGuard.check          (own message, broadcasts, groups, bots, dedup, rate limit)
      → ConversationStateManager.on_inbound_message
      → OutboundTransport.send     (inline retry on transient errors)
      → record_auto_reply_sent

Delivery problems are logged and swallowed here: a failed auto-reply must
never surface as an error to the webhook that delivered the message.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import OutboundTransport, ChannelError, TransientDeliveryError
from config.settings import BotConfig
from context.manager import ConversationStateManager
from context.safety import SafetyGuard
from models.schemas import BotActionType, InboundAction, utcnow
from utils.addressing import counterpart_key

logger = structlog.get_logger()


class InboundAutomation:

    def __init__(
        self,
        conversations: ConversationStateManager,
        transport: OutboundTransport,
        safety: SafetyGuard,
        config: BotConfig = None,
    ):
        self.conversations = conversations
        self.transport = transport
        self.safety = safety
        self.config = config or BotConfig()

    async def on_inbound_event(
        self,
        device_id: str,
        sender_id: str,
        text: str,
        timestamp: Optional[datetime] = None,
        message_id: Optional[str] = None,
        from_me: bool = False,
    ) -> InboundAction:
        bot_config = await self.conversations.get_bot_config(device_id)
        counterpart_id = counterpart_key(sender_id)

        verdict = self.safety.check(
            device_id, counterpart_id, message_id=message_id,
            from_me=from_me, ignore_groups=bot_config.ignore_groups,
        )
        if not verdict.allowed:
            logger.debug("inbound_ignored", device_id=device_id, sender_id=sender_id, reason=verdict.reason)
            if verdict.reason == "rate_limited":
                await self.conversations.log_action(
                    device_id, counterpart_id, BotActionType.RATE_LIMITED, incoming_message=text,
                )
            return InboundAction.no_reply(verdict.reason)

        action = await self.conversations.on_inbound_message(
            device_id, counterpart_id, text, now=timestamp or utcnow(),
        )
        if not action.should_reply:
            return action

        try:
            reply_id = await self._send_reply(device_id, counterpart_id, action.response)
        except ChannelError as e:
            logger.error("auto_reply_send_failed", device_id=device_id, counterpart_id=counterpart_id,
                         rule_id=action.rule_id, error=str(e))
            return action
        except Exception as e:
            logger.error("auto_reply_send_error", device_id=device_id, counterpart_id=counterpart_id,
                         error=str(e), exc_info=True)
            return action

        self.safety.record_auto_reply(device_id, counterpart_id)
        await self.conversations.record_auto_reply_sent(
            device_id, counterpart_id,
            rule_id=action.rule_id,
            message_id=reply_id,
            response=action.response,
            incoming=text,
            reason=action.reason,
        )
        return action

    async def _send_reply(self, device_id: str, recipient: str, text: str) -> str:
        message_id = ""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.reply_max_attempts),
            wait=wait_exponential(multiplier=self.config.reply_backoff_seconds, max=30),
            retry=retry_if_exception_type(TransientDeliveryError),
            reraise=True,
        ):
            with attempt:
                message_id = await self.transport.send(device_id, recipient, {"text": text})
        return message_id
