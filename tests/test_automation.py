"""
End-to-end inbound flow: safety checks, conversation state, auto-reply
delivery with retries, and webhook handling through the orchestrator.
"""
import pytest
import pytest_asyncio

from channels.base import PermanentDeliveryError, TransientDeliveryError
from config.settings import BotConfig, Settings
from context.safety import SafetyGuard
from core.automation import InboundAutomation
from core.errors import ConfigurationError
from core.orchestrator import Orchestrator
from database.store_memory import InMemoryStore
from models.schemas import (
    ActionType, AutoReplyRule, BotActionType, ControlState, DeviceBotConfig, EventType, InboundMessage,
    MatchType,
)

DEVICE = "device-1"
ALICE = "15551230001"


@pytest.fixture
def safety():
    return SafetyGuard(rate_limit=2, window_seconds=60)


@pytest.fixture
def automation(manager, transport, safety, bot_config):
    return InboundAutomation(manager, transport, safety, bot_config)


@pytest_asyncio.fixture
async def hi_rule(store):
    return await store.create_rule(AutoReplyRule(
        device_id=DEVICE, name="hi", match_type=MatchType.EXACT, trigger="hi", response="Hello!",
    ))


class TestInboundAutomation:

    @pytest.mark.asyncio
    async def test_matched_rule_is_sent_and_recorded(self, automation, transport, manager, hi_rule, bus, drain_events):
        sub = bus.subscribe(types=[EventType.AUTO_REPLY_SENT])

        action = await automation.on_inbound_event(DEVICE, f"{ALICE}@s.whatsapp.net", "hi", message_id="wamid.in1")

        assert action.type == ActionType.AUTO_REPLY
        assert transport.sent == [(DEVICE, ALICE, {"text": "Hello!"})]
        conv = await manager.get_conversation(DEVICE, ALICE)
        assert conv.last_rule_id == hi_rule.id
        [event] = drain_events(sub)
        assert event.data["message_id"] == f"wamid.{ALICE}.1"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, automation, transport, manager, hi_rule):
        transport.script[ALICE] = [TransientDeliveryError("timeout"), "wamid.ok"]

        await automation.on_inbound_event(DEVICE, ALICE, "hi")

        assert transport.calls[ALICE] == 2
        [entry] = await manager.list_actions(DEVICE)
        assert entry.action_type == BotActionType.AUTO_REPLY
        assert entry.metadata["message_id"] == "wamid.ok"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_swallowed(self, automation, transport, manager, safety, hi_rule):
        transport.script[ALICE] = [PermanentDeliveryError("blocked")]

        action = await automation.on_inbound_event(DEVICE, ALICE, "hi")

        assert action.should_reply
        assert transport.calls[ALICE] == 1
        assert await manager.list_actions(DEVICE) == []
        assert safety.rate_limit_status(DEVICE, ALICE)["count"] == 0

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, automation, transport, hi_rule):
        transport.script[ALICE] = [TransientDeliveryError("down")] * 5
        await automation.on_inbound_event(DEVICE, ALICE, "hi")
        assert transport.calls[ALICE] == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self, automation, transport, hi_rule):
        transport.script[ALICE] = [RuntimeError("bug")]
        action = await automation.on_inbound_event(DEVICE, ALICE, "hi")
        assert action.type == ActionType.AUTO_REPLY

    @pytest.mark.asyncio
    async def test_own_and_group_messages_never_reach_the_bot(self, automation, transport, manager, hi_rule):
        own = await automation.on_inbound_event(DEVICE, ALICE, "hi", from_me=True)
        group = await automation.on_inbound_event(DEVICE, "120363041234567890@g.us", "hi")

        assert own.reason == "own_message"
        assert group.reason == "ignore_pattern"
        assert transport.sent == []
        assert await manager.get_conversation(DEVICE, ALICE) is None

    @pytest.mark.asyncio
    async def test_groups_allowed_when_configured(self, automation, transport, manager, hi_rule):
        await manager.save_bot_config(DeviceBotConfig(device_id=DEVICE, ignore_groups=False))
        group = "120363041234567890@g.us"
        action = await automation.on_inbound_event(DEVICE, group, "hi")
        assert action.should_reply
        assert transport.sent[0][1] == group

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(self, automation, transport, hi_rule):
        await automation.on_inbound_event(DEVICE, ALICE, "hi", message_id="wamid.in1")
        again = await automation.on_inbound_event(DEVICE, ALICE, "hi", message_id="wamid.in1")
        assert again.reason == "duplicate"
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_logged(self, automation, transport, manager, hi_rule):
        for _ in range(3):
            action = await automation.on_inbound_event(DEVICE, ALICE, "hi")

        assert action.reason == "rate_limited"
        assert len(transport.sent) == 2
        logged = [a.action_type for a in await manager.list_actions(DEVICE)]
        assert BotActionType.RATE_LIMITED in logged

    @pytest.mark.asyncio
    async def test_handoff_keyword_sends_handoff_message(self, automation, transport, manager):
        await manager.save_bot_config(DeviceBotConfig(
            device_id=DEVICE, handoff_keywords=["agent"], handoff_message="One moment please.",
        ))

        await automation.on_inbound_event(DEVICE, ALICE, "agent")
        await automation.on_inbound_event(DEVICE, ALICE, "hello?")

        assert [p["text"] for _, _, p in transport.sent] == ["One moment please."]
        assert (await manager.get_conversation(DEVICE, ALICE)).state == ControlState.HANDOFF


# ──────────────────────────────────────────────────────────────
#  Orchestrator webhook path
# ──────────────────────────────────────────────────────────────

def parse_test_webhook(device_id, raw_payload):
    return [InboundMessage(device_id=device_id, sender_id=m["from"], text=m["text"], message_id=m["id"])
            for m in raw_payload["messages"]]


class TestOrchestratorInbound:

    @pytest.fixture
    def settings(self):
        return Settings(bot=BotConfig(reply_backoff_seconds=0.001))

    @pytest.mark.asyncio
    async def test_handle_webhook(self, settings, transport):
        transport.parse_inbound = parse_test_webhook
        orchestrator = Orchestrator(InMemoryStore(), transport, settings)
        await orchestrator.create_rule(DEVICE, name="hi", match_type="exact", trigger="hi", response="Hello!")

        actions = await orchestrator.handle_webhook(DEVICE, {"messages": [
            {"from": ALICE, "text": "hi", "id": "wamid.1"},
            {"from": "15551230002", "text": "bye", "id": "wamid.2"},
        ]})

        assert [a.reason for a in actions] == ["rule_matched", "no_match"]
        assert transport.sent == [(DEVICE, ALICE, {"text": "Hello!"})]
        assert await orchestrator.conversation_stats(DEVICE) == {"total": 2, "bot": 2, "handoff": 0}

    @pytest.mark.asyncio
    async def test_webhook_without_parser(self, settings, transport):
        orchestrator = Orchestrator(InMemoryStore(), transport, settings)
        with pytest.raises(ConfigurationError):
            await orchestrator.handle_webhook(DEVICE, {})

    @pytest.mark.asyncio
    async def test_start_loads_configured_rules(self, settings, transport):
        settings.rules = {DEVICE: [{"name": "hi", "match_type": "exact", "trigger": "hi", "response": "Hello!"}]}
        orchestrator = Orchestrator(InMemoryStore(), transport, settings)

        await orchestrator.start()
        try:
            assert [r.name for r in await orchestrator.list_rules(DEVICE)] == ["hi"]
            assert orchestrator.workers.running
        finally:
            await orchestrator.stop(timeout=1)
        assert transport.closed
