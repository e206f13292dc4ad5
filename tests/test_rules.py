"""
Tests for the auto-reply rule matcher and RuleService.
"""
import pytest

from core.errors import RuleNotFoundError, ValidationError
from models.schemas import AutoReplyRule, MatchType
from rules.matcher import match, rule_matches, validate_regex, validate_rule
from rules.service import RuleService


def _rule(id, trigger, match_type=MatchType.CONTAINS, priority=0, **kwargs) -> AutoReplyRule:
    return AutoReplyRule(
        id=id, device_id="device-1", name=f"rule-{id}", trigger=trigger,
        response=f"reply-{id}", match_type=match_type, priority=priority, **kwargs,
    )


@pytest.fixture
def greeting_rules():
    return [
        _rule(1, "hi", MatchType.EXACT, priority=1),
        _rule(2, "help", MatchType.CONTAINS, priority=2),
    ]


# ──────────────────────────────────────────────────────────────
#  Matcher
# ──────────────────────────────────────────────────────────────

class TestMatcher:

    def test_exact_greeting_wins(self, greeting_rules):
        assert match(greeting_rules, "hi").id == 1

    def test_contains_rule_for_longer_text(self, greeting_rules):
        assert match(greeting_rules, "i need help").id == 2

    def test_no_match(self, greeting_rules):
        assert match(greeting_rules, "what are your prices?") is None
        assert match(greeting_rules, "") is None

    def test_exact_is_case_sensitive_but_trimmed(self):
        rule = _rule(1, "hi", MatchType.EXACT)
        assert rule_matches(rule, "  hi ")
        assert not rule_matches(rule, "Hi")
        assert not rule_matches(rule, "hi there")

    def test_contains_and_starts_with_ignore_case(self):
        assert rule_matches(_rule(1, "ORDER"), "where is my order?")
        starts = _rule(2, "track", MatchType.STARTS_WITH)
        assert rule_matches(starts, "  Track #123")
        assert not rule_matches(starts, "please track #123")

    def test_regex_search_ignores_case(self):
        rule = _rule(1, r"order\s*#?\d+", MatchType.REGEX)
        assert rule_matches(rule, "Status of ORDER #4411?")
        assert not rule_matches(rule, "order status")

    def test_invalid_regex_never_matches(self):
        broken = _rule(1, "([unclosed", MatchType.REGEX, priority=1)
        fallback = _rule(2, "unclosed", priority=2)
        assert match([broken, fallback], "([unclosed").id == 2

    def test_priority_then_id_ordering(self):
        rules = [
            _rule(3, "price", priority=5),
            _rule(2, "price", priority=1),
            _rule(1, "price", priority=1),
        ]
        assert match(rules, "price list").id == 1

    def test_inactive_rules_are_skipped(self):
        rules = [_rule(1, "price", priority=1, is_active=False), _rule(2, "price", priority=2)]
        assert match(rules, "price").id == 2

    def test_match_is_deterministic(self, greeting_rules):
        results = {match(greeting_rules, "can you help").id for _ in range(20)}
        results |= {match(list(reversed(greeting_rules)), "can you help").id for _ in range(20)}
        assert results == {2}


class TestRuleValidation:

    @pytest.mark.parametrize("pattern", [r"(a+)+$", r"(.*)*", r"(\d{2,})+", r"(.|\s)*"])
    def test_catastrophic_patterns_rejected(self, pattern):
        with pytest.raises(ValidationError):
            validate_regex(pattern)

    def test_safe_pattern_accepted(self):
        validate_regex(r"^(hi|hello)\b")

    def test_uncompilable_pattern_rejected(self):
        with pytest.raises(ValidationError):
            validate_regex("([a-")

    def test_rule_errors_are_collected(self):
        rule = _rule(1, "  ", cooldown_seconds=-1)
        rule.response = ""
        with pytest.raises(ValidationError) as exc:
            validate_rule(rule)
        assert len(exc.value.errors) == 3

    def test_overlong_trigger_rejected(self):
        with pytest.raises(ValidationError):
            validate_rule(_rule(1, "x" * 501))


# ──────────────────────────────────────────────────────────────
#  RuleService
# ──────────────────────────────────────────────────────────────

class TestRuleService:

    @pytest.fixture
    def service(self, store):
        return RuleService(store)

    @pytest.mark.asyncio
    async def test_create_and_list(self, service):
        await service.create_rule("device-1", name="help", trigger="help", response="How can I help?", priority=2)
        await service.create_rule("device-1", name="hi", match_type="exact", trigger="hi", response="Hello!", priority=1)

        rules = await service.list_rules("device-1")
        assert [r.name for r in rules] == ["hi", "help"]
        assert rules[0].match_type == MatchType.EXACT

    @pytest.mark.asyncio
    async def test_create_rejects_bad_input(self, service):
        with pytest.raises(ValidationError):
            await service.create_rule("device-1", name="bad", match_type="regex", trigger="(a+)+", response="x")
        with pytest.raises(ValidationError):
            await service.create_rule("device-1", name="bad", match_type="fuzzy", trigger="x", response="x")
        with pytest.raises(ValidationError):
            await service.create_rule("device-1", name="bad", trigger="x", response="x", colour="red")
        assert await service.list_rules("device-1") == []

    @pytest.mark.asyncio
    async def test_update_validates_merged_rule(self, service):
        rule = await service.create_rule("device-1", name="hi", trigger="hi", response="Hello!")

        updated = await service.update_rule(rule.id, response="Hey there!", priority=3)
        assert updated.response == "Hey there!"
        assert updated.priority == 3
        assert (await service.get_rule(rule.id)).response == "Hey there!"

        with pytest.raises(ValidationError):
            await service.update_rule(rule.id, match_type="regex", trigger="(.*)*")
        assert (await service.get_rule(rule.id)).match_type == MatchType.CONTAINS

    @pytest.mark.asyncio
    async def test_missing_rule(self, service):
        with pytest.raises(RuleNotFoundError):
            await service.get_rule(99)
        with pytest.raises(RuleNotFoundError):
            await service.update_rule(99, response="x")
        with pytest.raises(RuleNotFoundError):
            await service.delete_rule(99)

    @pytest.mark.asyncio
    async def test_load_rules_upserts_by_name_and_skips_invalid(self, service):
        config = [
            {"name": "hi", "match_type": "exact", "trigger": "hi", "response": "Hello!", "priority": 1},
            {"name": "broken", "match_type": "regex", "trigger": "(a+)+", "response": "x"},
        ]
        loaded = await service.load_rules("device-1", config)
        assert [r.name for r in loaded] == ["hi"]

        config[0]["response"] = "Hello again!"
        await service.load_rules("device-1", config)
        rules = await service.list_rules("device-1")
        assert len(rules) == 1
        assert rules[0].response == "Hello again!"
