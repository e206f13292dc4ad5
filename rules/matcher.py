"""
Rule Matcher — picks the auto-reply rule for an inbound text.

Pure and deterministic: the same rules and text always give the same
answer. Active rules are checked in (priority, id) order, lower priority
value first; the first hit wins.

  exact        trigger == text.strip()             (case-sensitive)
  contains     trigger in text                     (case-insensitive)
  starts_with  text.strip() starts with trigger    (case-insensitive)
  regex        re.search(trigger, text, IGNORECASE)

A regex that does not compile never matches; it is logged once and skipped.
"""
from __future__ import annotations

import re
import structlog
from functools import lru_cache
from typing import Iterable, Optional

from core.errors import ValidationError
from models.schemas import AutoReplyRule, MatchType

logger = structlog.get_logger()

MAX_TRIGGER_LENGTH = 500

# A group holding a quantifier that is itself quantified: (a+)+  (.*)*  (\d{2,})+
_NESTED_QUANTIFIER = re.compile(r"\([^()]*(?:[+*]|\{\d+,?\d*\})[^()]*\)(?:[+*]|\{\d+,?\d*\})")
# Alternation inside a quantified group where branches overlap, e.g. (a|a)+ or (.|\s)*
_QUANTIFIED_ALTERNATION = re.compile(r"\((?:\.|\\[sSwWdD])\|[^()]*\)[+*]")


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("invalid_rule_regex", pattern=pattern, error=str(e))
        return None


def rule_matches(rule: AutoReplyRule, text: str) -> bool:
    if not text:
        return False
    trigger = rule.trigger

    if rule.match_type == MatchType.EXACT:
        return text.strip() == trigger
    if rule.match_type == MatchType.CONTAINS:
        return trigger.lower() in text.lower()
    if rule.match_type == MatchType.STARTS_WITH:
        return text.strip().lower().startswith(trigger.lower())
    if rule.match_type == MatchType.REGEX:
        compiled = _compile(trigger)
        return compiled is not None and compiled.search(text) is not None
    return False


def order_rules(rules: Iterable[AutoReplyRule]) -> list[AutoReplyRule]:
    return sorted((r for r in rules if r.is_active), key=lambda r: r.sort_key)


def match(rules: Iterable[AutoReplyRule], text: str) -> Optional[AutoReplyRule]:
    """Return the first active rule (by priority, then id) that matches `text`."""
    for rule in order_rules(rules):
        if rule_matches(rule, text):
            return rule
    return None


def validate_regex(pattern: str) -> None:
    if _NESTED_QUANTIFIER.search(pattern) or _QUANTIFIED_ALTERNATION.search(pattern):
        raise ValidationError("Pattern may cause performance issues (nested quantifier)")
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValidationError(f"Invalid regex: {e}")


def validate_rule(rule: AutoReplyRule) -> None:
    """Reject a rule that could never match or that could stall the matcher."""
    errors = []
    if not rule.trigger or not rule.trigger.strip():
        errors.append("trigger must not be empty")
    elif len(rule.trigger) > MAX_TRIGGER_LENGTH:
        errors.append(f"trigger longer than {MAX_TRIGGER_LENGTH} characters")
    if not rule.response or not rule.response.strip():
        errors.append("response must not be empty")
    if rule.cooldown_seconds < 0:
        errors.append("cooldown_seconds must be >= 0")

    if not errors and rule.match_type == MatchType.REGEX:
        try:
            validate_regex(rule.trigger)
        except ValidationError as e:
            errors.extend(e.errors)

    if errors:
        raise ValidationError(f"Invalid rule {rule.name!r}: {'; '.join(errors)}", errors)
