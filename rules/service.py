"""
Rule Service — CRUD for auto-reply rules, validated on every save.

Rules can also be seeded from settings.yaml (`rules:` keyed by device id);
load_rules() upserts by rule name so restarting does not duplicate them.
"""
from __future__ import annotations

import pydantic
import structlog
from typing import Any

from core.errors import ValidationError, RuleNotFoundError
from database.store_base import BaseStore
from models.schemas import AutoReplyRule
from rules.matcher import validate_rule

logger = structlog.get_logger()

_EDITABLE = {"name", "match_type", "trigger", "response", "priority",
             "is_active", "cooldown_seconds", "metadata"}


def _build(data: dict[str, Any]) -> AutoReplyRule:
    try:
        return AutoReplyRule(**data)
    except pydantic.ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError("Invalid rule", errors)


class RuleService:

    def __init__(self, store: BaseStore):
        self.store = store

    async def create_rule(self, device_id: str, **fields: Any) -> AutoReplyRule:
        unknown = set(fields) - _EDITABLE
        if unknown:
            raise ValidationError(f"Unknown rule fields: {sorted(unknown)}")
        rule = _build({**fields, "device_id": device_id})
        validate_rule(rule)
        rule = await self.store.create_rule(rule)
        logger.info("rule_created", rule_id=rule.id, device_id=device_id,
                    match_type=rule.match_type.value, priority=rule.priority)
        return rule

    async def update_rule(self, rule_id: int, **changes: Any) -> AutoReplyRule:
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValidationError(f"Unknown rule fields: {sorted(unknown)}")
        current = await self.get_rule(rule_id)
        rule = _build({**current.model_dump(), **changes})
        validate_rule(rule)
        rule = await self.store.save_rule(rule)
        logger.info("rule_updated", rule_id=rule_id, fields=sorted(changes))
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        if not await self.store.delete_rule(rule_id):
            raise RuleNotFoundError(rule_id)
        logger.info("rule_deleted", rule_id=rule_id)

    async def get_rule(self, rule_id: int) -> AutoReplyRule:
        rule = await self.store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def list_rules(self, device_id: str, active_only: bool = False) -> list[AutoReplyRule]:
        return await self.store.list_rules(device_id, active_only=active_only)

    async def load_rules(self, device_id: str, rules_config: list[dict[str, Any]]) -> list[AutoReplyRule]:
        """Upsert rules from config by name; invalid entries are logged and skipped."""
        existing = {r.name: r for r in await self.store.list_rules(device_id)}
        loaded = []
        for raw in rules_config or []:
            fields = {k: v for k, v in raw.items() if k in _EDITABLE}
            try:
                current = existing.get(fields.get("name", ""))
                if current is not None:
                    rule = await self.update_rule(current.id, **fields)
                else:
                    rule = await self.create_rule(device_id, **fields)
            except ValidationError as e:
                logger.warning("rule_config_rejected", device_id=device_id,
                               name=raw.get("name"), errors=e.errors)
                continue
            loaded.append(rule)
        logger.info("rules_loaded", device_id=device_id, count=len(loaded))
        return loaded
