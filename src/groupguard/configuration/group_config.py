"""
Persistent per-group AutoMod configuration (the rule store).

Responsibilities:
- Create a group's configuration lazily on first access
- Persist every mutation immediately under ``groups.<groupId>``
- Rule CRUD, the auto-reject / auto-ban toggles and whitelist management

There is no partial-update API: every mutation reads the whole configuration,
changes it and writes it back. Concurrent writers to the same group are last
write wins.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from groupguard.configuration.config_store import JsonConfigStore
from groupguard.datatypes.automod_datatypes import GroupConfig, Rule
from groupguard.util.logger import get_logger

logger = get_logger("group_config_manager")

WHITELIST_USER = "user"
WHITELIST_GROUP = "group"


class GroupConfigManager:
    """Read-modify-write access to the AutoMod configuration of each group."""

    def __init__(self, store: JsonConfigStore) -> None:
        self._store = store

    @staticmethod
    def _key(group_id: str) -> str:
        return f"groups.{group_id}"

    def get_group_config(self, group_id: str) -> GroupConfig:
        """Return the group's configuration, creating an empty one if missing. Never raises."""
        try:
            raw = self._store.get(self._key(group_id))
        except Exception:
            logger.exception("[GROUP CONFIG] Failed to read configuration for group %s", group_id)
            return GroupConfig()

        if raw is None:
            config = GroupConfig()
            try:
                self.save_group_config(group_id, config)
                logger.debug("[GROUP CONFIG] Created default configuration for group %s", group_id)
            except Exception:
                logger.exception("[GROUP CONFIG] Failed to persist default configuration for group %s", group_id)
            return config

        return GroupConfig.from_dict(raw)

    def save_group_config(self, group_id: str, config: GroupConfig) -> None:
        """Overwrite the group's configuration and persist it synchronously."""
        self._store.set(self._key(group_id), config.to_dict())

    def list_group_ids(self) -> List[str]:
        groups = self._store.get("groups", {})
        return list(groups.keys()) if isinstance(groups, dict) else []

    # -------- Rules --------
    def get_rules(self, group_id: str) -> List[Rule]:
        return self.get_group_config(group_id).rules

    def get_rule(self, group_id: str, rule_id: int) -> Optional[Rule]:
        for rule in self.get_rules(group_id):
            if rule.id == rule_id:
                return rule
        return None

    def save_rule(self, group_id: str, rule: Rule) -> Rule:
        """Insert a new rule (``id == 0``) or replace the rule with the same id.

        New rules get ``max(existing ids) + 1`` and are appended, so stored order
        is creation order.
        """
        config = self.get_group_config(group_id)

        if rule.id:
            for index, existing in enumerate(config.rules):
                if existing.id == rule.id:
                    rule.created_at = existing.created_at
                    config.rules[index] = rule
                    break
            else:
                config.rules.append(rule)
        else:
            rule.id = max((existing.id for existing in config.rules), default=0) + 1
            config.rules.append(rule)

        self.save_group_config(group_id, config)
        logger.info("[GROUP CONFIG] Saved rule %s (%s) for group %s", rule.id, rule.name, group_id)
        return rule

    def delete_rule(self, group_id: str, rule_id: int) -> bool:
        config = self.get_group_config(group_id)
        remaining = [rule for rule in config.rules if rule.id != rule_id]
        if len(remaining) == len(config.rules):
            return False
        config.rules = remaining
        self.save_group_config(group_id, config)
        logger.info("[GROUP CONFIG] Deleted rule %s for group %s", rule_id, group_id)
        return True

    # -------- Toggles --------
    def set_auto_reject(self, group_id: str, enabled: bool) -> GroupConfig:
        config = self.get_group_config(group_id)
        config.enable_auto_reject = bool(enabled)
        self.save_group_config(group_id, config)
        logger.info("[GROUP CONFIG] Auto-reject %s for group %s", "enabled" if enabled else "disabled", group_id)
        return config

    def set_auto_ban(self, group_id: str, enabled: bool) -> GroupConfig:
        config = self.get_group_config(group_id)
        config.enable_auto_ban = bool(enabled)
        self.save_group_config(group_id, config)
        logger.info("[GROUP CONFIG] Auto-ban %s for group %s", "enabled" if enabled else "disabled", group_id)
        return config

    # -------- Whitelists --------
    def add_to_whitelist(self, group_id: str, rule_id: int, entity_id: str, entity_type: str) -> bool:
        """Exempt a user or group from one rule. Returns False if the rule does not exist."""
        config = self.get_group_config(group_id)
        for rule in config.rules:
            if rule.id != rule_id:
                continue
            target = self._whitelist_for(rule, entity_type)
            if entity_id not in target:
                target.append(entity_id)
                self.save_group_config(group_id, config)
            return True
        return False

    def remove_from_whitelist(self, group_id: str, rule_id: int, entity_id: str, entity_type: str) -> bool:
        config = self.get_group_config(group_id)
        for rule in config.rules:
            if rule.id != rule_id:
                continue
            target = self._whitelist_for(rule, entity_type)
            if entity_id not in target:
                return False
            target.remove(entity_id)
            self.save_group_config(group_id, config)
            return True
        return False

    def get_whitelisted_entities(self, group_id: str) -> Dict[str, List[Dict[str, object]]]:
        """Return ``{"users": [...], "groups": [...]}`` with the rules each entity is exempt from."""
        users: Dict[str, List[Dict[str, object]]] = {}
        groups: Dict[str, List[Dict[str, object]]] = {}
        for rule in self.get_rules(group_id):
            for user_id in rule.whitelisted_user_ids:
                users.setdefault(user_id, []).append({"id": rule.id, "name": rule.name})
            for whitelisted_group in rule.whitelisted_group_ids:
                groups.setdefault(whitelisted_group, []).append({"id": rule.id, "name": rule.name})
        return {
            "users": [{"id": entity_id, "rules": rules} for entity_id, rules in users.items()],
            "groups": [{"id": entity_id, "rules": rules} for entity_id, rules in groups.items()],
        }

    @staticmethod
    def _whitelist_for(rule: Rule, entity_type: str) -> List[str]:
        if entity_type == WHITELIST_USER:
            return rule.whitelisted_user_ids
        if entity_type == WHITELIST_GROUP:
            return rule.whitelisted_group_ids
        raise ValueError(f"Unknown whitelist entity type: {entity_type!r}")
