"""
AutoMod public surface.

The console and any other caller use this facade for rule CRUD, the
auto-reject / auto-ban toggles, ad-hoc checks, bulk member scans, whitelist
management and history. Every method that evaluates users is fail-open.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from groupguard.automod.evaluator import AutoModEvaluator
from groupguard.automod.rule_parser import RuleParser
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.datatypes.audit_datatypes import AuditEntry
from groupguard.datatypes.automod_datatypes import GroupConfig, Rule, UserSnapshot, Verdict
from groupguard.datatypes.instance_datatypes import InstanceGuardEvent
from groupguard.enforcement.gatekeeper import Gatekeeper, PendingScanSummary
from groupguard.enforcement.instance_guard import InstanceGuardHistory
from groupguard.enforcement.member_scanner import MemberScanner, MemberScanResult
from groupguard.services.audit_service import AuditService
from groupguard.util.logger import get_logger

logger = get_logger("automod_service")


class AutoModService:
    def __init__(
        self,
        group_configs: GroupConfigManager,
        rule_parser: RuleParser,
        evaluator: AutoModEvaluator,
        gatekeeper: Gatekeeper,
        member_scanner: MemberScanner,
        audit: AuditService,
        instance_history: InstanceGuardHistory,
    ) -> None:
        self.group_configs = group_configs
        self.rule_parser = rule_parser
        self.evaluator = evaluator
        self.gatekeeper = gatekeeper
        self.member_scanner = member_scanner
        self.audit = audit
        self.instance_history = instance_history

    # -------- Rules & toggles --------
    def get_group_config(self, group_id: str) -> GroupConfig:
        return self.group_configs.get_group_config(group_id)

    def get_rules(self, group_id: str) -> List[Rule]:
        return self.group_configs.get_rules(group_id)

    def save_rule(self, group_id: str, rule: Union[Rule, Mapping[str, Any]]) -> Rule:
        if not isinstance(rule, Rule):
            rule = Rule.from_dict(dict(rule))
        return self.group_configs.save_rule(group_id, rule)

    def delete_rule(self, group_id: str, rule_id: int) -> bool:
        return self.group_configs.delete_rule(group_id, rule_id)

    def set_auto_reject(self, group_id: str, enabled: bool) -> bool:
        return self.group_configs.set_auto_reject(group_id, enabled).enable_auto_reject

    def set_auto_ban(self, group_id: str, enabled: bool) -> bool:
        return self.group_configs.set_auto_ban(group_id, enabled).enable_auto_ban

    # -------- Evaluation --------
    async def check_user(self, user: Union[UserSnapshot, Mapping[str, Any]], group_id: str) -> Verdict:
        """Ad-hoc evaluation of one user. Returns ALLOW on any failure."""
        try:
            snapshot = user if isinstance(user, UserSnapshot) else UserSnapshot.from_api(dict(user))
            return await self.evaluator.evaluate(snapshot, group_id)
        except Exception:
            logger.exception("[AUTOMOD] check_user failed for group %s", group_id)
            return Verdict.allow()

    async def scan_group_members(self, group_id: str) -> List[MemberScanResult]:
        return await self.member_scanner.scan_group_members(group_id)

    # -------- Whitelists --------
    def add_to_whitelist(self, group_id: str, rule_id: int, entity_id: str, entity_type: str) -> bool:
        return self.group_configs.add_to_whitelist(group_id, rule_id, entity_id, entity_type)

    def remove_from_whitelist(self, group_id: str, rule_id: int, entity_id: str, entity_type: str) -> bool:
        return self.group_configs.remove_from_whitelist(group_id, rule_id, entity_id, entity_type)

    def get_whitelisted_entities(self, group_id: str) -> Dict[str, List[Dict[str, object]]]:
        return self.group_configs.get_whitelisted_entities(group_id)

    # -------- History --------
    async def get_history(self, group_id: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        return await self.audit.get_history(group_id, limit)

    async def clear_history(self) -> int:
        return await self.audit.clear_history()

    def get_instance_guard_history(self, group_id: Optional[str] = None) -> List[InstanceGuardEvent]:
        return self.instance_history.get_history(group_id)

    def clear_instance_guard_history(self) -> bool:
        return self.instance_history.clear_history()

    # -------- Maintenance --------
    def reset_cache(self) -> None:
        """Forget which join requests were processed and drop parsed rules."""
        self.gatekeeper.reset_cache()
        self.rule_parser.clear()

    async def trigger_pending_request_scan(self) -> PendingScanSummary:
        return await self.gatekeeper.process_all_pending_requests()
