"""
Permission Guard ("instance sniper").

Watches the group audit log for ``group.instance.create`` events and closes
instances opened by members whose roles do not grant an instance-creation
permission. Each audit-log entry is marked processed before any lookup, so
overlapping polls handle it at most once. An auth failure stops the pass and
unmarks the entry it interrupted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from groupguard.automod.dedup import BoundedKeySet, ExpiringKeySet
from groupguard.automod.rule_parser import RuleParser
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.datatypes.audit_datatypes import AuditEntry, AuditModule
from groupguard.datatypes.automod_datatypes import RuleType
from groupguard.datatypes.instance_datatypes import (
    InstanceEventAction,
    InstanceGuardEvent,
    audit_log_key,
    instance_key,
    parse_instance_location,
)
from groupguard.enforcement.instance_guard import InstanceGuardHistory
from groupguard.errors import ActionFailed, AuthError
from groupguard.network.moderation_api import ModerationApi
from groupguard.services.audit_service import AuditService
from groupguard.services.group_authorization import GroupAuthorizationService, roles_grant_any
from groupguard.util.logger import get_logger
from groupguard.util.ttl_cache import TtlCache

logger = get_logger("permission_guard")

INSTANCE_CREATE_EVENT = "group.instance.create"
RULE_NAME = "Instance Permission Guard"

INSTANCE_CREATE_PERMISSIONS = frozenset({
    "group-instance-open",
    "group-instance-public-create",
    "group-instance-plus-create",
    "group-instance-restricted-create",
    "group-instance-age-gated-create",
})


@dataclass(slots=True)
class PermissionGuardSummary:
    groups_checked: int = 0
    events_checked: int = 0
    instances_closed: int = 0


class PermissionGuardService:
    def __init__(
        self,
        api: ModerationApi,
        group_configs: GroupConfigManager,
        rule_parser: RuleParser,
        authorization: GroupAuthorizationService,
        audit: AuditService,
        history: InstanceGuardHistory,
        processed_logs: BoundedKeySet,
        closed_instances: ExpiringKeySet,
        role_cache: TtlCache[str, List[Dict[str, Any]]],
        audit_log_window: int = 10,
    ) -> None:
        self.api = api
        self.group_configs = group_configs
        self.rule_parser = rule_parser
        self.authorization = authorization
        self.audit = audit
        self.history = history
        self.processed_logs = processed_logs
        self.closed_instances = closed_instances
        self.role_cache = role_cache
        self.audit_log_window = audit_log_window

    async def check_permissions(self) -> PermissionGuardSummary:
        """One pass over every authorized group with an enabled INSTANCE_PERMISSION_GUARD rule. Never raises."""
        summary = PermissionGuardSummary()

        for group_id in self.authorization.get_allowed_group_ids():
            try:
                rule = self.group_configs.get_group_config(group_id).find_enabled_rule(RuleType.INSTANCE_PERMISSION_GUARD)
                if rule is None:
                    continue
                summary.groups_checked += 1

                logs = (await self.api.get_group_audit_logs(group_id, self.audit_log_window, 0)).raise_for_auth()
                if not logs.success:
                    logger.warning("[PERMISSION GUARD] Failed to fetch audit logs for %s: %s", group_id, logs.error)
                    continue

                exempt = self.rule_parser.parse(rule).whitelisted_user_ids
                for entry in logs.data or []:
                    if not isinstance(entry, dict) or entry.get("eventType") != INSTANCE_CREATE_EVENT:
                        continue
                    log_id = entry.get("id")
                    if not log_id:
                        continue
                    log_key = audit_log_key(group_id, str(log_id))
                    if not self.processed_logs.mark(log_key):
                        continue
                    summary.events_checked += 1
                    try:
                        closed = await self._handle_create_event(group_id, entry, exempt)
                    except AuthError:
                        self.processed_logs.discard(log_key)
                        raise
                    if closed:
                        summary.instances_closed += 1
            except asyncio.CancelledError:
                raise
            except AuthError:
                logger.error("[PERMISSION GUARD] Not authenticated, stopping pass")
                return summary
            except Exception:
                logger.exception("[PERMISSION GUARD] Error processing group %s", group_id)

        return summary

    async def _group_roles(self, group_id: str) -> Optional[List[Dict[str, Any]]]:
        cached = self.role_cache.get(group_id)
        if cached is not None:
            return cached
        result = (await self.api.get_group_roles(group_id)).raise_for_auth()
        if not result.success:
            logger.warning("[PERMISSION GUARD] Failed to fetch roles for %s: %s", group_id, result.error)
            return None
        roles = [role for role in result.data or [] if isinstance(role, dict)]
        self.role_cache.set(group_id, roles)
        return roles

    async def is_authorized_creator(self, group_id: str, user_id: str) -> Optional[bool]:
        """True/False for a known outcome; None when roles or membership could not be determined."""
        member = (await self.api.get_group_member(group_id, user_id)).raise_for_auth()
        if member.not_found:
            return False
        if not member.success:
            logger.warning("[PERMISSION GUARD] Failed to fetch membership of %s in %s: %s", user_id, group_id, member.error)
            return None
        if not isinstance(member.data, dict):
            return False

        roles = await self._group_roles(group_id)
        if roles is None:
            return None
        return roles_grant_any(member.data.get("roleIds") or [], roles, INSTANCE_CREATE_PERMISSIONS)

    async def _handle_create_event(self, group_id: str, entry: Dict[str, Any], exempt: frozenset[str]) -> bool:
        location = parse_instance_location(entry.get("targetId"))
        actor_id = entry.get("actorId")
        actor_name = entry.get("actorDisplayName") or actor_id or "Unknown"
        if location is None or not actor_id:
            logger.debug("[PERMISSION GUARD] Ignoring audit entry %s without a usable target or actor", entry.get("id"))
            return False
        if actor_id in exempt:
            return False

        authorized = await self.is_authorized_creator(group_id, actor_id)
        if authorized is not False:
            return False

        world_id, instance_id = location
        key = instance_key(group_id, world_id, instance_id)
        if key in self.closed_instances:
            logger.debug("[PERMISSION GUARD] Instance %s already closed", key)
            return False

        # Re-read at action time; the rule may have been disabled during the lookups.
        if self.group_configs.get_group_config(group_id).find_enabled_rule(RuleType.INSTANCE_PERMISSION_GUARD) is None:
            return False

        reason = f"{actor_name} created an instance without permission"
        logger.warning("[PERMISSION GUARD] Closing %s:%s: %s", world_id, instance_id, reason)
        self.closed_instances.add(key)
        try:
            (await self.api.close_instance(world_id, instance_id)).raise_for_action("close")
        except AuthError:
            self.closed_instances.discard(key)
            raise
        except ActionFailed as e:
            logger.error("[PERMISSION GUARD] Failed to close %s:%s: %s", world_id, instance_id, e)
            return False

        data = entry.get("data") if isinstance(entry.get("data"), dict) else {}
        world_name = data.get("worldName") or world_id
        self.audit.record(AuditEntry(
            user=actor_name,
            user_id=actor_id,
            group_id=group_id,
            action="INSTANCE_CLOSED",
            reason=reason,
            module=AuditModule.PERMISSION_GUARD,
            details={"worldId": world_id, "instanceId": instance_id, "auditLogId": entry.get("id"), "ruleName": RULE_NAME},
        ))
        self.history.add_event(InstanceGuardEvent(
            action=InstanceEventAction.AUTO_CLOSED,
            world_id=world_id,
            world_name=world_name,
            instance_id=instance_id,
            group_id=group_id,
            reason=reason,
            closed_by="Permission Guard",
            owner_id=actor_id,
            owner_name=actor_name,
        ))
        return True
