"""
Instance Guard: closes group instances that break the group's instance rules.

For each authorized group with an enabled INSTANCE_18_GUARD or
CLOSE_ALL_INSTANCES rule, every open instance is checked once per pass:

- unseen instances produce an OPENED event first
- whitelisted worlds are never closed
- blacklisted worlds are always closed
- with the 18+ guard, instances without an age gate are closed
- with close-all, every other instance is closed

Closed instances (including failed closes) are remembered for a TTL so a
later pass never submits them again. An auth failure stops the pass and
forgets the mark of the instance it hit.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from groupguard.automod.dedup import BoundedKeySet, ExpiringKeySet
from groupguard.automod.rule_parser import RuleParser
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.datatypes.audit_datatypes import AuditEntry, AuditModule
from groupguard.datatypes.automod_datatypes import RuleType
from groupguard.datatypes.instance_datatypes import InstanceEventAction, InstanceGuardEvent, instance_key
from groupguard.datatypes.rule_config_datatypes import InstanceRuleConfig
from groupguard.errors import ActionFailed, AuthError
from groupguard.network.moderation_api import ModerationApi
from groupguard.network.user_resolver import UserResolver
from groupguard.services.audit_service import AuditService
from groupguard.services.event_bus import CHANNEL_INSTANCE_EVENT, EventBus
from groupguard.services.group_authorization import GroupAuthorizationService
from groupguard.util.logger import get_logger

logger = get_logger("instance_guard")

DEFAULT_HISTORY_SIZE = 200
AGE_GATE_RULE_NAME = "18+ Instance Guard"
CLOSE_ALL_RULE_NAME = "Close All Instances"


class InstanceGuardHistory:
    """Newest-first ring buffer of instance events, shared with the Permission Guard."""

    def __init__(self, event_bus: EventBus, max_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self.event_bus = event_bus
        self._events: Deque[InstanceGuardEvent] = deque(maxlen=max_size)

    def add_event(self, event: InstanceGuardEvent) -> None:
        self._events.appendleft(event)
        self.event_bus.broadcast(CHANNEL_INSTANCE_EVENT, event.to_dict())

    def get_history(self, group_id: Optional[str] = None) -> List[InstanceGuardEvent]:
        if not group_id:
            return list(self._events)
        return [event for event in self._events if event.group_id == group_id]

    def clear_history(self) -> bool:
        self._events.clear()
        return True

    def __len__(self) -> int:
        return len(self._events)


@dataclass(slots=True)
class InstanceGuardSummary:
    total_closed: int = 0
    groups_checked: int = 0


@dataclass(slots=True)
class _InstanceInfo:
    world_id: str
    instance_id: str
    world_name: str
    owner_id: Optional[str]
    user_count: Optional[int]
    world_thumbnail_url: Optional[str]
    world_author_name: Optional[str]
    world_capacity: Optional[int]
    location: str
    age_gated: bool

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> Optional["_InstanceInfo"]:
        world = data.get("world") if isinstance(data.get("world"), dict) else {}
        world_id = data.get("worldId") or world.get("id")
        instance_id = data.get("instanceId") or data.get("name")
        if not world_id or not instance_id:
            return None
        return cls(
            world_id=str(world_id),
            instance_id=str(instance_id),
            world_name=world.get("name") or "Unknown World",
            owner_id=data.get("ownerId"),
            user_count=data.get("n_users") or data.get("userCount"),
            world_thumbnail_url=world.get("thumbnailImageUrl"),
            world_author_name=world.get("authorName"),
            world_capacity=data.get("capacity") or world.get("capacity"),
            location=str(data.get("location") or ""),
            age_gated=data.get("ageGate") is True or world.get("ageGate") is True,
        )

    def event(self, action: InstanceEventAction, group_id: str, **extra: Any) -> InstanceGuardEvent:
        return InstanceGuardEvent(
            action=action,
            world_id=self.world_id,
            world_name=self.world_name,
            instance_id=self.instance_id,
            group_id=group_id,
            was_age_gated=self.age_gated,
            user_count=self.user_count,
            owner_id=self.owner_id,
            world_thumbnail_url=self.world_thumbnail_url,
            world_author_name=self.world_author_name,
            world_capacity=self.world_capacity,
            **extra,
        )


class InstanceGuardService:
    def __init__(
        self,
        api: ModerationApi,
        resolver: UserResolver,
        group_configs: GroupConfigManager,
        rule_parser: RuleParser,
        authorization: GroupAuthorizationService,
        audit: AuditService,
        history: InstanceGuardHistory,
        closed_instances: ExpiringKeySet,
        known_instances: BoundedKeySet,
        action_delay: float = 1.0,
    ) -> None:
        self.api = api
        self.resolver = resolver
        self.group_configs = group_configs
        self.rule_parser = rule_parser
        self.authorization = authorization
        self.audit = audit
        self.history = history
        self.closed_instances = closed_instances
        self.known_instances = known_instances
        self.action_delay = action_delay

    def is_closed(self, key: str) -> bool:
        return key in self.closed_instances

    def mark_closed(self, key: str) -> None:
        self.closed_instances.add(key)

    async def _owner_name(self, owner_id: Optional[str]) -> Optional[str]:
        if not owner_id or not owner_id.startswith("usr_"):
            return None
        try:
            owner = await self.resolver.fetch_user(owner_id)
        except AuthError:
            raise
        except Exception as e:
            logger.warning("[INSTANCE GUARD] Failed to fetch owner name for %s: %s", owner_id, e)
            return None
        return owner.display_name if owner else None

    async def process_instance_guard(self) -> InstanceGuardSummary:
        """One pass over every authorized group. Never raises."""
        summary = InstanceGuardSummary()
        group_ids = self.authorization.get_allowed_group_ids()
        if not group_ids:
            return summary

        pruned = self.closed_instances.prune()
        if pruned:
            logger.debug("[INSTANCE GUARD] Expired %d closed-instance entries", pruned)

        for group_id in group_ids:
            try:
                config = self.group_configs.get_group_config(group_id)
                age_gate_rule = config.find_enabled_rule(RuleType.INSTANCE_18_GUARD)
                close_all_rule = config.find_enabled_rule(RuleType.CLOSE_ALL_INSTANCES)
                rule = age_gate_rule or close_all_rule
                if rule is None:
                    continue

                summary.groups_checked += 1
                settings = self.rule_parser.parse(rule).settings
                if not isinstance(settings, InstanceRuleConfig):
                    settings = InstanceRuleConfig()

                result = (await self.api.get_group_instances(group_id)).raise_for_auth()
                if not result.success:
                    logger.warning("[INSTANCE GUARD] Failed to fetch instances for group %s: %s", group_id, result.error)
                    continue

                instances = result.data or []
                logger.debug("[INSTANCE GUARD] Checking %d instances for group %s", len(instances), group_id)
                for raw in instances:
                    if await self._process_instance(group_id, raw, settings, age_gate_rule is not None):
                        summary.total_closed += 1
            except asyncio.CancelledError:
                raise
            except AuthError:
                logger.error("[INSTANCE GUARD] Not authenticated, stopping pass")
                return summary
            except Exception:
                logger.exception("[INSTANCE GUARD] Error processing group %s", group_id)

        return summary

    async def _process_instance(
        self, group_id: str, raw: Dict[str, Any], settings: InstanceRuleConfig, use_age_gate: bool
    ) -> bool:
        info = _InstanceInfo.from_api(raw) if isinstance(raw, dict) else None
        if info is None:
            logger.warning("[INSTANCE GUARD] Skipping instance with missing worldId or instanceId")
            return False

        key = instance_key(group_id, info.world_id, info.instance_id)
        if key not in self.known_instances and key not in self.closed_instances:
            owner_name = await self._owner_name(info.owner_id)
            self.known_instances.add(key)
            self.history.add_event(info.event(InstanceEventAction.OPENED, group_id, owner_name=owner_name))
            logger.info(
                "[INSTANCE GUARD] New instance opened: %s by %s (18+: %s)",
                info.world_name, owner_name or info.owner_id or "Unknown", info.age_gated,
            )

        if key in self.closed_instances:
            logger.debug("[INSTANCE GUARD] Skipping already-closed instance %s", key)
            return False

        if info.world_id in settings.whitelisted_worlds:
            logger.debug("[INSTANCE GUARD] Skipping whitelisted world %s (%s)", info.world_name, info.world_id)
            return False

        blacklisted = info.world_id in settings.blacklisted_worlds
        if blacklisted:
            reason = f'World "{info.world_name}" is blacklisted'
        elif use_age_gate:
            await self._refresh_age_gate(info)
            if info.age_gated:
                logger.debug("[INSTANCE GUARD] %s is 18+ age-gated, leaving open", info.world_name)
                return False
            reason = "Instance is not 18+ age-gated"
        else:
            reason = "Close all instances rule enabled"

        return await self._close(group_id, key, info, reason, blacklisted, use_age_gate)

    async def _refresh_age_gate(self, info: _InstanceInfo) -> None:
        """Fetch the full instance for an authoritative age-gate flag; the location tag is a secondary signal."""
        result = (await self.api.get_instance(info.world_id, info.instance_id)).raise_for_auth()
        if result.success and isinstance(result.data, dict):
            data = result.data
            world = data.get("world") if isinstance(data.get("world"), dict) else {}
            info.age_gated = data.get("ageGate") is True or world.get("ageGate") is True
            info.location = str(data.get("location") or info.location)
        else:
            logger.warning("[INSTANCE GUARD] Failed to fetch instance data for %s: %s", info.world_name, result.error)
        if "ageGate" in info.location:
            info.age_gated = True

    async def _close(
        self, group_id: str, key: str, info: _InstanceInfo, reason: str, blacklisted: bool, use_age_gate: bool
    ) -> bool:
        logger.warning(
            "[INSTANCE GUARD] Closing instance %s (%s:%s): %s", info.world_name, info.world_id, info.instance_id, reason
        )
        self.mark_closed(key)
        try:
            (await self.api.close_instance(info.world_id, info.instance_id)).raise_for_action("close")
        except AuthError:
            self.closed_instances.discard(key)
            raise
        except ActionFailed as e:
            logger.error("[INSTANCE GUARD] Failed to close instance %s: %s", info.world_name, e)
            return False
        finally:
            if self.action_delay:
                await asyncio.sleep(self.action_delay)

        self.audit.record(AuditEntry(
            user="System",
            user_id="system",
            group_id=group_id,
            action="INSTANCE_CLOSED",
            reason=reason,
            module=AuditModule.INSTANCE_GUARD,
            details={
                "worldId": info.world_id,
                "instanceId": info.instance_id,
                "worldName": info.world_name,
                "wasAgeGated": info.age_gated,
                "wasBlacklisted": blacklisted,
                "ruleName": AGE_GATE_RULE_NAME if use_age_gate else CLOSE_ALL_RULE_NAME,
            },
            skip_broadcast=True,
        ))
        owner_name = await self._owner_name(info.owner_id)
        self.history.add_event(info.event(
            InstanceEventAction.AUTO_CLOSED, group_id, reason=reason, closed_by="System", owner_name=owner_name
        ))
        logger.info("[INSTANCE GUARD] Closed instance %s", info.world_name)
        return True
