"""
Registry of groups the signed-in moderator may act on.

Enforcement loops only touch groups in this registry. A group is authorized
when the moderator owns it or holds a role with any moderation permission.
The allowed ids are persisted so the loops can run immediately on startup.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from groupguard.configuration.config_store import JsonConfigStore
from groupguard.network.moderation_api import ModerationApi
from groupguard.util.logger import get_logger

logger = get_logger("group_authorization")

ALLOWED_GROUPS_KEY = "allowedGroupIds"
WILDCARD_PERMISSION = "*"

MODERATION_PERMISSIONS = frozenset({
    "group-bans-manage",
    "group-members-manage",
    "group-members-remove",
    "group-data-manage",
    "group-audit-view",
    "group-join-request-manage",
    "group-instance-moderate",
    "group-instance-open",
    "group-instance-close",
})


def roles_grant_any(
    role_ids: Iterable[str], roles: Sequence[Mapping[str, Any]], permissions: Iterable[str]
) -> bool:
    """True if any role in ``role_ids`` carries the wildcard or one of ``permissions``."""
    wanted = set(permissions)
    by_id = {role.get("id"): role for role in roles if isinstance(role, Mapping)}
    for role_id in role_ids:
        role = by_id.get(role_id)
        if not role:
            continue
        granted = role.get("permissions") or []
        if WILDCARD_PERMISSION in granted or wanted.intersection(granted):
            return True
    return False


class GroupAuthorizationService:
    def __init__(self, store: JsonConfigStore, api: ModerationApi, check_delay: float = 0.25) -> None:
        self._store = store
        self.api = api
        self.check_delay = check_delay
        stored = store.get(ALLOWED_GROUPS_KEY, [])
        self._allowed: List[str] = [str(group_id) for group_id in stored] if isinstance(stored, list) else []

    def get_allowed_group_ids(self) -> List[str]:
        return list(self._allowed)

    def is_group_allowed(self, group_id: str) -> bool:
        return group_id in self._allowed

    def set_allowed_groups(self, group_ids: Iterable[str]) -> None:
        self._allowed = [group_id for group_id in dict.fromkeys(group_ids) if group_id.startswith("grp_")]
        self._store.set(ALLOWED_GROUPS_KEY, self._allowed)
        logger.info("[GROUP AUTH] %d group(s) authorized", len(self._allowed))

    async def authorize_from_memberships(self, memberships: Sequence[Dict[str, Any]], user_id: str) -> List[str]:
        """Authorize owned groups and groups where ``user_id`` holds a moderation permission."""
        authorized: List[str] = []
        needs_check: List[Dict[str, Any]] = []

        for membership in memberships:
            group_id = str(membership.get("groupId") or membership.get("id") or "")
            if not group_id.startswith("grp_"):
                continue
            owner_id = membership.get("ownerId") or (membership.get("group") or {}).get("ownerId")
            if owner_id == user_id:
                authorized.append(group_id)
            else:
                needs_check.append(membership)

        logger.info("[GROUP AUTH] %d owned group(s), %d need a permission check", len(authorized), len(needs_check))

        for index, membership in enumerate(needs_check):
            group_id = str(membership.get("groupId") or membership.get("id"))
            if await self._has_moderation_permission(group_id, user_id, membership):
                authorized.append(group_id)
            if index < len(needs_check) - 1 and self.check_delay:
                await asyncio.sleep(self.check_delay)

        self.set_allowed_groups(authorized)
        return self.get_allowed_group_ids()

    async def _has_moderation_permission(self, group_id: str, user_id: str, membership: Dict[str, Any]) -> bool:
        role_ids = membership.get("roleIds") or (membership.get("myMember") or {}).get("roleIds") or []
        if not role_ids:
            member = await self.api.get_group_member(group_id, user_id)
            if not member.success or not isinstance(member.data, dict):
                logger.warning("[GROUP AUTH] Could not fetch membership in %s: %s", group_id, member.error)
                return False
            role_ids = member.data.get("roleIds") or []
        if not role_ids:
            return False

        roles = await self.api.get_group_roles(group_id)
        if not roles.success:
            logger.warning("[GROUP AUTH] Could not fetch roles of %s: %s", group_id, roles.error)
            return False
        return roles_grant_any(role_ids, roles.data or [], MODERATION_PERMISSIONS)
