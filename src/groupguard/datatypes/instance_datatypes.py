"""Instance Guard event records and key helpers for instance/audit-log dedup."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class InstanceEventAction(str, Enum):
    OPENED = "OPENED"
    CLOSED = "CLOSED"
    AUTO_CLOSED = "AUTO_CLOSED"
    INSTANCE_CLOSED = "INSTANCE_CLOSED"

    def __str__(self) -> str:
        return self.value


def make_event_id() -> str:
    return f"ig_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass(slots=True)
class InstanceGuardEvent:
    """Observability record of an instance being opened or closed. Not used for decisions."""

    action: InstanceEventAction
    world_id: str
    world_name: str
    instance_id: str
    group_id: str
    reason: Optional[str] = None
    closed_by: Optional[str] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    was_age_gated: Optional[bool] = None
    user_count: Optional[int] = None
    world_thumbnail_url: Optional[str] = None
    world_author_name: Optional[str] = None
    world_capacity: Optional[int] = None
    id: str = field(default_factory=make_event_id)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action.value,
            "worldId": self.world_id,
            "worldName": self.world_name,
            "instanceId": self.instance_id,
            "groupId": self.group_id,
            "reason": self.reason,
            "closedBy": self.closed_by,
            "ownerId": self.owner_id,
            "ownerName": self.owner_name,
            "wasAgeGated": self.was_age_gated,
            "userCount": self.user_count,
            "worldThumbnailUrl": self.world_thumbnail_url,
            "worldAuthorName": self.world_author_name,
            "worldCapacity": self.world_capacity,
        }
        return {key: value for key, value in payload.items() if value is not None}


def instance_key(group_id: str, world_id: str, instance_id: str) -> str:
    return f"{group_id}:{world_id}:{instance_id}"


def audit_log_key(group_id: str, log_id: str) -> str:
    return f"{group_id}:{log_id}"


def parse_instance_location(location: Any) -> Optional[Tuple[str, str]]:
    """Split ``wrld_x:12345~group(grp_y)~...`` into ``(world_id, instance_id)``.

    Returns None when the value is not a ``world:instance`` composite.
    """
    if not isinstance(location, str) or ":" not in location:
        return None
    world_id, instance_id = location.split(":", 1)
    world_id = world_id.strip()
    instance_id = instance_id.strip()
    if not world_id.startswith("wrld_") or not instance_id:
        return None
    return world_id, instance_id
