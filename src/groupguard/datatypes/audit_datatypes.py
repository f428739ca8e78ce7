"""
Audit record for automated moderation actions.

An :class:`AuditEntry` is written for every action the enforcement loops take
(accepts, rejects, bans, instance closes) and is what the history views read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AuditModule:
    """Names of the subsystems that write audit entries."""

    GATEKEEPER = "Gatekeeper"
    INSTANCE_GUARD = "InstanceGuard"
    PERMISSION_GUARD = "PermissionGuard"
    MEMBER_GUARD = "MemberGuard"


@dataclass(slots=True)
class AuditEntry:
    """Structured moderation-action record.

    Attributes:
        user: Display name of the affected user (``"System"`` for instance actions)
        user_id: VRChat user id, or ``"system"``
        group_id: Group the action was taken in
        action: ``AUTO_ACCEPT``, ``REJECT``, ``AUTO_BLOCK``, ``INSTANCE_CLOSED`` ...
        reason: Human readable reason
        module: Subsystem that took the action (see :class:`AuditModule`)
        details: Free-form JSON-serializable context
        skip_broadcast: When True the entry is stored without a UI broadcast
    """

    user: str
    user_id: str
    group_id: str
    action: str
    reason: str
    module: str
    details: Dict[str, Any] = field(default_factory=dict)
    skip_broadcast: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def to_broadcast_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "displayName": self.user,
            "action": self.action,
            "reason": self.reason,
            "ruleName": self.details.get("ruleName"),
            "timestamp": self.timestamp.isoformat(),
        }
