"""
Core AutoMod data types.

This module defines the rule model, the per-group configuration record, the
user snapshot consumed by the evaluator and the verdict it produces.
Serialization helpers use the camelCase keys of the persisted configuration
file so existing stores stay readable.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Iterable, List, Optional


class RuleType(str, Enum):
    """Enumeration of known rule types. Unknown types are kept as raw strings."""

    KEYWORD_BLOCK = "KEYWORD_BLOCK"
    AGE_VERIFICATION = "AGE_VERIFICATION"
    TRUST_CHECK = "TRUST_CHECK"
    BLACKLISTED_GROUPS = "BLACKLISTED_GROUPS"
    INSTANCE_18_GUARD = "INSTANCE_18_GUARD"
    INSTANCE_PERMISSION_GUARD = "INSTANCE_PERMISSION_GUARD"
    CLOSE_ALL_INSTANCES = "CLOSE_ALL_INSTANCES"

    def __str__(self) -> str:
        return self.value


INSTANCE_RULE_TYPES = frozenset({
    RuleType.INSTANCE_18_GUARD,
    RuleType.CLOSE_ALL_INSTANCES,
    RuleType.INSTANCE_PERMISSION_GUARD,
})
"""Rule types enforced by the instance loops rather than the per-user evaluator."""


class ActionType(str, Enum):
    """Verdict actions. Rules carry every member except ``ALLOW``."""

    ALLOW = "ALLOW"
    REJECT = "REJECT"
    AUTO_BLOCK = "AUTO_BLOCK"
    NOTIFY_ONLY = "NOTIFY_ONLY"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_rule(cls, value: Any) -> "ActionType":
        """Coerce a stored rule action, falling back to REJECT for unknown values."""
        try:
            action = cls(str(value).upper())
        except ValueError:
            return cls.REJECT
        return cls.REJECT if action is cls.ALLOW else action


class MatchMode(str, Enum):
    """Keyword matching strategy."""

    PARTIAL = "PARTIAL"
    WHOLE_WORD = "WHOLE_WORD"

    def __str__(self) -> str:
        return self.value


class TrustRank(IntEnum):
    """VRChat trust ranks, totally ordered from lowest to highest."""

    VISITOR = 0
    BASIC = 1
    KNOWN = 2
    TRUSTED = 3
    VETERAN = 4
    LEGEND = 5

    @property
    def tag(self) -> str:
        return f"system_trust_{self.name.lower()}"

    @classmethod
    def from_name(cls, value: Any) -> Optional["TrustRank"]:
        """Resolve ``"known"``, ``"KNOWN"`` or ``"system_trust_known"`` to a rank."""
        if not isinstance(value, str):
            return None
        name = value.strip().lower()
        if name.startswith("system_trust_"):
            name = name[len("system_trust_"):]
        for rank in cls:
            if rank.name.lower() == name:
                return rank
        return None

    @classmethod
    def from_tags(cls, tags: Iterable[str]) -> Optional["TrustRank"]:
        """Return the highest rank whose system tag is present, or None."""
        present = set(tags)
        for rank in sorted(cls, reverse=True):
            if rank.tag in present:
                return rank
        return None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item) for item in value if item is not None and str(item)]


@dataclass(slots=True)
class Rule:
    """A single AutoMod rule.

    ``id`` is unique within a group; ``0`` marks a rule that has not been saved yet.
    ``config`` is the raw JSON string, interpreted by the rule parser.
    """

    id: int = 0
    name: str = ""
    enabled: bool = True
    rule_type: str = RuleType.KEYWORD_BLOCK.value
    config: str = ""
    action_type: ActionType = ActionType.REJECT
    whitelisted_user_ids: List[str] = field(default_factory=list)
    whitelisted_group_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "type": str(self.rule_type),
            "config": self.config,
            "actionType": self.action_type.value,
            "whitelistedUserIds": list(self.whitelisted_user_ids),
            "whitelistedGroupIds": list(self.whitelisted_group_ids),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        config = data.get("config", "")
        if not isinstance(config, str):
            config = json.dumps(config)
        try:
            rule_id = int(data.get("id") or 0)
        except (TypeError, ValueError):
            rule_id = 0
        return cls(
            id=rule_id,
            name=str(data.get("name") or ""),
            enabled=bool(data.get("enabled", True)),
            rule_type=str(data.get("type") or data.get("rule_type") or RuleType.KEYWORD_BLOCK.value),
            config=config,
            action_type=ActionType.for_rule(data.get("actionType") or data.get("action_type") or "REJECT"),
            whitelisted_user_ids=_string_list(data.get("whitelistedUserIds")),
            whitelisted_group_ids=_string_list(data.get("whitelistedGroupIds")),
            created_at=str(data.get("createdAt") or _utc_now_iso()),
        )


@dataclass(slots=True)
class GroupConfig:
    """Persisted AutoMod configuration of one group."""

    rules: List[Rule] = field(default_factory=list)
    enable_auto_reject: bool = False
    enable_auto_ban: bool = False

    def enabled_rules(self) -> List[Rule]:
        return [rule for rule in self.rules if rule.enabled]

    def find_enabled_rule(self, rule_type: RuleType) -> Optional[Rule]:
        """Return the first enabled rule of the given type in stored order."""
        for rule in self.rules:
            if rule.enabled and rule.rule_type == rule_type:
                return rule
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [rule.to_dict() for rule in self.rules],
            "enableAutoReject": self.enable_auto_reject,
            "enableAutoBan": self.enable_auto_ban,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "GroupConfig":
        if not isinstance(data, dict):
            return cls()
        raw_rules = data.get("rules") if isinstance(data.get("rules"), list) else []
        return cls(
            rules=[Rule.from_dict(item) for item in raw_rules if isinstance(item, dict)],
            enable_auto_reject=bool(data.get("enableAutoReject", False)),
            enable_auto_ban=bool(data.get("enableAutoBan", False)),
        )


@dataclass(slots=True)
class UserSnapshot:
    """The user fields the evaluator consumes. Callers backfill missing fields."""

    id: str
    display_name: str = ""
    tags: Optional[List[str]] = None
    bio: Optional[str] = None
    status: Optional[str] = None
    status_description: Optional[str] = None
    pronouns: Optional[str] = None
    age_verification_status: Optional[str] = None

    @property
    def needs_enrichment(self) -> bool:
        return self.tags is None or self.bio is None

    @classmethod
    def from_api(cls, data: dict[str, Any], *, user_id: str | None = None) -> "UserSnapshot":
        """Build a snapshot from a VRChat user payload (camelCase keys)."""
        tags = data.get("tags")
        return cls(
            id=str(user_id or data.get("id") or data.get("userId") or ""),
            display_name=str(data.get("displayName") or data.get("display_name") or ""),
            tags=list(tags) if isinstance(tags, list) else None,
            bio=data.get("bio"),
            status=data.get("status"),
            status_description=data.get("statusDescription") or data.get("status_description"),
            pronouns=data.get("pronouns"),
            age_verification_status=data.get("ageVerificationStatus") or data.get("age_verification_status"),
        )

    def backfilled_from(self, other: "UserSnapshot") -> "UserSnapshot":
        """Return a copy whose missing fields are filled from ``other``."""
        return UserSnapshot(
            id=self.id,
            display_name=self.display_name or other.display_name,
            tags=self.tags if self.tags is not None else other.tags,
            bio=self.bio if self.bio is not None else other.bio,
            status=self.status if self.status is not None else other.status,
            status_description=(
                self.status_description if self.status_description is not None else other.status_description
            ),
            pronouns=self.pronouns if self.pronouns is not None else other.pronouns,
            age_verification_status=(
                self.age_verification_status
                if self.age_verification_status is not None
                else other.age_verification_status
            ),
        )


@dataclass(frozen=True, slots=True)
class UserGroup:
    """A group the user is a member of."""

    id: str
    name: str = ""
    short_code: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "UserGroup":
        return cls(
            id=str(data.get("groupId") or data.get("id") or ""),
            name=str(data.get("name") or ""),
            short_code=str(data.get("shortCode") or ""),
        )


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of one evaluation."""

    action: ActionType = ActionType.ALLOW
    reason: Optional[str] = None
    rule_name: Optional[str] = None
    rule_id: Optional[int] = None

    @property
    def is_allowed(self) -> bool:
        return self.action is ActionType.ALLOW

    @classmethod
    def allow(cls) -> "Verdict":
        return cls(ActionType.ALLOW)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "ruleName": self.rule_name,
            "ruleId": self.rule_id,
        }
