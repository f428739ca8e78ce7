"""
Watchlist of users, groups, avatars and worlds flagged by moderators.

The Gatekeeper consults the watchlist after rule evaluation: a blocking entry
forces a REJECT verdict regardless of the rule outcome.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from groupguard.configuration.config_store import JsonConfigStore
from groupguard.datatypes.automod_datatypes import ActionType, Verdict
from groupguard.util.logger import get_logger

logger = get_logger("watchlist")

BLOCKING_TAGS = frozenset({"malicious", "nuisance"})
BLOCKING_PRIORITY = -10

DEFAULT_TAGS: List[Dict[str, str]] = [
    {"id": "nuisance", "label": "Nuisance", "description": "General annoyance", "color": "#FFA500"},
    {"id": "malicious", "label": "Malicious", "description": "Crasher or attacker", "color": "#FF0000"},
    {"id": "community", "label": "Community", "description": "Safe or known user", "color": "#00FF00"},
]


@dataclass(slots=True)
class WatchedEntity:
    id: str
    type: str = "user"
    display_name: str = "Unknown"
    tags: List[str] = field(default_factory=list)
    notes: str = ""
    priority: int = 0
    critical: bool = False
    silent: bool = False
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_blocking(self) -> bool:
        """Critical, very low priority, or tagged malicious / nuisance."""
        return self.critical or self.priority <= BLOCKING_PRIORITY or bool(BLOCKING_TAGS.intersection(self.tags))

    def to_verdict(self) -> Verdict:
        return Verdict(
            action=ActionType.REJECT,
            reason=f"Watchlist: {self.display_name} (Priority: {self.priority})",
            rule_name="Watchlist",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "displayName": self.display_name,
            "tags": list(self.tags),
            "notes": self.notes,
            "priority": self.priority,
            "critical": self.critical,
            "silent": self.silent,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchedEntity":
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type") or "user"),
            display_name=str(data.get("displayName") or "Unknown"),
            tags=[str(tag) for tag in data.get("tags") or []],
            notes=str(data.get("notes") or ""),
            priority=int(data.get("priority") or 0),
            critical=bool(data.get("critical", False)),
            silent=bool(data.get("silent", False)),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


class WatchlistService:
    """CRUD over watched entities stored under the ``entities`` key."""

    def __init__(self, store: JsonConfigStore) -> None:
        self._store = store
        if not self._store.has("tags"):
            self._store.set("tags", DEFAULT_TAGS)

    def _entities(self) -> Dict[str, Dict[str, Any]]:
        entities = self._store.get("entities", {})
        return entities if isinstance(entities, dict) else {}

    def get_entity(self, entity_id: str) -> Optional[WatchedEntity]:
        raw = self._entities().get(entity_id)
        return WatchedEntity.from_dict(raw) if isinstance(raw, dict) else None

    def get_entities(self) -> List[WatchedEntity]:
        return [WatchedEntity.from_dict(raw) for raw in self._entities().values() if isinstance(raw, dict)]

    def save_entity(self, entity_id: str, entity_type: str = "user", **changes: Any) -> WatchedEntity:
        """Create or merge an entity. Fields not given keep their existing values."""
        entities = self._entities()
        existing = entities.get(entity_id)
        now = int(time.time() * 1000)

        merged = WatchedEntity.from_dict(existing) if isinstance(existing, dict) else WatchedEntity(id=entity_id, created_at=now)
        merged.type = entity_type or merged.type
        for name in ("display_name", "tags", "notes", "priority", "critical", "silent"):
            if changes.get(name) is not None:
                setattr(merged, name, changes[name])
        merged.updated_at = now

        entities[entity_id] = merged.to_dict()
        self._store.set("entities", entities)
        logger.info("[WATCHLIST] Saved %s %s (priority %d)", merged.type, entity_id, merged.priority)
        return merged

    def delete_entity(self, entity_id: str) -> bool:
        entities = self._entities()
        if entity_id not in entities:
            return False
        del entities[entity_id]
        self._store.set("entities", entities)
        logger.info("[WATCHLIST] Removed %s", entity_id)
        return True

    def get_tags(self) -> List[Dict[str, Any]]:
        return self._store.get("tags", [])

    def blocking_verdict(self, user_id: str) -> Optional[Verdict]:
        """Return a forced REJECT verdict if ``user_id`` is a blocking watchlist entry."""
        entity = self.get_entity(user_id)
        if entity is None or not entity.is_blocking:
            return None
        return entity.to_verdict()
