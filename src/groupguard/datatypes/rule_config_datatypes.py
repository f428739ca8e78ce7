"""
Normalized rule configurations.

Each rule type has one configuration variant. The rule parser maps raw JSON
(including legacy shapes) onto these variants; invalid input maps to the
variant's defaults instead of raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from groupguard.datatypes.automod_datatypes import MatchMode, TrustRank


@dataclass(frozen=True, slots=True)
class KeywordRuleConfig:
    keywords: Tuple[str, ...] = ()
    whitelist: Tuple[str, ...] = ()
    scan_bio: bool = True
    scan_status: bool = True
    scan_pronouns: bool = False
    scan_groups: bool = False
    match_mode: MatchMode = MatchMode.PARTIAL
    whitelisted_user_ids: Tuple[str, ...] = ()
    whitelisted_group_ids: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TrustRuleConfig:
    """Minimum trust rank. ``min_rank`` is None when the configured name is unknown."""

    level_name: str = ""
    min_rank: Optional[TrustRank] = None


@dataclass(frozen=True, slots=True)
class BlacklistedGroupsRuleConfig:
    group_ids: Tuple[str, ...] = ()
    group_names: Tuple[Tuple[str, str], ...] = ()

    def name_for(self, group_id: str) -> str:
        for known_id, name in self.group_names:
            if known_id == group_id and name:
                return name
        return group_id


@dataclass(frozen=True, slots=True)
class InstanceRuleConfig:
    """World lists shared by INSTANCE_18_GUARD and CLOSE_ALL_INSTANCES."""

    whitelisted_worlds: Tuple[str, ...] = ()
    blacklisted_worlds: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PermissionGuardRuleConfig:
    exempt_user_ids: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EmptyRuleConfig:
    """Rule types without settings (AGE_VERIFICATION and unknown types)."""


RuleConfig = Union[
    KeywordRuleConfig,
    TrustRuleConfig,
    BlacklistedGroupsRuleConfig,
    InstanceRuleConfig,
    PermissionGuardRuleConfig,
    EmptyRuleConfig,
]


@dataclass(frozen=True, slots=True)
class ParsedRule:
    """Pre-compiled view of a rule, cached by ``(rule id, raw config)``.

    The keyword fields are populated for KEYWORD_BLOCK rules only; the user and
    group whitelists merge the rule's own lists with any found in the config.
    ``compiled_patterns`` is aligned with ``keywords`` and is empty unless the
    match mode is WHOLE_WORD.
    """

    rule_id: int
    rule_type: str
    settings: RuleConfig = field(default_factory=EmptyRuleConfig)
    keywords: Tuple[str, ...] = ()
    whitelist: Tuple[str, ...] = ()
    whitelisted_user_ids: frozenset[str] = frozenset()
    whitelisted_group_ids: frozenset[str] = frozenset()
    scan_bio: bool = True
    scan_status: bool = True
    scan_pronouns: bool = False
    scan_groups: bool = False
    match_mode: MatchMode = MatchMode.PARTIAL
    compiled_patterns: Tuple[re.Pattern[str], ...] = ()

    @property
    def needs_groups(self) -> bool:
        return bool(self.whitelisted_group_ids) or self.scan_groups
