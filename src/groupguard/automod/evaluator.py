"""
AutoMod evaluator.

Maps a user snapshot and a group's enabled rules to a :class:`Verdict`. Rules
are checked in stored order and the first match wins. The evaluator only
decides; it never performs moderation actions.

Fail-open: any unexpected error during evaluation is logged and resolves to
ALLOW.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from groupguard.automod.rule_parser import RuleParser
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.datatypes.automod_datatypes import (
    INSTANCE_RULE_TYPES,
    MatchMode,
    Rule,
    RuleType,
    TrustRank,
    UserGroup,
    UserSnapshot,
    Verdict,
)
from groupguard.datatypes.rule_config_datatypes import (
    BlacklistedGroupsRuleConfig,
    ParsedRule,
    TrustRuleConfig,
)
from groupguard.util.logger import get_logger

logger = get_logger("evaluator")

AGE_VERIFIED = "18+"
AGE_HIDDEN = "hidden"


class GroupMembershipSource(Protocol):
    async def get_user_groups(self, user_id: str) -> List[UserGroup]: ...


def _verdict(rule: Rule, reason: str) -> Verdict:
    return Verdict(action=rule.action_type, reason=reason, rule_name=rule.name, rule_id=rule.id)


def keyword_hit(parsed: ParsedRule, text: str) -> Optional[str]:
    """Return the first keyword found in ``text`` that the free-text whitelist does not cover."""
    if not text:
        return None
    lowered = text.lower()
    for index, keyword in enumerate(parsed.keywords):
        if parsed.match_mode is MatchMode.WHOLE_WORD and index < len(parsed.compiled_patterns):
            hit = parsed.compiled_patterns[index].search(text) is not None
        else:
            hit = keyword.lower() in lowered
        if not hit:
            continue
        if any(allowed in lowered for allowed in parsed.whitelist):
            logger.debug("[EVALUATOR] Keyword %r suppressed by whitelist", keyword)
            continue
        return keyword
    return None


def check_embedded_age_verification(user: UserSnapshot) -> bool:
    """Age sub-check of KEYWORD_BLOCK: only a present status other than 18+ / hidden matches."""
    status = user.age_verification_status
    if not status:
        return False
    return status.lower() not in (AGE_VERIFIED, AGE_HIDDEN)


class AutoModEvaluator:
    """Evaluates users against the enabled per-user rules of a group."""

    def __init__(
        self,
        group_configs: GroupConfigManager,
        rule_parser: RuleParser,
        memberships: GroupMembershipSource,
    ) -> None:
        self.group_configs = group_configs
        self.rule_parser = rule_parser
        self.memberships = memberships

    async def evaluate(self, user: UserSnapshot, group_id: str, *, allow_missing_data: bool = False) -> Verdict:
        """Return the verdict of the first matching enabled rule, or ALLOW. Never raises."""
        try:
            rules = self.group_configs.get_group_config(group_id).enabled_rules()
            return await self._evaluate_rules(user, rules, allow_missing_data)
        except Exception:
            logger.exception("[EVALUATOR] Evaluation failed for user %s in group %s, allowing", user.id, group_id)
            return Verdict.allow()

    async def _evaluate_rules(self, user: UserSnapshot, rules: Sequence[Rule], allow_missing_data: bool) -> Verdict:
        groups: Optional[List[UserGroup]] = None

        for rule in rules:
            if rule.rule_type in INSTANCE_RULE_TYPES:
                continue
            parsed = self.rule_parser.parse(rule)
            if user.id in parsed.whitelisted_user_ids:
                logger.debug("[EVALUATOR] User %s is whitelisted for rule %s", user.id, rule.id)
                continue

            if rule.rule_type == RuleType.KEYWORD_BLOCK:
                if parsed.needs_groups and groups is None:
                    groups = await self._fetch_groups(user.id)
                verdict = self._check_keywords(rule, parsed, user, groups or [])
            elif rule.rule_type == RuleType.AGE_VERIFICATION:
                verdict = self._check_age(rule, user, allow_missing_data)
            elif rule.rule_type == RuleType.TRUST_CHECK:
                verdict = self._check_trust(rule, parsed, user, allow_missing_data)
            elif rule.rule_type == RuleType.BLACKLISTED_GROUPS:
                if groups is None:
                    groups = await self._fetch_groups(user.id)
                verdict = self._check_blacklisted_groups(rule, parsed, groups)
            else:
                logger.debug("[EVALUATOR] Ignoring rule %s of unknown type %s", rule.id, rule.rule_type)
                continue

            if verdict is not None:
                logger.info("[EVALUATOR] User %s matched rule %s (%s): %s", user.id, rule.id, rule.name, verdict.reason)
                return verdict

        return Verdict.allow()

    async def _fetch_groups(self, user_id: str) -> List[UserGroup]:
        try:
            return list(await self.memberships.get_user_groups(user_id))
        except Exception as exc:
            logger.warning("[EVALUATOR] Could not fetch groups for %s, continuing without them: %s", user_id, exc)
            return []

    # -------- Per-type checks --------
    def _check_keywords(
        self, rule: Rule, parsed: ParsedRule, user: UserSnapshot, groups: List[UserGroup]
    ) -> Optional[Verdict]:
        if any(group.id in parsed.whitelisted_group_ids for group in groups):
            logger.debug("[EVALUATOR] User %s is in a whitelisted group for rule %s", user.id, rule.id)
            return None

        fields = [("display name", user.display_name)]
        if parsed.scan_bio:
            fields.append(("bio", user.bio or ""))
        if parsed.scan_status:
            fields.append(("status", f"{user.status or ''} {user.status_description or ''}".strip()))
        if parsed.scan_pronouns:
            fields.append(("pronouns", user.pronouns or ""))
        if parsed.scan_groups:
            for group in groups:
                fields.append((f"group {group.name or group.id}", f"{group.name} {group.short_code}".strip()))

        for field_name, text in fields:
            keyword = keyword_hit(parsed, text)
            if keyword is not None:
                return _verdict(rule, f'Keyword: "{keyword}" (in {field_name})')

        if check_embedded_age_verification(user):
            return _verdict(rule, f"Age verification: {user.age_verification_status}")
        return None

    def _check_age(self, rule: Rule, user: UserSnapshot, allow_missing_data: bool) -> Optional[Verdict]:
        status = user.age_verification_status
        if status is None and allow_missing_data:
            return None
        if status == AGE_VERIFIED:
            return None
        return _verdict(rule, f"Age verification required (status: {status or 'unknown'})")

    def _check_trust(
        self, rule: Rule, parsed: ParsedRule, user: UserSnapshot, allow_missing_data: bool
    ) -> Optional[Verdict]:
        settings = parsed.settings
        if not isinstance(settings, TrustRuleConfig) or settings.min_rank is None:
            return None
        if not user.tags and allow_missing_data:
            return None

        rank = TrustRank.from_tags(user.tags or []) or TrustRank.VISITOR
        if rank < settings.min_rank:
            return _verdict(rule, f"Trust rank {rank.name.lower()} is below {settings.min_rank.name.lower()}")
        return None

    def _check_blacklisted_groups(
        self, rule: Rule, parsed: ParsedRule, groups: List[UserGroup]
    ) -> Optional[Verdict]:
        settings = parsed.settings
        if not isinstance(settings, BlacklistedGroupsRuleConfig) or not settings.group_ids:
            return None
        if any(group.id in parsed.whitelisted_group_ids for group in groups):
            return None

        blacklist = set(settings.group_ids)
        for group in groups:
            if group.id in blacklist:
                name = group.name or settings.name_for(group.id)
                return _verdict(rule, f"Member of blacklisted group: {name}")
        return None
