"""
Rule parser and parsed-rule cache.

Turns a rule's opaque JSON configuration into a :class:`ParsedRule` with
normalized keyword lists and pre-compiled whole-word patterns. Parsing never
raises: malformed or legacy configurations degrade to the rule type's defaults.

Parsed rules are cached by rule identity and content, so any edit to a rule
produces a new cache key. Entries expire after a fixed TTL and the cache is
bounded with least-recently-used eviction.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Callable, Hashable, Iterable, Tuple

from groupguard.datatypes.automod_datatypes import MatchMode, Rule, RuleType, TrustRank
from groupguard.datatypes.rule_config_datatypes import (
    BlacklistedGroupsRuleConfig,
    EmptyRuleConfig,
    InstanceRuleConfig,
    KeywordRuleConfig,
    ParsedRule,
    PermissionGuardRuleConfig,
    RuleConfig,
    TrustRuleConfig,
)
from groupguard.errors import ConfigParseError
from groupguard.util.logger import get_logger
from groupguard.util.ttl_cache import TtlCache

logger = get_logger("rule_parser")

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_CACHE_MAX_ENTRIES = 100


def decode_config(raw: str) -> Any:
    """Strictly decode a rule configuration string.

    Raises:
        ConfigParseError: If ``raw`` is not valid JSON.
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigParseError(f"Invalid rule configuration: {exc}") from exc


def _clean_strings(values: Any, *, lower: bool = False) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    cleaned = []
    for value in values:
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            cleaned.append(text.lower() if lower else text)
    return tuple(cleaned)


def _match_mode(value: Any) -> MatchMode:
    if isinstance(value, str) and value.strip().upper() == MatchMode.WHOLE_WORD.value:
        return MatchMode.WHOLE_WORD
    return MatchMode.PARTIAL


def compile_keyword(keyword: str) -> re.Pattern[str]:
    """Compile a case-insensitive whole-word pattern for ``keyword``.

    Metacharacters are always escaped. If the boundary pattern cannot be
    compiled, the keyword falls back to a plain literal pattern.
    """
    escaped = re.escape(keyword)
    try:
        return re.compile(rf"(?<!\w){escaped}(?!\w)", re.IGNORECASE)
    except re.error as exc:
        logger.warning("[RULE PARSER] Falling back to literal pattern for keyword %r: %s", keyword, exc)
        return re.compile(escaped, re.IGNORECASE)


# -------- Per-type configuration parsing --------

def parse_keyword_config(raw: str) -> KeywordRuleConfig:
    """Accept, in priority order: an object, a bare array, a bare string, or unparseable text."""
    try:
        parsed = decode_config(raw) if raw else None
    except ConfigParseError:
        logger.debug("[RULE PARSER] Keyword config is not JSON, treating it as a single keyword")
        return KeywordRuleConfig(keywords=_clean_strings([raw]))

    if isinstance(parsed, dict):
        return KeywordRuleConfig(
            keywords=_clean_strings(parsed.get("keywords")),
            whitelist=_clean_strings(parsed.get("whitelist"), lower=True),
            scan_bio=parsed.get("scanBio") is not False,
            scan_status=parsed.get("scanStatus") is not False,
            scan_pronouns=parsed.get("scanPronouns") is True,
            scan_groups=parsed.get("scanGroups") is True,
            match_mode=_match_mode(parsed.get("matchMode")),
            whitelisted_user_ids=_clean_strings(parsed.get("whitelistedUserIds")),
            whitelisted_group_ids=_clean_strings(parsed.get("whitelistedGroupIds")),
        )
    if isinstance(parsed, list):
        return KeywordRuleConfig(keywords=_clean_strings(parsed))
    if isinstance(parsed, str):
        return KeywordRuleConfig(keywords=_clean_strings([parsed]))
    if not raw:
        return KeywordRuleConfig()
    return KeywordRuleConfig(keywords=_clean_strings([raw]))


def parse_trust_config(raw: str) -> TrustRuleConfig:
    """Accept ``minTrustLevel``, legacy ``trustLevel``, a JSON string or a raw string."""
    level: Any = raw
    try:
        parsed = decode_config(raw) if raw else None
    except ConfigParseError:
        parsed = None
    if isinstance(parsed, dict):
        level = parsed.get("minTrustLevel") or parsed.get("trustLevel") or raw
    elif isinstance(parsed, str):
        level = parsed

    level_name = str(level or "").strip()
    rank = TrustRank.from_name(level_name)
    if rank is None and level_name:
        logger.warning("[RULE PARSER] Unknown trust level %r, trust rule will not match", level_name)
    return TrustRuleConfig(level_name=level_name, min_rank=rank)


def parse_blacklisted_groups_config(raw: str) -> BlacklistedGroupsRuleConfig:
    try:
        parsed = decode_config(raw) if raw else None
    except ConfigParseError:
        logger.warning("[RULE PARSER] Invalid blacklisted groups config, using an empty blacklist")
        return BlacklistedGroupsRuleConfig()

    entries: list[Any] = []
    ids: list[str] = []
    if isinstance(parsed, dict):
        ids.extend(_clean_strings(parsed.get("groupIds")))
        entries = parsed.get("groups") if isinstance(parsed.get("groups"), list) else []
    elif isinstance(parsed, list):
        entries = parsed

    names: list[Tuple[str, str]] = []
    for entry in entries:
        if isinstance(entry, dict) and entry.get("id"):
            group_id = str(entry["id"])
            ids.append(group_id)
            names.append((group_id, str(entry.get("name") or "")))
        elif isinstance(entry, str) and entry.strip():
            ids.append(entry.strip())

    return BlacklistedGroupsRuleConfig(group_ids=tuple(dict.fromkeys(ids)), group_names=tuple(names))


def parse_instance_config(raw: str) -> InstanceRuleConfig:
    try:
        parsed = decode_config(raw) if raw else None
    except ConfigParseError:
        logger.warning("[RULE PARSER] Invalid instance rule config, using empty world lists")
        return InstanceRuleConfig()
    if not isinstance(parsed, dict):
        return InstanceRuleConfig()
    return InstanceRuleConfig(
        whitelisted_worlds=_clean_strings(parsed.get("whitelistedWorlds")),
        blacklisted_worlds=_clean_strings(parsed.get("blacklistedWorlds")),
    )


def parse_permission_guard_config(raw: str) -> PermissionGuardRuleConfig:
    try:
        parsed = decode_config(raw) if raw else None
    except ConfigParseError:
        return PermissionGuardRuleConfig()
    if not isinstance(parsed, dict):
        return PermissionGuardRuleConfig()
    exempt = _clean_strings(parsed.get("exemptUserIds")) + _clean_strings(parsed.get("whitelistedUserIds"))
    return PermissionGuardRuleConfig(exempt_user_ids=tuple(dict.fromkeys(exempt)))


_CONFIG_PARSERS: dict[str, Callable[[str], RuleConfig]] = {
    RuleType.KEYWORD_BLOCK.value: parse_keyword_config,
    RuleType.TRUST_CHECK.value: parse_trust_config,
    RuleType.BLACKLISTED_GROUPS.value: parse_blacklisted_groups_config,
    RuleType.INSTANCE_18_GUARD.value: parse_instance_config,
    RuleType.CLOSE_ALL_INSTANCES.value: parse_instance_config,
    RuleType.INSTANCE_PERMISSION_GUARD.value: parse_permission_guard_config,
}


def build_parsed_rule(rule: Rule) -> ParsedRule:
    """Parse ``rule`` from scratch. Deterministic in the rule's content."""
    parser = _CONFIG_PARSERS.get(str(rule.rule_type))
    raw = rule.config or ""
    settings: RuleConfig = parser(raw) if parser else EmptyRuleConfig()

    user_ids = set(rule.whitelisted_user_ids)
    group_ids = set(rule.whitelisted_group_ids)

    if not isinstance(settings, KeywordRuleConfig):
        if isinstance(settings, PermissionGuardRuleConfig):
            user_ids.update(settings.exempt_user_ids)
        return ParsedRule(
            rule_id=rule.id,
            rule_type=str(rule.rule_type),
            settings=settings,
            whitelisted_user_ids=frozenset(user_ids),
            whitelisted_group_ids=frozenset(group_ids),
        )

    user_ids.update(settings.whitelisted_user_ids)
    group_ids.update(settings.whitelisted_group_ids)
    patterns: Tuple[re.Pattern[str], ...] = ()
    if settings.match_mode is MatchMode.WHOLE_WORD:
        patterns = tuple(compile_keyword(keyword) for keyword in settings.keywords)

    return ParsedRule(
        rule_id=rule.id,
        rule_type=str(rule.rule_type),
        settings=settings,
        keywords=settings.keywords,
        whitelist=settings.whitelist,
        whitelisted_user_ids=frozenset(user_ids),
        whitelisted_group_ids=frozenset(group_ids),
        scan_bio=settings.scan_bio,
        scan_status=settings.scan_status,
        scan_pronouns=settings.scan_pronouns,
        scan_groups=settings.scan_groups,
        match_mode=settings.match_mode,
        compiled_patterns=patterns,
    )


def cache_key(rule: Rule) -> Hashable:
    """Content-addressed key: any change to the rule's config or whitelists yields a new key."""
    return (
        rule.id,
        str(rule.rule_type),
        rule.config or "",
        tuple(sorted(rule.whitelisted_user_ids)),
        tuple(sorted(rule.whitelisted_group_ids)),
    )


class RuleParser:
    """Parses rules through a TTL + LRU cache. Cached entries are never mutated."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TtlCache[Hashable, ParsedRule] = TtlCache(ttl_seconds, max_entries, clock)

    def parse(self, rule: Rule) -> ParsedRule:
        key = cache_key(rule)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        parsed = build_parsed_rule(rule)
        self._cache.set(key, parsed)
        return parsed

    def parse_all(self, rules: Iterable[Rule]) -> list[ParsedRule]:
        return [self.parse(rule) for rule in rules]

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
