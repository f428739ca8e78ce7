"""Bulk scan of a group's current members against its AutoMod rules."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from groupguard.automod.evaluator import AutoModEvaluator
from groupguard.datatypes.automod_datatypes import UserSnapshot, Verdict
from groupguard.network.moderation_api import ModerationApi
from groupguard.util.logger import get_logger

logger = get_logger("member_scanner")

PAGE_SIZE = 100
MAX_PAGES = 50


class ScanStatus(str, Enum):
    BANNED = "BANNED"
    VIOLATION = "VIOLATION"
    SAFE = "SAFE"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class MemberScanResult:
    user_id: str
    display_name: str
    status: ScanStatus
    verdict: Verdict

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "status": self.status.value,
            **self.verdict.to_dict(),
        }


class MemberScanner:
    def __init__(
        self,
        api: ModerationApi,
        evaluator: AutoModEvaluator,
        request_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.evaluator = evaluator
        self.request_delay = request_delay
        self._sleep = sleep

    async def _paged(self, fetch, group_id: str) -> Optional[List[Dict[str, Any]]]:
        items: List[Dict[str, Any]] = []
        for page in range(MAX_PAGES):
            result = await fetch(group_id, PAGE_SIZE, page * PAGE_SIZE)
            if not result.success:
                logger.warning("[MEMBER SCAN] Fetch failed for group %s: %s", group_id, result.error)
                return None if page == 0 else items
            batch = [item for item in result.data or [] if isinstance(item, dict)]
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            if self.request_delay:
                await self._sleep(self.request_delay)
        return items

    async def scan_group_members(self, group_id: str) -> List[MemberScanResult]:
        """
        Classify every member as BANNED, VIOLATION or SAFE.

        Members are evaluated with ``allow_missing_data`` so the partial
        profiles returned by the member list do not produce false positives.
        Evaluations are spaced ``request_delay`` seconds apart.
        Returns an empty list if the member list cannot be fetched.
        """
        try:
            members = await self._paged(self.api.get_group_members, group_id)
            if members is None:
                return []
            bans = await self._paged(self.api.get_group_bans, group_id) or []
            banned_ids: Set[str] = {str(ban.get("userId") or (ban.get("user") or {}).get("id")) for ban in bans}

            results: List[MemberScanResult] = []
            evaluated = 0
            for member in members:
                user = member.get("user") if isinstance(member.get("user"), dict) else {}
                user_id = member.get("userId") or user.get("id")
                if not user_id:
                    continue
                snapshot = UserSnapshot.from_api(user, user_id=user_id)
                name = snapshot.display_name or "Unknown"

                if user_id in banned_ids:
                    results.append(MemberScanResult(user_id, name, ScanStatus.BANNED, Verdict.allow()))
                    continue

                if evaluated and self.request_delay:
                    await self._sleep(self.request_delay)
                evaluated += 1
                verdict = await self.evaluator.evaluate(snapshot, group_id, allow_missing_data=True)
                status = ScanStatus.SAFE if verdict.is_allowed else ScanStatus.VIOLATION
                results.append(MemberScanResult(user_id, name, status, verdict))

            violations = sum(1 for result in results if result.status is ScanStatus.VIOLATION)
            logger.info("[MEMBER SCAN] Scanned %d members of %s: %d violation(s)", len(results), group_id, violations)
            return results
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[MEMBER SCAN] Scan of group %s failed", group_id)
            return []
