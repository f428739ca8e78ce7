"""Best-effort user and group-membership enrichment with a short-lived cache."""

from __future__ import annotations

import time
from typing import Callable, List, Optional

from groupguard.datatypes.automod_datatypes import UserGroup, UserSnapshot
from groupguard.errors import AuthError, ResolverUnavailable
from groupguard.network.moderation_api import ModerationApi
from groupguard.util.logger import get_logger
from groupguard.util.ttl_cache import TtlCache

logger = get_logger("user_resolver")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 500


class UserResolver:
    """
    Fetches user details and group memberships through the moderation API.

    ``fetch_user`` returns None on failure. ``get_user_groups`` raises
    :class:`ResolverUnavailable` so the evaluator can decide how to degrade.
    Successful lookups are cached for ``ttl_seconds``.
    """

    def __init__(
        self,
        api: ModerationApi,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self._users: TtlCache[str, UserSnapshot] = TtlCache(ttl_seconds, max_entries, clock)
        self._groups: TtlCache[str, List[UserGroup]] = TtlCache(ttl_seconds, max_entries, clock)

    async def fetch_user(self, user_id: str) -> Optional[UserSnapshot]:
        cached = self._users.get(user_id)
        if cached is not None:
            return cached

        result = await self.api.get_user(user_id)
        if result.not_authenticated:
            raise AuthError(result.error or "Not authenticated")
        if not result.success or not isinstance(result.data, dict):
            logger.warning("[USER RESOLVER] Could not fetch user %s: %s", user_id, result.error)
            return None

        snapshot = UserSnapshot.from_api(result.data, user_id=user_id)
        self._users.set(user_id, snapshot)
        return snapshot

    async def enrich(self, user: UserSnapshot) -> UserSnapshot:
        """Backfill missing tags / bio from a full user fetch. Returns ``user`` unchanged on failure."""
        if not user.needs_enrichment:
            return user
        full = await self.fetch_user(user.id)
        return user.backfilled_from(full) if full is not None else user

    async def get_user_groups(self, user_id: str) -> List[UserGroup]:
        cached = self._groups.get(user_id)
        if cached is not None:
            return list(cached)

        result = await self.api.get_user_groups(user_id)
        if not result.success:
            raise ResolverUnavailable(f"Group memberships of {user_id} unavailable: {result.error}")

        groups = [UserGroup.from_api(item) for item in result.data or [] if isinstance(item, dict)]
        self._groups.set(user_id, groups)
        return list(groups)

    def clear(self) -> None:
        self._users.clear()
        self._groups.clear()
