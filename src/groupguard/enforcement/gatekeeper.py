"""
Gatekeeper: automatic processing of pending group join requests.

Each request moves from PENDING to exactly one of ACCEPTED, REJECTED or
SKIPPED. The ``gatekeeper:<groupId>:<userId>`` key is marked before any
network call so two overlapping passes can never act on the same request.

The Gatekeeper also handles two reactive inputs:

- real-time join notifications, processed like a single pending request
- member-join signals, which ban the member when an AUTO_BLOCK rule matches
  and auto-ban is enabled for the group
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from groupguard.automod.dedup import BoundedKeySet
from groupguard.automod.evaluator import AutoModEvaluator
from groupguard.automod.watchlist import WatchlistService
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.datatypes.audit_datatypes import AuditEntry, AuditModule
from groupguard.datatypes.automod_datatypes import ActionType, UserSnapshot, Verdict
from groupguard.errors import ActionFailed, AuthError
from groupguard.network.moderation_api import ModerationApi
from groupguard.network.user_resolver import UserResolver
from groupguard.services.audit_service import AuditService
from groupguard.services.event_bus import CHANNEL_VIOLATION, EventBus
from groupguard.services.group_authorization import GroupAuthorizationService
from groupguard.services.webhook_service import DiscordWebhookService
from groupguard.util.logger import get_logger

logger = get_logger("gatekeeper")

REQUEST_PAGE_SIZE = 100
JOIN_NOTIFICATION_TYPES = frozenset({"groupannouncement", "group.queueReady"})


class JoinRequestOutcome(str, Enum):
    ACCEPTED = "accept"
    REJECTED = "reject"
    SKIPPED = "skip"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class JoinRequestResult:
    processed: bool
    outcome: JoinRequestOutcome
    reason: Optional[str] = None
    auth_failed: bool = False

    @classmethod
    def skipped(cls, reason: str, *, processed: bool = False, auth_failed: bool = False) -> "JoinRequestResult":
        return cls(processed=processed, outcome=JoinRequestOutcome.SKIPPED, reason=reason, auth_failed=auth_failed)


@dataclass(slots=True)
class PendingScanSummary:
    total_processed: int = 0
    accepted: int = 0
    rejected: int = 0
    skipped: int = 0

    def count(self, result: JoinRequestResult) -> None:
        if not result.processed:
            self.skipped += 1
            return
        self.total_processed += 1
        if result.outcome is JoinRequestOutcome.ACCEPTED:
            self.accepted += 1
        elif result.outcome is JoinRequestOutcome.REJECTED:
            self.rejected += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalProcessed": self.total_processed,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "skipped": self.skipped,
        }


def gatekeeper_key(group_id: str, user_id: str) -> str:
    return f"gatekeeper:{group_id}:{user_id}"


def autoban_key(group_id: str, user_id: str) -> str:
    return f"autoban:{group_id}:{user_id}"


class Gatekeeper:
    """Evaluates join requests and accepts, rejects or only reports them."""

    def __init__(
        self,
        api: ModerationApi,
        resolver: UserResolver,
        evaluator: AutoModEvaluator,
        group_configs: GroupConfigManager,
        watchlist: WatchlistService,
        authorization: GroupAuthorizationService,
        audit: AuditService,
        webhooks: DiscordWebhookService,
        event_bus: EventBus,
        processed_requests: BoundedKeySet,
        processed_bans: BoundedKeySet,
        request_delay: float = 0.5,
    ) -> None:
        self.api = api
        self.resolver = resolver
        self.evaluator = evaluator
        self.group_configs = group_configs
        self.watchlist = watchlist
        self.authorization = authorization
        self.audit = audit
        self.webhooks = webhooks
        self.event_bus = event_bus
        self.processed_requests = processed_requests
        self.processed_bans = processed_bans
        self.request_delay = request_delay

    # --------------------------
    # Shared helpers
    # --------------------------
    async def _snapshot(self, user_id: str, display_name: str, details: Optional[Mapping[str, Any]]) -> UserSnapshot:
        """Build the evaluation snapshot, fetching the full profile when tags or bio are missing."""
        snapshot = UserSnapshot.from_api(dict(details or {}), user_id=user_id)
        snapshot.display_name = snapshot.display_name or display_name
        if snapshot.needs_enrichment:
            try:
                snapshot = await self.resolver.enrich(snapshot)
            except AuthError:
                raise
            except Exception as e:
                logger.warning("[GATEKEEPER] Failed to fetch full user details for %s: %s", user_id, e)
        return snapshot

    async def _decide(self, snapshot: UserSnapshot, group_id: str) -> Verdict:
        verdict = await self.evaluator.evaluate(snapshot, group_id, allow_missing_data=False)
        override = self.watchlist.blocking_verdict(snapshot.id)
        if override is not None:
            logger.warning("[GATEKEEPER] Blocking watched user %s (%s)", snapshot.display_name, snapshot.id)
            return override
        return verdict

    def _broadcast_violation(self, group_id: str, user_id: str, display_name: str, verdict: Verdict) -> None:
        self.event_bus.broadcast(CHANNEL_VIOLATION, {
            "displayName": display_name,
            "userId": user_id,
            "action": verdict.action.value,
            "reason": verdict.reason or "Violated AutoMod Rule",
            "ruleName": verdict.rule_name,
            "ruleId": verdict.rule_id,
            "detectedGroupId": group_id,
        })

    # --------------------------
    # Join requests
    # --------------------------
    async def process_join_request(
        self,
        group_id: str,
        user_id: str,
        display_name: str,
        user_details: Optional[Mapping[str, Any]] = None,
    ) -> JoinRequestResult:
        """Process one pending join request. Never raises."""
        if not self.authorization.is_group_allowed(group_id):
            return JoinRequestResult.skipped("Unauthorized group")

        key = gatekeeper_key(group_id, user_id)
        if key in self.processed_requests:
            logger.debug("[GATEKEEPER] Request from %s already processed, skipping", user_id)
            return JoinRequestResult.skipped("Already processed")

        if not self.group_configs.get_group_config(group_id).enabled_rules():
            logger.debug("[GATEKEEPER] No enabled rules for group %s, skipping", group_id)
            return JoinRequestResult.skipped("No enabled rules")

        self.processed_requests.add(key)

        try:
            snapshot = await self._snapshot(user_id, display_name, user_details)
            verdict = await self._decide(snapshot, group_id)
            if verdict.is_allowed:
                return await self._accept(group_id, user_id, display_name)
            return await self._handle_violation(group_id, user_id, display_name, verdict)
        except asyncio.CancelledError:
            raise
        except AuthError:
            # an auth failure leaves the request pending
            self.processed_requests.discard(key)
            logger.error("[GATEKEEPER] Not authenticated while processing %s", user_id)
            return JoinRequestResult.skipped("Not authenticated", auth_failed=True)
        except Exception:
            logger.exception("[GATEKEEPER] Error processing join request for %s", display_name)
            return JoinRequestResult.skipped("Processing error")

    async def _accept(self, group_id: str, user_id: str, display_name: str) -> JoinRequestResult:
        try:
            (await self.api.respond_join_request(group_id, user_id, accept=True)).raise_for_action("accept")
        except ActionFailed as e:
            logger.error("[GATEKEEPER] Failed to accept %s: %s", display_name, e)
            return JoinRequestResult.skipped("API error on accept")

        logger.info("[GATEKEEPER] Auto-accepted %s into group %s", display_name, group_id)
        self.audit.record(AuditEntry(
            user=display_name,
            user_id=user_id,
            group_id=group_id,
            action="AUTO_ACCEPT",
            reason="Passed all AutoMod rules",
            module=AuditModule.GATEKEEPER,
            skip_broadcast=True,
        ))
        return JoinRequestResult(processed=True, outcome=JoinRequestOutcome.ACCEPTED)

    async def _handle_violation(
        self, group_id: str, user_id: str, display_name: str, verdict: Verdict
    ) -> JoinRequestResult:
        reason = verdict.reason or "Failed AutoMod filter"
        self._broadcast_violation(group_id, user_id, display_name, verdict)

        if verdict.action is ActionType.NOTIFY_ONLY:
            logger.info("[GATEKEEPER] Notify-only match for %s: %s", display_name, reason)
            await self.webhooks.send_event(group_id, "NOTIFY_ONLY", display_name, user_id, reason, verdict.rule_name)
            return JoinRequestResult.skipped("Notify only", processed=True)

        if not self.group_configs.get_group_config(group_id).enable_auto_reject:
            logger.info("[GATEKEEPER] Auto-reject disabled, not rejecting %s: %s", display_name, reason)
            await self.webhooks.send_event(group_id, "SKIPPED", display_name, user_id, reason, verdict.rule_name)
            return JoinRequestResult.skipped("Auto-reject disabled", processed=True)

        try:
            (await self.api.respond_join_request(group_id, user_id, accept=False)).raise_for_action("reject")
        except ActionFailed as e:
            logger.error("[GATEKEEPER] Failed to reject %s: %s", display_name, e)
            return JoinRequestResult.skipped("API error on reject")

        logger.info("[GATEKEEPER] Auto-rejected %s from group %s: %s", display_name, group_id, reason)
        self.audit.record(AuditEntry(
            user=display_name,
            user_id=user_id,
            group_id=group_id,
            action=verdict.action.value,
            reason=reason,
            module=AuditModule.GATEKEEPER,
            details={"evaluation": verdict.to_dict(), "ruleName": verdict.rule_name},
            skip_broadcast=True,
        ))
        await self.webhooks.send_event(group_id, "REJECT", display_name, user_id, reason, verdict.rule_name)
        return JoinRequestResult(processed=True, outcome=JoinRequestOutcome.REJECTED, reason=reason)

    async def process_all_pending_requests(self) -> PendingScanSummary:
        """One Gatekeeper pass over every authorized group. Stops early on an auth failure."""
        summary = PendingScanSummary()

        for group_id in self.authorization.get_allowed_group_ids():
            response = await self.api.get_group_requests(group_id, REQUEST_PAGE_SIZE, 0)
            if response.not_authenticated:
                logger.error("[GATEKEEPER] Not authenticated, stopping pass")
                return summary
            if not response.success:
                logger.error("[GATEKEEPER] Error fetching requests for group %s: %s", group_id, response.error)
                continue

            for request in response.data or []:
                user = request.get("user") if isinstance(request.get("user"), dict) else {}
                user_id = request.get("userId") or user.get("id")
                if not user_id:
                    summary.skipped += 1
                    continue

                result = await self.process_join_request(group_id, user_id, user.get("displayName") or "Unknown", user)
                summary.count(result)
                if result.auth_failed:
                    logger.error("[GATEKEEPER] Not authenticated, stopping pass")
                    return summary
                if self.request_delay:
                    await asyncio.sleep(self.request_delay)

        if summary.total_processed or summary.skipped:
            logger.info(
                "[GATEKEEPER] Pass complete: %d processed (%d accepted, %d rejected), %d skipped",
                summary.total_processed, summary.accepted, summary.rejected, summary.skipped,
            )
        return summary

    async def process_group_join_notification(self, notification: Mapping[str, Any]) -> Optional[JoinRequestResult]:
        """Handle a real-time join notification. Returns None when it is not a join for an authorized group."""
        if notification.get("type") not in JOIN_NOTIFICATION_TYPES:
            return None

        details = notification.get("details") or {}
        group_id = details.get("groupId")
        user_id = notification.get("senderUserId")
        display_name = notification.get("senderUsername") or "Unknown"
        if not group_id or not user_id or not self.authorization.is_group_allowed(group_id):
            return None

        logger.info("[GATEKEEPER] Processing real-time join notification: %s for group %s", display_name, group_id)
        return await self.process_join_request(group_id, user_id, display_name)

    def reset_cache(self) -> None:
        self.processed_requests.clear()
        self.processed_bans.clear()
        logger.info("[GATEKEEPER] Request cache cleared")

    # --------------------------
    # Member joins
    # --------------------------
    async def process_member_join(self, group_id: str, user_id: str, display_name: str) -> Verdict:
        """Evaluate a new member and ban them on an AUTO_BLOCK match when auto-ban is enabled. Never raises."""
        if not self.authorization.is_group_allowed(group_id):
            return Verdict.allow()

        key = autoban_key(group_id, user_id)
        if key in self.processed_bans:
            return Verdict.allow()
        self.processed_bans.add(key)

        try:
            snapshot = await self._snapshot(user_id, display_name, None)
            verdict = await self._decide(snapshot, group_id)
            if verdict.is_allowed:
                return verdict

            reason = verdict.reason or "Violated AutoMod Rule"
            self._broadcast_violation(group_id, user_id, display_name, verdict)

            config = self.group_configs.get_group_config(group_id)
            if verdict.action is not ActionType.AUTO_BLOCK or not config.enable_auto_ban:
                await self.webhooks.send_event(group_id, "NOTIFY_ONLY", display_name, user_id, reason, verdict.rule_name)
                return verdict

            try:
                (await self.api.ban_group_member(group_id, user_id)).raise_for_action("ban")
            except ActionFailed as e:
                logger.error("[GATEKEEPER] Failed to ban %s from group %s: %s", display_name, group_id, e)
                return verdict

            logger.info("[GATEKEEPER] Auto-banned %s from group %s: %s", display_name, group_id, reason)
            self.audit.record(AuditEntry(
                user=display_name,
                user_id=user_id,
                group_id=group_id,
                action=ActionType.AUTO_BLOCK.value,
                reason=reason,
                module=AuditModule.MEMBER_GUARD,
                details={"evaluation": verdict.to_dict(), "ruleName": verdict.rule_name},
            ))
            await self.webhooks.send_event(group_id, "AUTO_BLOCK", display_name, user_id, reason, verdict.rule_name)
            return verdict
        except asyncio.CancelledError:
            raise
        except AuthError:
            self.processed_bans.discard(key)
            logger.error("[GATEKEEPER] Not authenticated while processing member join of %s", user_id)
            return Verdict.allow()
        except Exception:
            logger.exception("[GATEKEEPER] Error processing member join for %s", display_name)
            return Verdict.allow()
