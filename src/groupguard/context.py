"""
Application context.

Every cache, dedup set and service is constructed here once and injected into
the components that use it. Nothing in the engine is a module-level
singleton, so tests (or a second group-guard instance) can build an isolated
context.

Lifecycle:
    context = AutoModContext.build(app_config, client)
    await context.start()        # opens the database and starts the loops
    ...
    await context.shutdown()
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from groupguard.automod.dedup import BoundedKeySet, ExpiringKeySet
from groupguard.automod.evaluator import AutoModEvaluator
from groupguard.automod.rule_parser import RuleParser
from groupguard.automod.watchlist import WatchlistService
from groupguard.configuration.app_configuration import AppConfig
from groupguard.configuration.config_store import JsonConfigStore
from groupguard.configuration.group_config import GroupConfigManager
from groupguard.database.database import Database
from groupguard.enforcement.gatekeeper import Gatekeeper
from groupguard.enforcement.instance_guard import InstanceGuardHistory, InstanceGuardService
from groupguard.enforcement.member_scanner import MemberScanner
from groupguard.enforcement.permission_guard import PermissionGuardService
from groupguard.network.moderation_api import ModerationApi, VRChatClient
from groupguard.network.request_executor import RequestExecutor
from groupguard.network.user_resolver import UserResolver
from groupguard.scheduler.periodic_scheduler import PeriodicScheduler
from groupguard.services.audit_service import AuditService
from groupguard.services.automod_service import AutoModService
from groupguard.services.event_bus import EventBus
from groupguard.services.group_authorization import GroupAuthorizationService
from groupguard.services.webhook_service import DiscordWebhookService
from groupguard.util.logger import get_logger
from groupguard.util.ttl_cache import TtlCache

logger = get_logger("context")


class AutoModContext:
    """Owns every shared component of one running group-guard instance."""

    def __init__(self, config: AppConfig, client: VRChatClient, *, request_executor: Optional[RequestExecutor] = None) -> None:
        self.config = config
        self.client = client

        # Storage
        self.config_store = JsonConfigStore(config.config_store_path)
        self.watchlist_store = JsonConfigStore(config.watchlist_path)
        self.database = Database(config.database_path)
        self.group_configs = GroupConfigManager(self.config_store)
        self.watchlist = WatchlistService(self.watchlist_store)

        # Network
        self.executor = request_executor or RequestExecutor(config.network_max_retries, config.network_base_delay)
        self.api = ModerationApi(client, self.executor)
        self.resolver = UserResolver(self.api)

        # Shared state
        self.rule_parser = RuleParser(config.rule_cache_ttl, config.rule_cache_max_entries)
        self.processed_requests = BoundedKeySet(config.processed_cache_max_size, "processed join requests")
        self.processed_bans = BoundedKeySet(config.processed_cache_max_size, "processed member joins")
        self.known_instances = BoundedKeySet(config.processed_cache_max_size, "known instances")
        self.processed_audit_logs = BoundedKeySet(config.processed_cache_max_size, "processed audit logs")
        self.closed_instances = ExpiringKeySet(config.closed_cache_ttl)
        self.role_cache: TtlCache[str, List[Dict[str, Any]]] = TtlCache(config.role_cache_ttl, 100)

        # Services
        self.event_bus = EventBus()
        self.audit = AuditService(self.database, self.event_bus)
        self.webhooks = DiscordWebhookService(config.webhooks)
        self.authorization = GroupAuthorizationService(self.config_store, self.api)
        self.evaluator = AutoModEvaluator(self.group_configs, self.rule_parser, self.resolver)
        self.instance_history = InstanceGuardHistory(self.event_bus, config.instance_history_size)

        # Enforcement
        self.gatekeeper = Gatekeeper(
            api=self.api,
            resolver=self.resolver,
            evaluator=self.evaluator,
            group_configs=self.group_configs,
            watchlist=self.watchlist,
            authorization=self.authorization,
            audit=self.audit,
            webhooks=self.webhooks,
            event_bus=self.event_bus,
            processed_requests=self.processed_requests,
            processed_bans=self.processed_bans,
            request_delay=config.gatekeeper_request_delay,
        )
        self.instance_guard = InstanceGuardService(
            api=self.api,
            resolver=self.resolver,
            group_configs=self.group_configs,
            rule_parser=self.rule_parser,
            authorization=self.authorization,
            audit=self.audit,
            history=self.instance_history,
            closed_instances=self.closed_instances,
            known_instances=self.known_instances,
            action_delay=config.instance_guard_action_delay,
        )
        self.permission_guard = PermissionGuardService(
            api=self.api,
            group_configs=self.group_configs,
            rule_parser=self.rule_parser,
            authorization=self.authorization,
            audit=self.audit,
            history=self.instance_history,
            processed_logs=self.processed_audit_logs,
            closed_instances=self.closed_instances,
            role_cache=self.role_cache,
            audit_log_window=config.audit_log_window,
        )
        self.member_scanner = MemberScanner(self.api, self.evaluator, request_delay=config.member_scan_delay)
        self.automod = AutoModService(
            group_configs=self.group_configs,
            rule_parser=self.rule_parser,
            evaluator=self.evaluator,
            gatekeeper=self.gatekeeper,
            member_scanner=self.member_scanner,
            audit=self.audit,
            instance_history=self.instance_history,
        )

        self.schedulers: List[PeriodicScheduler] = [
            PeriodicScheduler("GATEKEEPER", self.gatekeeper.process_all_pending_requests, lambda: config.gatekeeper_interval),
            PeriodicScheduler("INSTANCE GUARD", self.instance_guard.process_instance_guard, lambda: config.instance_guard_interval),
            PeriodicScheduler("PERMISSION GUARD", self.permission_guard.check_permissions, lambda: config.permission_guard_interval),
        ]

    @classmethod
    def build(cls, config: AppConfig, client: VRChatClient, **kwargs: Any) -> "AutoModContext":
        return cls(config, client, **kwargs)

    async def start(self, *, run_loops: bool = True) -> None:
        if not await self.database.initialize():
            logger.warning("[CONTEXT] Audit database unavailable, actions will not be persisted")
        if run_loops:
            for scheduler in self.schedulers:
                scheduler.start()
        logger.info("[CONTEXT] GroupGuard started for %d authorized group(s)", len(self.authorization.get_allowed_group_ids()))

    async def shutdown(self) -> None:
        for scheduler in self.schedulers:
            await scheduler.shutdown()
        await self.event_bus.drain()
        await self.audit.flush()
        await self.webhooks.close()
        await self.database.shutdown()
        logger.info("[CONTEXT] GroupGuard shut down")
