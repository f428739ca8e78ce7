"""
Pytest configuration and fixtures for GroupGuard tests.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from groupguard.automod.dedup import BoundedKeySet, ExpiringKeySet  # noqa: E402
from groupguard.automod.evaluator import AutoModEvaluator  # noqa: E402
from groupguard.automod.rule_parser import RuleParser  # noqa: E402
from groupguard.automod.watchlist import WatchlistService  # noqa: E402
from groupguard.configuration.config_store import JsonConfigStore  # noqa: E402
from groupguard.configuration.group_config import GroupConfigManager  # noqa: E402
from groupguard.database.database import Database  # noqa: E402
from groupguard.datatypes.automod_datatypes import ActionType, Rule  # noqa: E402
from groupguard.enforcement.instance_guard import InstanceGuardHistory  # noqa: E402
from groupguard.errors import ApiHttpError  # noqa: E402
from groupguard.network.moderation_api import ModerationApi  # noqa: E402
from groupguard.network.request_executor import RequestExecutor  # noqa: E402
from groupguard.network.user_resolver import UserResolver  # noqa: E402
from groupguard.services.audit_service import AuditService  # noqa: E402
from groupguard.services.event_bus import EventBus  # noqa: E402
from groupguard.services.group_authorization import GroupAuthorizationService  # noqa: E402
from groupguard.services.webhook_service import DiscordWebhookService  # noqa: E402

GROUP_ID = "grp_test"


class FakeVRChatClient:
    """In-memory VRChat client that records every call.

    ``fail(method, error, times)`` makes the next ``times`` calls of ``method``
    raise ``error`` before falling back to the stored data.
    """

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.user_groups: Dict[str, List[Dict[str, Any]]] = {}
        self.members: Dict[str, List[Dict[str, Any]]] = {}
        self.member_details: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.requests: Dict[str, List[Dict[str, Any]]] = {}
        self.roles: Dict[str, List[Dict[str, Any]]] = {}
        self.bans: Dict[str, List[Dict[str, Any]]] = {}
        self.audit_logs: Dict[str, List[Dict[str, Any]]] = {}
        self.instances: Dict[str, List[Dict[str, Any]]] = {}
        self.instance_details: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._failures: Dict[str, List[Exception]] = {}

    def fail(self, method: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([error] * times)

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    @staticmethod
    def _page(items: List[Dict[str, Any]], n: int, offset: int) -> List[Dict[str, Any]]:
        return list(items[offset:offset + n])

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        self._record("get_user", user_id)
        if user_id not in self.users:
            raise ApiHttpError(404, "User not found")
        return dict(self.users[user_id])

    async def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]:
        self._record("get_user_groups", user_id)
        return list(self.user_groups.get(user_id, []))

    async def get_group_members(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]:
        self._record("get_group_members", group_id, n, offset)
        return self._page(self.members.get(group_id, []), n, offset)

    async def get_group_member(self, group_id: str, user_id: str) -> Dict[str, Any]:
        self._record("get_group_member", group_id, user_id)
        if (group_id, user_id) not in self.member_details:
            raise ApiHttpError(404, "Member not found")
        return dict(self.member_details[(group_id, user_id)])

    async def get_group_requests(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]:
        self._record("get_group_requests", group_id, n, offset)
        return self._page(self.requests.get(group_id, []), n, offset)

    async def get_group_roles(self, group_id: str) -> List[Dict[str, Any]]:
        self._record("get_group_roles", group_id)
        return list(self.roles.get(group_id, []))

    async def get_group_bans(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]:
        self._record("get_group_bans", group_id, n, offset)
        return self._page(self.bans.get(group_id, []), n, offset)

    async def get_group_audit_logs(self, group_id: str, n: int, offset: int) -> Any:
        self._record("get_group_audit_logs", group_id, n, offset)
        return {"results": self._page(self.audit_logs.get(group_id, []), n, offset)}

    async def respond_join_request(self, group_id: str, user_id: str, action: str) -> Any:
        self._record("respond_join_request", group_id, user_id, action)
        return {}

    async def ban_group_member(self, group_id: str, user_id: str) -> Any:
        self._record("ban_group_member", group_id, user_id)
        return {}

    async def kick_group_member(self, group_id: str, user_id: str) -> Any:
        self._record("kick_group_member", group_id, user_id)
        return {}

    async def close_instance(self, world_id: str, instance_id: str) -> Any:
        self._record("close_instance", world_id, instance_id)
        return {}

    async def get_group_instances(self, group_id: str) -> List[Dict[str, Any]]:
        self._record("get_group_instances", group_id)
        return list(self.instances.get(group_id, []))

    async def get_instance(self, world_id: str, instance_id: str) -> Dict[str, Any]:
        self._record("get_instance", world_id, instance_id)
        if (world_id, instance_id) not in self.instance_details:
            raise ApiHttpError(404, "Instance not found")
        return dict(self.instance_details[(world_id, instance_id)])


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def client() -> FakeVRChatClient:
    return FakeVRChatClient()


@pytest.fixture
def executor() -> RequestExecutor:
    return RequestExecutor(max_retries=2, base_delay=0, sleep=_no_sleep)


@pytest.fixture
def api(client: FakeVRChatClient, executor: RequestExecutor) -> ModerationApi:
    return ModerationApi(client, executor)


@pytest.fixture
def config_store(tmp_path: Path) -> JsonConfigStore:
    return JsonConfigStore(tmp_path / "automod-config.json")


@pytest.fixture
def group_configs(config_store: JsonConfigStore) -> GroupConfigManager:
    return GroupConfigManager(config_store)


@pytest.fixture
def rule_parser() -> RuleParser:
    return RuleParser()


@pytest.fixture
def resolver(api: ModerationApi) -> UserResolver:
    return UserResolver(api)


@pytest.fixture
def evaluator(group_configs: GroupConfigManager, rule_parser: RuleParser, resolver: UserResolver) -> AutoModEvaluator:
    return AutoModEvaluator(group_configs, rule_parser, resolver)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def broadcasts(event_bus: EventBus) -> List[Tuple[str, Any]]:
    """Every payload broadcast on the bus, in order."""
    received: List[Tuple[str, Any]] = []
    event_bus.subscribe("*", lambda channel, payload: received.append((channel, payload)))
    return received


@pytest_asyncio.fixture
async def database(tmp_path: Path):
    db = Database(tmp_path / "automod.db")
    assert await db.initialize()
    yield db
    await db.shutdown()


@pytest.fixture
def audit(database: Database, event_bus: EventBus) -> AuditService:
    return AuditService(database, event_bus)


@pytest.fixture
def authorization(config_store: JsonConfigStore, api: ModerationApi) -> GroupAuthorizationService:
    service = GroupAuthorizationService(config_store, api, check_delay=0)
    service.set_allowed_groups([GROUP_ID])
    return service


@pytest.fixture
def watchlist(tmp_path: Path) -> WatchlistService:
    return WatchlistService(JsonConfigStore(tmp_path / "watchlist-data.json"))


@pytest.fixture
def webhooks() -> DiscordWebhookService:
    return DiscordWebhookService()


@pytest.fixture
def history(event_bus: EventBus) -> InstanceGuardHistory:
    return InstanceGuardHistory(event_bus)


@pytest.fixture
def closed_instances() -> ExpiringKeySet:
    return ExpiringKeySet(1800)


@pytest.fixture
def known_instances() -> BoundedKeySet:
    return BoundedKeySet(1000, "known instances")


@pytest.fixture
def add_rule(group_configs: GroupConfigManager):
    """Save a rule for a group and return it with its assigned id."""

    def _add_rule(
        rule_type: str,
        config: str = "",
        action: ActionType = ActionType.REJECT,
        *,
        group_id: str = GROUP_ID,
        name: Optional[str] = None,
        enabled: bool = True,
        whitelisted_user_ids: Optional[List[str]] = None,
        whitelisted_group_ids: Optional[List[str]] = None,
    ) -> Rule:
        rule = Rule(
            name=name or rule_type.replace("_", " ").title(),
            enabled=enabled,
            rule_type=rule_type,
            config=config,
            action_type=action,
            whitelisted_user_ids=list(whitelisted_user_ids or []),
            whitelisted_group_ids=list(whitelisted_group_ids or []),
        )
        return group_configs.save_rule(group_id, rule)

    return _add_rule
