"""
Moderation API surface used by the enforcement loops.

:class:`VRChatClient` describes the raw external client: plain coroutines that
return decoded JSON and raise :class:`~groupguard.errors.ApiHttpError` on
non-success responses. :class:`ModerationApi` wraps every call in the
:class:`RequestExecutor` so callers always receive an :class:`ApiResult`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Protocol, runtime_checkable

from groupguard.datatypes.api_datatypes import ApiResult
from groupguard.network.request_executor import RequestExecutor

DEFAULT_PAGE_SIZE = 50


@runtime_checkable
class VRChatClient(Protocol):
    """Raw VRChat API client supplied by the host application."""

    async def get_user(self, user_id: str) -> Dict[str, Any]: ...

    async def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]: ...

    async def get_group_members(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]: ...

    async def get_group_member(self, group_id: str, user_id: str) -> Dict[str, Any]: ...

    async def get_group_requests(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]: ...

    async def get_group_roles(self, group_id: str) -> List[Dict[str, Any]]: ...

    async def get_group_bans(self, group_id: str, n: int, offset: int) -> List[Dict[str, Any]]: ...

    async def get_group_audit_logs(self, group_id: str, n: int, offset: int) -> Any: ...

    async def respond_join_request(self, group_id: str, user_id: str, action: str) -> Any: ...

    async def ban_group_member(self, group_id: str, user_id: str) -> Any: ...

    async def kick_group_member(self, group_id: str, user_id: str) -> Any: ...

    async def close_instance(self, world_id: str, instance_id: str) -> Any: ...

    async def get_group_instances(self, group_id: str) -> List[Dict[str, Any]]: ...

    async def get_instance(self, world_id: str, instance_id: str) -> Dict[str, Any]: ...


def _as_list(data: Any, *keys: str) -> List[Dict[str, Any]]:
    """Unwrap list payloads that the API sometimes nests under a key."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


class ModerationApi:
    """Executor-backed moderation calls. None of these methods raise for API failures."""

    def __init__(self, client: VRChatClient, executor: RequestExecutor) -> None:
        self.client = client
        self.executor = executor

    # -------- Users --------
    async def get_user(self, user_id: str) -> ApiResult[Dict[str, Any]]:
        return await self.executor.execute(lambda: self.client.get_user(user_id), f"get_user {user_id}")

    async def get_user_groups(self, user_id: str) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(lambda: self.client.get_user_groups(user_id), f"get_user_groups {user_id}")
        if result.success:
            result.data = _as_list(result.data, "groups")
        return result

    # -------- Groups --------
    async def get_group_members(
        self, group_id: str, n: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(
            lambda: self.client.get_group_members(group_id, n, offset), f"get_group_members {group_id}"
        )
        if result.success:
            result.data = _as_list(result.data, "members")
        return result

    async def get_group_member(self, group_id: str, user_id: str) -> ApiResult[Dict[str, Any]]:
        return await self.executor.execute(
            lambda: self.client.get_group_member(group_id, user_id), f"get_group_member {group_id}/{user_id}"
        )

    async def get_group_requests(
        self, group_id: str, n: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(
            lambda: self.client.get_group_requests(group_id, n, offset), f"get_group_requests {group_id}"
        )
        if result.success:
            result.data = _as_list(result.data, "requests")
        return result

    async def get_group_roles(self, group_id: str) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(lambda: self.client.get_group_roles(group_id), f"get_group_roles {group_id}")
        if result.success:
            result.data = _as_list(result.data, "roles")
        return result

    async def get_group_bans(
        self, group_id: str, n: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(
            lambda: self.client.get_group_bans(group_id, n, offset), f"get_group_bans {group_id}"
        )
        if result.success:
            result.data = _as_list(result.data, "bans")
        return result

    async def get_group_audit_logs(
        self, group_id: str, n: int = 10, offset: int = 0
    ) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(
            lambda: self.client.get_group_audit_logs(group_id, n, offset), f"get_group_audit_logs {group_id}"
        )
        if result.success:
            result.data = _as_list(result.data, "results")
        return result

    async def get_group_instances(self, group_id: str) -> ApiResult[List[Dict[str, Any]]]:
        result = await self.executor.execute(
            lambda: self.client.get_group_instances(group_id), f"get_group_instances {group_id}"
        )
        if result.success:
            result.data = _as_list(result.data, "instances")
        return result

    async def get_instance(self, world_id: str, instance_id: str) -> ApiResult[Dict[str, Any]]:
        return await self.executor.execute(
            lambda: self.client.get_instance(world_id, instance_id), f"get_instance {world_id}:{instance_id}"
        )

    # -------- Actions --------
    async def respond_join_request(self, group_id: str, user_id: str, accept: bool) -> ApiResult[Any]:
        action = "accept" if accept else "reject"
        return await self.executor.execute(
            lambda: self.client.respond_join_request(group_id, user_id, action),
            f"{action} join request {group_id}/{user_id}",
        )

    async def ban_group_member(self, group_id: str, user_id: str) -> ApiResult[Any]:
        return await self.executor.execute(
            lambda: self.client.ban_group_member(group_id, user_id), f"ban {group_id}/{user_id}"
        )

    async def kick_group_member(self, group_id: str, user_id: str) -> ApiResult[Any]:
        return await self.executor.execute(
            lambda: self.client.kick_group_member(group_id, user_id), f"kick {group_id}/{user_id}"
        )

    async def close_instance(self, world_id: str, instance_id: str) -> ApiResult[Any]:
        return await self.executor.execute(
            lambda: self.client.close_instance(world_id, instance_id), f"close_instance {world_id}:{instance_id}"
        )
