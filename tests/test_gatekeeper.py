"""Tests for the Gatekeeper join-request processing and member-join auto-ban."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import discord
import pytest

from groupguard.automod.dedup import BoundedKeySet
from groupguard.datatypes.automod_datatypes import ActionType, RuleType
from groupguard.enforcement.gatekeeper import Gatekeeper, JoinRequestOutcome, gatekeeper_key
from groupguard.errors import ApiHttpError
from groupguard.services.event_bus import CHANNEL_VIOLATION

GROUP_ID = "grp_test"
SCAM_RULE = json.dumps({"keywords": ["scam"], "matchMode": "PARTIAL"})


@pytest.fixture
def gatekeeper(api, resolver, evaluator, group_configs, watchlist, authorization, audit, webhooks, event_bus):
    return Gatekeeper(
        api=api,
        resolver=resolver,
        evaluator=evaluator,
        group_configs=group_configs,
        watchlist=watchlist,
        authorization=authorization,
        audit=audit,
        webhooks=webhooks,
        event_bus=event_bus,
        processed_requests=BoundedKeySet(100),
        processed_bans=BoundedKeySet(100),
        request_delay=0,
    )


def pending(user_id: str, display_name: str, bio: str = "", tags=None) -> dict:
    return {
        "userId": user_id,
        "user": {"id": user_id, "displayName": display_name, "bio": bio, "tags": tags or []},
    }


@pytest.mark.asyncio
async def test_scam_bio_is_rejected_end_to_end(gatekeeper, client, add_rule, group_configs, audit, broadcasts):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, ActionType.REJECT, name="Scam Filter")
    group_configs.set_auto_reject(GROUP_ID, True)
    client.requests[GROUP_ID] = [pending("usr_bad", "Shady", bio="not a scam")]

    summary = await gatekeeper.process_all_pending_requests()
    await audit.flush()

    assert client.calls_to("respond_join_request") == [(GROUP_ID, "usr_bad", "reject")]
    assert summary.rejected == 1 and summary.accepted == 0

    history = await audit.get_history(GROUP_ID)
    assert len(history) == 1
    assert history[0].action == "REJECT"
    assert "scam" in history[0].reason
    assert history[0].details["ruleName"] == "Scam Filter"

    violations = [payload for channel, payload in broadcasts if channel == CHANNEL_VIOLATION]
    assert violations[0]["userId"] == "usr_bad"
    assert violations[0]["detectedGroupId"] == GROUP_ID


@pytest.mark.asyncio
async def test_clean_user_is_accepted_without_broadcast(gatekeeper, client, add_rule, audit, broadcasts):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    result = await gatekeeper.process_join_request(GROUP_ID, "usr_ok", "Nice", {"bio": "hello", "tags": []})
    await audit.flush()

    assert result.outcome is JoinRequestOutcome.ACCEPTED
    assert client.calls_to("respond_join_request") == [(GROUP_ID, "usr_ok", "accept")]
    history = await audit.get_history(GROUP_ID)
    assert [entry.action for entry in history] == ["AUTO_ACCEPT"]
    assert broadcasts == []


@pytest.mark.asyncio
async def test_duplicate_requests_act_at_most_once(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    details = {"bio": "scam", "tags": []}

    first, second = await asyncio.gather(
        gatekeeper.process_join_request(GROUP_ID, "usr_1", "Dup", details),
        gatekeeper.process_join_request(GROUP_ID, "usr_1", "Dup", details),
    )

    assert len(client.calls_to("respond_join_request")) == 1
    assert sorted([first.processed, second.processed]) == [False, True]
    assert gatekeeper_key(GROUP_ID, "usr_1") in gatekeeper.processed_requests


@pytest.mark.asyncio
async def test_auto_reject_disabled_only_notifies(gatekeeper, client, add_rule, webhooks):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    webhooks.send_event = AsyncMock(return_value=True)

    result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {"bio": "scam", "tags": []})

    assert result.processed and result.outcome is JoinRequestOutcome.SKIPPED
    assert result.reason == "Auto-reject disabled"
    assert client.calls_to("respond_join_request") == []
    webhooks.send_event.assert_awaited_once()
    assert webhooks.send_event.await_args.args[1] == "SKIPPED"


@pytest.mark.asyncio
async def test_notify_only_never_rejects(gatekeeper, client, add_rule, group_configs, webhooks):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, ActionType.NOTIFY_ONLY)
    group_configs.set_auto_reject(GROUP_ID, True)
    webhooks.send_event = AsyncMock(return_value=True)

    result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {"bio": "scam", "tags": []})

    assert result.reason == "Notify only"
    assert client.calls_to("respond_join_request") == []
    assert webhooks.send_event.await_args.args[1] == "NOTIFY_ONLY"


@pytest.mark.asyncio
async def test_watchlist_forces_reject(gatekeeper, client, add_rule, group_configs, watchlist, audit):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    watchlist.save_entity("usr_watched", display_name="Crasher", tags=["malicious"])

    result = await gatekeeper.process_join_request(GROUP_ID, "usr_watched", "Innocent", {"bio": "hi", "tags": []})
    await audit.flush()

    assert result.outcome is JoinRequestOutcome.REJECTED
    assert result.reason == "Watchlist: Crasher (Priority: 0)"


@pytest.mark.asyncio
async def test_missing_details_are_fetched(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Shady", "bio": "big scam", "tags": []}

    result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady")

    assert result.outcome is JoinRequestOutcome.REJECTED
    assert client.calls_to("get_user") == [("usr_1",)]


@pytest.mark.asyncio
async def test_unauthorized_group_is_skipped(gatekeeper, client, add_rule):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, group_id="grp_other")
    result = await gatekeeper.process_join_request("grp_other", "usr_1", "Someone", {"bio": "", "tags": []})
    assert result.reason == "Unauthorized group"
    assert client.calls == []


@pytest.mark.asyncio
async def test_no_enabled_rules_skips_without_marking(gatekeeper, client):
    result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Someone", {"bio": "", "tags": []})
    assert result.reason == "No enabled rules"
    assert gatekeeper_key(GROUP_ID, "usr_1") not in gatekeeper.processed_requests


@pytest.mark.asyncio
async def test_pass_stops_on_auth_failure(gatekeeper, client, add_rule, authorization):
    authorization.set_allowed_groups([GROUP_ID, "grp_second"])
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    client.fail("get_group_requests", ApiHttpError(401, "Missing Credentials"))

    summary = await gatekeeper.process_all_pending_requests()

    assert summary.total_processed == 0
    assert client.calls_to("get_group_requests") == [(GROUP_ID, 100, 0)]


@pytest.mark.asyncio
async def test_failed_reject_is_not_retried(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    client.fail("respond_join_request", ApiHttpError(500, "Server error"))

    result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {"bio": "scam", "tags": []})
    again = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {"bio": "scam", "tags": []})

    assert result.reason == "API error on reject"
    assert again.reason == "Already processed"
    assert len(client.calls_to("respond_join_request")) == 1


@pytest.mark.asyncio
async def test_auth_failure_on_lookup_leaves_request_pending(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Shady", "bio": "scam", "tags": []}
    client.fail("get_user", ApiHttpError(401, "Missing Credentials"))

    first = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {})

    assert first.auth_failed
    assert gatekeeper_key(GROUP_ID, "usr_1") not in gatekeeper.processed_requests
    assert client.calls_to("respond_join_request") == []

    second = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {})

    assert second.outcome is JoinRequestOutcome.REJECTED
    assert len(client.calls_to("respond_join_request")) == 1


@pytest.mark.asyncio
async def test_auth_failure_on_reject_leaves_request_pending(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    client.fail("respond_join_request", ApiHttpError(401, "Missing Credentials"))
    details = {"bio": "scam", "tags": []}

    first = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", details)
    second = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", details)

    assert first.auth_failed
    assert not first.processed
    assert second.outcome is JoinRequestOutcome.REJECTED
    assert len(client.calls_to("respond_join_request")) == 2


@pytest.mark.asyncio
async def test_auth_failure_on_ban_allows_retry(gatekeeper, client, add_rule, group_configs):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, ActionType.AUTO_BLOCK)
    group_configs.set_auto_ban(GROUP_ID, True)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Shady", "bio": "scam", "tags": []}
    client.fail("ban_group_member", ApiHttpError(401, "Missing Credentials"))

    first = await gatekeeper.process_member_join(GROUP_ID, "usr_1", "Shady")
    second = await gatekeeper.process_member_join(GROUP_ID, "usr_1", "Shady")

    assert first.is_allowed
    assert second.action is ActionType.AUTO_BLOCK
    assert len(client.calls_to("ban_group_member")) == 2


@pytest.mark.asyncio
async def test_join_notification(gatekeeper, client, add_rule):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Nice", "bio": "", "tags": []}

    ignored = await gatekeeper.process_group_join_notification({"type": "friendRequest"})
    result = await gatekeeper.process_group_join_notification({
        "type": "group.queueReady",
        "senderUserId": "usr_1",
        "senderUsername": "Nice",
        "details": {"groupId": GROUP_ID},
    })

    assert ignored is None
    assert result.outcome is JoinRequestOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_member_join_auto_ban(gatekeeper, client, add_rule, group_configs, audit, broadcasts):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, ActionType.AUTO_BLOCK)
    group_configs.set_auto_ban(GROUP_ID, True)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Shady", "bio": "scam", "tags": []}

    verdict = await gatekeeper.process_member_join(GROUP_ID, "usr_1", "Shady")
    repeat = await gatekeeper.process_member_join(GROUP_ID, "usr_1", "Shady")
    await audit.flush()

    assert verdict.action is ActionType.AUTO_BLOCK
    assert repeat.is_allowed
    assert client.calls_to("ban_group_member") == [(GROUP_ID, "usr_1")]
    history = await audit.get_history(GROUP_ID)
    assert history[0].module == "MemberGuard"


@pytest.mark.asyncio
async def test_member_join_without_auto_ban_only_notifies(gatekeeper, client, add_rule):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE, ActionType.AUTO_BLOCK)
    client.users["usr_1"] = {"id": "usr_1", "displayName": "Shady", "bio": "scam", "tags": []}

    verdict = await gatekeeper.process_member_join(GROUP_ID, "usr_1", "Shady")

    assert verdict.action is ActionType.AUTO_BLOCK
    assert client.calls_to("ban_group_member") == []


@pytest.mark.asyncio
async def test_reset_cache_allows_reprocessing(gatekeeper, client, add_rule):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    details = {"bio": "", "tags": []}
    await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Nice", details)
    gatekeeper.reset_cache()
    await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Nice", details)
    assert len(client.calls_to("respond_join_request")) == 2


@pytest.mark.asyncio
async def test_webhook_timeout_does_not_undo_reject(gatekeeper, client, add_rule, group_configs, webhooks, audit):
    add_rule(RuleType.KEYWORD_BLOCK.value, SCAM_RULE)
    group_configs.set_auto_reject(GROUP_ID, True)
    webhooks.set_webhook_url(GROUP_ID, "https://discord.com/api/webhooks/1/token")
    webhook = MagicMock()
    webhook.send = AsyncMock(side_effect=asyncio.TimeoutError())

    with patch.object(discord.Webhook, "from_url", return_value=webhook):
        result = await gatekeeper.process_join_request(GROUP_ID, "usr_1", "Shady", {"bio": "scam", "tags": []})
    await webhooks.close()
    await audit.flush()

    assert result.outcome is JoinRequestOutcome.REJECTED
    assert result.processed
    assert webhook.send.await_count == 1
    assert [entry.action for entry in await audit.get_history(GROUP_ID)] == ["REJECT"]
