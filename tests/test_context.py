"""Wiring test for the application context."""

import json

import pytest

from groupguard.configuration.app_configuration import AppConfig
from groupguard.context import AutoModContext
from groupguard.datatypes.automod_datatypes import RuleType

GROUP_ID = "grp_test"


@pytest.fixture
def app_config(tmp_path):
    path = tmp_path / "app_config.yml"
    path.write_text(
        "storage:\n"
        f"  config_path: {tmp_path / 'automod-config.json'}\n"
        f"  watchlist_path: {tmp_path / 'watchlist-data.json'}\n"
        f"  database_path: {tmp_path / 'automod.db'}\n"
        "gatekeeper:\n"
        "  request_delay_seconds: 0\n",
        encoding="utf-8",
    )
    return AppConfig(path)


@pytest.mark.asyncio
async def test_context_runs_a_gatekeeper_pass(app_config, client, executor):
    context = AutoModContext.build(app_config, client, request_executor=executor)
    await context.start(run_loops=False)
    try:
        assert context.database.initialized
        assert not any(scheduler.running for scheduler in context.schedulers)

        context.authorization.set_allowed_groups([GROUP_ID])
        context.automod.save_rule(GROUP_ID, {
            "name": "Scam",
            "type": RuleType.KEYWORD_BLOCK.value,
            "config": json.dumps({"keywords": ["scam"]}),
        })
        context.automod.set_auto_reject(GROUP_ID, True)
        client.requests[GROUP_ID] = [{
            "userId": "usr_bad",
            "user": {"id": "usr_bad", "displayName": "Scam Seller", "bio": "", "tags": []},
        }]

        summary = await context.automod.trigger_pending_request_scan()
        await context.audit.flush()

        assert summary.rejected == 1
        history = await context.automod.get_history(GROUP_ID)
        assert [entry.action for entry in history] == ["REJECT"]
    finally:
        await context.shutdown()

    assert not context.database.initialized


@pytest.mark.asyncio
async def test_start_and_shutdown_loops(app_config, client, executor):
    context = AutoModContext.build(app_config, client, request_executor=executor)
    await context.start()
    assert all(scheduler.running for scheduler in context.schedulers)

    await context.shutdown()

    assert not any(scheduler.running for scheduler in context.schedulers)
