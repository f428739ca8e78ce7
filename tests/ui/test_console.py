"""Tests for the interactive console command dispatcher."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from groupguard.datatypes.automod_datatypes import ActionType, Rule, Verdict
from groupguard.enforcement.gatekeeper import PendingScanSummary
from groupguard.enforcement.member_scanner import MemberScanResult, ScanStatus
from groupguard.ui import console
from groupguard.ui.console import ConsoleControl, handle_console_command


@pytest.fixture
def printed(monkeypatch):
    """Capture every console_print message."""
    messages = []
    monkeypatch.setattr(console, "console_print", lambda message, style="": messages.append(message))
    return messages


@pytest.fixture
def context():
    context = MagicMock()
    context.automod.trigger_pending_request_scan = AsyncMock(
        return_value=PendingScanSummary(total_processed=3, accepted=2, rejected=1, skipped=4)
    )
    context.automod.scan_group_members = AsyncMock(return_value=[
        MemberScanResult("usr_1", "Fine", ScanStatus.SAFE, Verdict.allow()),
        MemberScanResult("usr_2", "Scammer", ScanStatus.VIOLATION, Verdict(ActionType.REJECT, "Keyword: \"scam\"")),
    ])
    return context


@pytest.mark.asyncio
async def test_unknown_command(printed):
    await handle_console_command("frobnicate", ConsoleControl())
    assert printed == ["Unknown command 'frobnicate'. Type 'help' for available commands."]


@pytest.mark.asyncio
async def test_blank_line_is_ignored(printed):
    await handle_console_command("   ", ConsoleControl())
    assert printed == []


@pytest.mark.asyncio
async def test_command_without_context_reports_error(printed):
    await handle_console_command("status", ConsoleControl())
    assert printed[-1] == "Error executing command: GroupGuard is not running"


@pytest.mark.asyncio
@pytest.mark.parametrize("line", ["shutdown", "exit", "QUIT"])
async def test_shutdown_aliases(printed, line):
    control = ConsoleControl()
    await handle_console_command(line, control)
    assert control.is_shutdown_requested()


@pytest.mark.asyncio
async def test_missing_arguments_print_usage(printed, context):
    await handle_console_command("rules", ConsoleControl(context))
    assert printed == ["Usage: rules <group_id>"]
    context.automod.get_rules.assert_not_called()


@pytest.mark.asyncio
async def test_rules_lists_each_rule(printed, context):
    context.automod.get_rules.return_value = [
        Rule(id=1, name="Scam", rule_type="KEYWORD_BLOCK", action_type=ActionType.REJECT),
        Rule(id=2, name="Age", rule_type="AGE_VERIFICATION", enabled=False),
    ]

    await handle_console_command("rules grp_test", ConsoleControl(context))

    context.automod.get_rules.assert_called_once_with("grp_test")
    assert len(printed) == 2
    assert "#1 Scam" in printed[0] and "✔" in printed[0]
    assert "✘" in printed[1]


@pytest.mark.asyncio
async def test_trigger_prints_summary(printed, context):
    await handle_console_command("run", ConsoleControl(context))
    assert printed == ["Processed 3 (2 accepted, 1 rejected), 4 skipped."]


@pytest.mark.asyncio
async def test_scan_prints_only_flagged_members(printed, context):
    await handle_console_command("scan grp_test", ConsoleControl(context))

    assert printed[0] == "Scanned 2 member(s), 1 flagged."
    assert len(printed) == 2
    assert "Scammer" in printed[1]


@pytest.mark.asyncio
async def test_reset_clears_caches(printed, context):
    await handle_console_command("reset", ConsoleControl(context))
    context.automod.reset_cache.assert_called_once()
    assert printed == ["Caches cleared."]


@pytest.mark.asyncio
async def test_help_lists_every_command(printed):
    await handle_console_command("help", ConsoleControl())
    for command in console.COMMANDS:
        assert any(line.strip().startswith(command.name) for line in printed)
