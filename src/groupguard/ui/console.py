"""Interactive console for inspecting and driving a running group-guard instance."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.shortcuts import PromptSession

from groupguard.enforcement.member_scanner import ScanStatus
from groupguard.util.logger import get_logger

if TYPE_CHECKING:
    from groupguard.context import AutoModContext

BOX_WIDTH = 45


def box_title(title: str) -> list[str]:
    inner_width = BOX_WIDTH - 2
    pad_left = (inner_width - len(title)) // 2
    pad_right = inner_width - len(title) - pad_left
    return [
        f"╔{'═' * inner_width}╗",
        f"║{' ' * pad_left}{title}{' ' * pad_right}║",
        f"╚{'═' * inner_width}╝",
    ]


logger = get_logger("console")

CommandHandler = Callable[["ConsoleControl", list[str]], Awaitable[None]]


@dataclass
class Command:
    """Definition of a console command."""
    name: str
    handler: CommandHandler
    aliases: list[str]
    description: str
    usage: str = ""

    def matches(self, input_cmd: str) -> bool:
        return input_cmd == self.name or input_cmd in self.aliases


def console_print(message: str, style: str = "") -> None:
    """Render text via prompt_toolkit without breaking the active prompt."""
    formatted: FormattedText | str
    if style:
        formatted = FormattedText([(style, message)])
    else:
        formatted = message
    print_formatted_text(formatted)


class ConsoleControl:
    """Console-side handle on the running context and the shutdown signal."""

    def __init__(self, context: "AutoModContext | None" = None) -> None:
        self.shutdown_event = asyncio.Event()
        self.context = context

    def request_shutdown(self) -> None:
        self.shutdown_event.set()

    def stop(self) -> None:
        self.shutdown_event.set()

    def is_shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def require_context(self) -> "AutoModContext":
        if self.context is None:
            raise RuntimeError("GroupGuard is not running")
        return self.context


def _require_args(args: list[str], count: int, usage: str) -> bool:
    if len(args) < count:
        console_print(f"Usage: {usage}", "ansiyellow")
        return False
    return True


# ==================== Command Handlers ====================

async def cmd_help(control: ConsoleControl, args: list[str]) -> None:
    """Display available commands and their descriptions."""
    for line in box_title("Console Commands Reference"):
        console_print(line, "ansigreen")

    for cmd in COMMANDS:
        aliases_str = f" (aliases: {', '.join(cmd.aliases)})" if cmd.aliases else ""
        console_print(f"\n  {cmd.name}{aliases_str}", "ansicyan")
        console_print(f"    {cmd.description}")
        if cmd.usage:
            console_print(f"    Usage: {cmd.usage}", "ansibrightblack")

    console_print("")


async def cmd_status(control: ConsoleControl, args: list[str]) -> None:
    """Display loop and cache status."""
    context = control.require_context()
    for line in box_title("GroupGuard Status"):
        console_print(line, "ansiblue")

    for scheduler in context.schedulers:
        state = "🟢 Running" if scheduler.running else "🔴 Stopped"
        console_print(f"  {scheduler.name:<18} {state} ({scheduler.passes_completed} passes)")
    console_print(f"  Authorized groups:  {len(context.authorization.get_allowed_group_ids())}")
    console_print(f"  Parsed rules:       {len(context.rule_parser)}")
    console_print(f"  Processed requests: {len(context.processed_requests)}")
    console_print(f"  Closed instances:   {len(context.closed_instances)}")
    console_print(f"  Database:           {'ready' if context.database.initialized else 'unavailable'}")
    console_print("")


async def cmd_groups(control: ConsoleControl, args: list[str]) -> None:
    """List authorized groups with their toggles."""
    context = control.require_context()
    group_ids = context.authorization.get_allowed_group_ids()
    if not group_ids:
        console_print("No authorized groups.", "ansiyellow")
        return

    for line in box_title(f"Authorized Groups ({len(group_ids)})"):
        console_print(line, "ansiblue")
    for group_id in group_ids:
        config = context.group_configs.get_group_config(group_id)
        console_print(
            f"  • {group_id}  rules={len(config.rules)} enabled={len(config.enabled_rules())} "
            f"auto-reject={'on' if config.enable_auto_reject else 'off'} "
            f"auto-ban={'on' if config.enable_auto_ban else 'off'}"
        )
    console_print("")


async def cmd_authorize(control: ConsoleControl, args: list[str]) -> None:
    """Re-authorize groups from the moderator's current memberships."""
    if not _require_args(args, 1, "authorize <moderator_user_id>"):
        return
    context = control.require_context()
    memberships = await context.api.get_user_groups(args[0])
    if not memberships.success:
        console_print(f"Could not fetch groups of {args[0]}: {memberships.error}", "ansired")
        return
    allowed = await context.authorization.authorize_from_memberships(memberships.data or [], args[0])
    console_print(f"{len(allowed)} group(s) authorized.", "ansigreen")


async def cmd_rules(control: ConsoleControl, args: list[str]) -> None:
    """List the rules of a group in evaluation order."""
    if not _require_args(args, 1, "rules <group_id>"):
        return
    rules = control.require_context().automod.get_rules(args[0])
    if not rules:
        console_print(f"No rules for {args[0]}.", "ansiyellow")
        return
    for rule in rules:
        marker = "✔" if rule.enabled else "✘"
        console_print(f"  {marker} #{rule.id} {rule.name} [{rule.rule_type}] → {rule.action_type}")


async def cmd_scan(control: ConsoleControl, args: list[str]) -> None:
    """Scan all members of a group."""
    if not _require_args(args, 1, "scan <group_id>"):
        return
    results = await control.require_context().automod.scan_group_members(args[0])
    flagged = [result for result in results if result.status is not ScanStatus.SAFE]
    console_print(f"Scanned {len(results)} member(s), {len(flagged)} flagged.", "ansigreen")
    for result in flagged:
        console_print(f"  {result.status.value:<9} {result.display_name} ({result.user_id}) {result.verdict.reason or ''}")


async def cmd_check(control: ConsoleControl, args: list[str]) -> None:
    """Evaluate one user against a group's rules without taking action."""
    if not _require_args(args, 2, "check <group_id> <user_id>"):
        return
    context = control.require_context()
    user = await context.resolver.fetch_user(args[1])
    if user is None:
        console_print(f"Could not fetch user {args[1]}.", "ansired")
        return
    verdict = await context.automod.check_user(user, args[0])
    style = "ansigreen" if verdict.is_allowed else "ansired"
    console_print(f"{user.display_name}: {verdict.action.value} {verdict.reason or ''}", style)


async def cmd_history(control: ConsoleControl, args: list[str]) -> None:
    """Show recent AutoMod actions."""
    entries = await control.require_context().automod.get_history(args[0] if args else None, 20)
    if not entries:
        console_print("No AutoMod history.", "ansiyellow")
        return
    for entry in entries:
        console_print(f"  {entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.module:<15} {entry.action:<15} {entry.user}: {entry.reason}")


async def cmd_instances(control: ConsoleControl, args: list[str]) -> None:
    """Show recent Instance Guard events."""
    events = control.require_context().automod.get_instance_guard_history(args[0] if args else None)[:20]
    if not events:
        console_print("No Instance Guard events.", "ansiyellow")
        return
    for event in events:
        console_print(f"  {event.action.value:<12} {event.world_name} ({event.instance_id}) {event.reason or ''}")


async def cmd_trigger(control: ConsoleControl, args: list[str]) -> None:
    """Run one Gatekeeper pass now."""
    summary = await control.require_context().automod.trigger_pending_request_scan()
    console_print(
        f"Processed {summary.total_processed} ({summary.accepted} accepted, {summary.rejected} rejected), "
        f"{summary.skipped} skipped.",
        "ansigreen",
    )


async def cmd_reset(control: ConsoleControl, args: list[str]) -> None:
    """Clear the Gatekeeper dedup cache and parsed-rule cache."""
    control.require_context().automod.reset_cache()
    console_print("Caches cleared.", "ansigreen")


async def cmd_clear(control: ConsoleControl, args: list[str]) -> None:
    """Clear the console screen."""
    os.system('cls' if os.name == 'nt' else 'clear')
    console_print("Console cleared.", "ansigreen")


async def cmd_shutdown(control: ConsoleControl, args: list[str]) -> None:
    """Request graceful shutdown."""
    console_print("Shutdown requested.", "ansiyellow")
    control.request_shutdown()


# ==================== Command Registry ====================

COMMANDS: list[Command] = [
    Command(name="help", handler=cmd_help, aliases=["h", "?"],
            description="Show this help message with all available commands"),
    Command(name="status", handler=cmd_status, aliases=["stat", "info"],
            description="Display enforcement loop status and cache sizes"),
    Command(name="groups", handler=cmd_groups, aliases=["g"],
            description="List authorized groups with their AutoMod toggles"),
    Command(name="authorize", handler=cmd_authorize, aliases=["auth"],
            description="Authorize the groups a moderator may act on", usage="authorize <moderator_user_id>"),
    Command(name="rules", handler=cmd_rules, aliases=["r"],
            description="List a group's rules in evaluation order", usage="rules <group_id>"),
    Command(name="scan", handler=cmd_scan, aliases=[],
            description="Scan all members of a group against its rules", usage="scan <group_id>"),
    Command(name="check", handler=cmd_check, aliases=[],
            description="Evaluate a single user without acting", usage="check <group_id> <user_id>"),
    Command(name="history", handler=cmd_history, aliases=["hist"],
            description="Show recent AutoMod actions", usage="history [group_id]"),
    Command(name="instances", handler=cmd_instances, aliases=["ig"],
            description="Show recent Instance Guard events", usage="instances [group_id]"),
    Command(name="trigger", handler=cmd_trigger, aliases=["run"],
            description="Process pending join requests now"),
    Command(name="reset", handler=cmd_reset, aliases=[],
            description="Clear the processed-request and parsed-rule caches"),
    Command(name="clear", handler=cmd_clear, aliases=["cls"],
            description="Clear the console screen"),
    Command(name="shutdown", handler=cmd_shutdown, aliases=["stop", "quit", "exit"],
            description="Gracefully shut down GroupGuard"),
]


# ==================== Command Dispatcher ====================

async def handle_console_command(command: str, control: ConsoleControl) -> None:
    """Interpret and execute a single console command line."""
    if not command.strip():
        return

    parts = command.strip().split()
    cmd_name = parts[0].lower()
    args = parts[1:]

    for cmd in COMMANDS:
        if cmd.matches(cmd_name):
            try:
                await cmd.handler(control, args)
            except Exception as exc:
                logger.exception("Error executing command '%s': %s", cmd_name, exc)
                console_print(f"Error executing command: {exc}", "ansired")
            return

    console_print(f"Unknown command '{cmd_name}'. Type 'help' for available commands.", "ansired")


async def run_console(control: ConsoleControl) -> None:
    """Run the interactive console until shutdown is requested."""
    session = PromptSession("> ")

    for line in box_title("GroupGuard Interactive Console"):
        console_print(line, "ansigreen")
    console_print("Type 'help' for available commands or 'exit' to quit.\n", "ansibrightblack")

    with patch_stdout():
        while not control.is_shutdown_requested():
            try:
                line = await session.prompt_async()
                if line.strip():
                    await handle_console_command(line, control)
            except (EOFError, KeyboardInterrupt):
                console_print("\nShutdown requested by user.", "ansiyellow")
                control.request_shutdown()
                break
            except Exception as exc:
                logger.exception("Error in console input loop: %s", exc)
                console_print(f"Error: {exc}", "ansired")


@asynccontextmanager
async def console_session(control: ConsoleControl) -> AsyncIterator[ConsoleControl]:
    """Run the console in the background, cleaning up automatically."""
    console_task = asyncio.create_task(run_console(control))
    try:
        yield control
    finally:
        control.stop()
        console_task.cancel()
        try:
            await console_task
        except asyncio.CancelledError:
            pass
