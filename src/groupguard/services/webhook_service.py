"""
Discord webhook notifications for AutoMod decisions.

Each group may have a webhook URL configured. Delivery is best-effort: any
failure is logged and swallowed so enforcement never depends on Discord.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Dict, Mapping, Optional

import aiohttp
import discord

from groupguard.util.logger import get_logger

logger = get_logger("webhook_service")

WEBHOOK_USERNAME = "GroupGuard AutoMod"

ACTION_COLORS = {
    "REJECT": discord.Color.red(),
    "AUTO_BLOCK": discord.Color.dark_red(),
    "BAN": discord.Color.dark_red(),
    "NOTIFY_ONLY": discord.Color.gold(),
    "SKIPPED": discord.Color.gold(),
    "INSTANCE_CLOSED": discord.Color.orange(),
    "AUTO_ACCEPT": discord.Color.green(),
}

ACTION_TITLES = {
    "REJECT": "Join Request Rejected",
    "AUTO_BLOCK": "User Auto-Banned",
    "BAN": "User Auto-Banned",
    "NOTIFY_ONLY": "AutoMod Alert",
    "SKIPPED": "AutoMod Violation (auto-reject disabled)",
    "INSTANCE_CLOSED": "Instance Closed",
}


def build_event_embed(
    action: str,
    target_name: str,
    target_id: str,
    reason: str,
    rule_name: Optional[str] = None,
    group_id: Optional[str] = None,
) -> discord.Embed:
    embed = discord.Embed(
        title=ACTION_TITLES.get(action, f"AutoMod: {action}"),
        color=ACTION_COLORS.get(action, discord.Color.blurple()),
        timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    embed.add_field(name="Target", value=f"{target_name} (`{target_id}`)", inline=True)
    embed.add_field(name="Action", value=action, inline=True)
    embed.add_field(name="Reason", value=reason or "No reason given", inline=False)
    if rule_name:
        embed.add_field(name="Rule", value=rule_name, inline=True)
    if group_id:
        embed.set_footer(text=f"Group: {group_id}")
    return embed


class DiscordWebhookService:
    """Sends embeds to the webhook configured for a group."""

    def __init__(self, webhook_urls: Optional[Mapping[str, str]] = None) -> None:
        self._urls: Dict[str, str] = dict(webhook_urls or {})
        self._session: Optional[aiohttp.ClientSession] = None

    def set_webhook_url(self, group_id: str, url: Optional[str]) -> None:
        if url:
            self._urls[group_id] = url
        else:
            self._urls.pop(group_id, None)

    def has_webhook(self, group_id: str) -> bool:
        return group_id in self._urls

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send_event(
        self,
        group_id: str,
        action: str,
        target_name: str,
        target_id: str,
        reason: str,
        rule_name: Optional[str] = None,
    ) -> bool:
        """Send one notification. Returns True when Discord accepted it; never raises on delivery errors."""
        url = self._urls.get(group_id)
        if not url:
            return False

        embed = build_event_embed(action, target_name, target_id, reason, rule_name, group_id)
        try:
            webhook = discord.Webhook.from_url(url, session=self._get_session())
            await webhook.send(embed=embed, username=WEBHOOK_USERNAME)
            logger.debug("[WEBHOOK] Sent %s notification for %s in group %s", action, target_id, group_id)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[WEBHOOK] Failed to send %s notification for group %s: %s", action, group_id, e)
            return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
