"""
orrery.bot.notifier — Discord Notification Sink
================================================

Delivers poller announcements to a text channel.  Fire-and-forget: a
missing channel or a Discord error is logged and dropped, never retried.
"""

from __future__ import annotations

import logging

import discord

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


class DiscordNotifier:
    """``NotificationSink`` backed by a discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def send(self, channel_ref: int, text: str) -> None:
        channel = self.client.get_channel(channel_ref)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(channel_ref)
            except discord.HTTPException as exc:
                logger.warning("Notification channel %s unavailable: %s", channel_ref, exc)
                return
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning("Notification channel %s is not messageable", channel_ref)
            return

        try:
            await channel.send(text[:MAX_MESSAGE_LENGTH])
        except discord.Forbidden:
            logger.warning("Missing permissions to post in channel %s", channel_ref)
        except discord.HTTPException:
            logger.exception("Failed to send notification to channel %s", channel_ref)
