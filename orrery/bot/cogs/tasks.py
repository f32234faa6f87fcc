"""
orrery.bot.cogs.tasks — Periodic Background Tasks
==================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Link sweep** — every ``warcraftlogs.link_interval`` seconds (default
  300), retries log correlation for keys since the weekly reset that are
  still unlinked, then runs the report-window fallback when a guild is
  configured.
- **Weekly archive** — hourly, moves keys completed at or before the reset
  ``store.retention_weeks`` weeks ago into ``archived_keys``.

Store calls go through ``run_db()`` so the event loop never blocks.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from orrery.database.engine import run_db
from orrery.engine.epoch import weekly_reset, weekly_reset_weeks_ago
from orrery.services.link_service import link_unlinked_keys

if TYPE_CHECKING:
    from orrery.bot.core import OrreryBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: OrreryBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        if self.bot.linker is not None:
            self.link_sweep_loop.change_interval(seconds=self.bot.cfg.warcraftlogs.link_interval)
            self.link_sweep_loop.start()
        if self.bot.cfg.store.retention_weeks > 0:
            self.archive_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.link_sweep_loop.cancel()
        self.archive_loop.cancel()

    # -------------------------------------------------------------------
    # Link sweep
    # -------------------------------------------------------------------
    @tasks.loop(seconds=300)
    async def link_sweep_loop(self):
        """Link keys that had no log yet when they were first detected."""
        linker = self.bot.linker
        if linker is None:
            return
        cutoff = weekly_reset()

        try:
            linked = await link_unlinked_keys(self.bot.store, linker, cutoff)
            if self.bot.cfg.warcraftlogs.guild_name:
                linked += await linker.link_reports_since(self.bot.store, cutoff)
            if linked:
                logger.info("Link sweep created %d link(s)", linked)
        except Exception:
            logger.exception("Link sweep failed", extra={"task": "link_sweep"})

    @link_sweep_loop.before_loop
    async def _wait_link_sweep(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Weekly archive, checked hourly
    # -------------------------------------------------------------------
    @tasks.loop(hours=1)
    async def archive_loop(self):
        """Archive keys older than the retention window."""
        cutoff = weekly_reset_weeks_ago(self.bot.cfg.store.retention_weeks)
        try:
            archived = await run_db(self.bot.store.archive_keys_before, cutoff)
            if archived:
                logger.info("Archive task moved %d key(s) before %s", archived, cutoff)
        except Exception:
            logger.exception("Archive task failed", extra={"task": "archive"})

    @archive_loop.before_loop
    async def _wait_archive(self):
        await self.bot.wait_until_ready()


async def setup(bot: OrreryBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
