"""
orrery.bot.core — Bot Instance & Lifecycle
===========================================

:class:`OrreryBot` is a thin ``commands.Bot`` subclass that owns the
pipeline's lifecycle:

1. ``setup_hook`` opens the key store, restores the on-disk snapshot,
   starts the key poller and loads the periodic-tasks cog.
2. ``close`` stops the poller (bounded wait), flushes and closes the
   store, and closes the HTTP clients.

Shared state hangs off the bot so cogs can reach it via ``self.bot.*``:
``cfg``, ``store``, ``linker``, ``poller``.
"""

from __future__ import annotations

import logging

import discord
from discord.ext import commands

from orrery.bot.notifier import DiscordNotifier
from orrery.clients.ports import LogSource, ProfileSource
from orrery.config import OrreryConfig
from orrery.database.engine import run_db
from orrery.database.store import KeyStore
from orrery.engine.records import ReportFilter
from orrery.services.key_poller import KeyPoller
from orrery.services.linker import Linker

logger = logging.getLogger(__name__)

EXTENSIONS: list[str] = [
    "orrery.bot.cogs.tasks",
]


class OrreryBot(commands.Bot):
    """Bot subclass carrying the store, the poller and the linker.

    Parameters
    ----------
    cfg:
        The parsed :class:`OrreryConfig`.
    store:
        An unopened :class:`KeyStore`; the bot opens and closes it.
    profile:
        The profile source the poller fetches from.
    log_source:
        Optional log source; without one, keys are stored but never linked.
    """

    def __init__(
        self,
        cfg: OrreryConfig,
        store: KeyStore,
        profile: ProfileSource,
        log_source: LogSource | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = False
        intents.presences = False

        super().__init__(
            command_prefix=cfg.discord.bot_prefix,
            intents=intents,
            description="Orrery — weekly Mythic+ key tracker",
        )

        self.cfg = cfg
        self.store = store
        self.profile = profile
        self.log_source = log_source
        self.notifier = DiscordNotifier(self)

        self.linker: Linker | None = None
        if log_source is not None:
            wcl = cfg.warcraftlogs
            self.linker = Linker(
                log_source,
                window=wcl.match_window,
                run_limit=wcl.run_limit,
                report_filter=ReportFilter(
                    guild_name=wcl.guild_name,
                    server_slug=wcl.server_slug,
                    server_region=wcl.server_region,
                    limit=wcl.limit,
                ),
            )

        self.poller = KeyPoller(
            store,
            profile,
            cfg.characters,
            interval=cfg.raiderio.poll_interval,
            max_concurrent=cfg.raiderio.max_concurrent,
            linker=self.linker,
            notifier=self.notifier,
            channel_ref=cfg.discord.report_channel_id,
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Open the store and start background work before connecting.

        A migration failure propagates and aborts startup.  A broken cog is
        logged and skipped.
        """
        await run_db(self.store.open)
        restored = await run_db(self.store.restore_from_disk)
        logger.info("Key store ready (restored from disk: %s)", restored)

        await self.poller.start()

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

    async def close(self) -> None:
        """Graceful shutdown: poller first, then the store, then HTTP."""
        logger.info("Bot shutting down…")
        timeout = self.cfg.store.shutdown_timeout
        await self.poller.stop(timeout=timeout)
        if self.store.is_open:
            await run_db(self.store.shutdown, timeout)
        for client in (self.profile, self.log_source):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()
        await super().close()
