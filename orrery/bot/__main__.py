"""
orrery.bot.__main__ — Entry point for ``python -m orrery.bot``
==============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (roster, cadence, store location).
3. Configure logging at the configured level.
4. Build the Raider.IO client and, when credentials exist, the Warcraft
   Logs client.
5. Create the (unopened) KeyStore.
6. Create the OrreryBot; its setup_hook opens the store, restores the
   snapshot and starts polling.
7. Run the bot (blocking — runs the asyncio event loop).

Run with::

    orrery            # console script
    python -m orrery.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from orrery.bot.core import OrreryBot
from orrery.clients.raiderio import RaiderIOClient
from orrery.clients.warcraftlogs import WarcraftLogsClient
from orrery.config import load_config
from orrery.database.store import KeyStore

logger = logging.getLogger("orrery")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )


def main() -> None:
    """Bootstrap and run the Orrery bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        configure_logging()
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config(os.getenv("ORRERY_CONFIG", "config.yaml"))

    # 3. Logging.
    configure_logging(cfg.log_level)
    logger.info("Config loaded — tracking %d character(s)", len(cfg.characters))

    # 4. External clients.
    profile = RaiderIOClient(
        base_url=cfg.raiderio.base_url,
        user_agent=cfg.raiderio.user_agent,
        timeout=cfg.raiderio.timeout,
    )
    log_source = None
    if cfg.warcraftlogs.enabled:
        log_source = WarcraftLogsClient(
            client_id=cfg.warcraftlogs.client_id,
            client_secret=cfg.warcraftlogs.client_secret,
            graphql_url=cfg.warcraftlogs.graphql_url,
            token_url=cfg.warcraftlogs.token_url,
            user_agent=cfg.warcraftlogs.user_agent,
        )
    else:
        logger.warning("Warcraft Logs credentials missing — log linking disabled")

    # 5. Store.
    store = KeyStore(cfg.store.snapshot_path, flush_delay=cfg.store.flush_debounce)

    # 6. Bot.
    bot = OrreryBot(cfg=cfg, store=store, profile=profile, log_source=log_source)

    # 7. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Orrery bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
