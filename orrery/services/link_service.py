"""
orrery.services.link_service — Unlinked Key Sweep
==================================================

The poller tries to link every key once, right after it is detected.
Logs are often uploaded later than that, so the tasks cog calls
:func:`link_unlinked_keys` on a timer to retry every key since the weekly
reset that still has no link.
"""

from __future__ import annotations

import logging
from datetime import datetime

from orrery.database.engine import run_db
from orrery.database.store import KeyStore
from orrery.errors import OrreryError
from orrery.services.linker import Linker

logger = logging.getLogger(__name__)


async def link_unlinked_keys(store: KeyStore, linker: Linker, cutoff: datetime) -> int:
    """Retry correlation for unlinked keys after *cutoff*.

    Each key is independent: a failed fetch or store write is logged and
    the sweep moves on.  Returns the number of links created.
    """
    keys = await run_db(store.list_unlinked_keys_since, cutoff)
    if not keys:
        logger.debug("Link sweep: no unlinked keys since %s", cutoff.isoformat())
        return 0

    logger.info("Link sweep: %d unlinked key(s) since %s", len(keys), cutoff.isoformat())

    linked = 0
    for key in keys:
        try:
            match = await linker.match_key(key)
        except OrreryError as exc:
            logger.warning("Link sweep: match failed for key %s: %s", key.key_id, exc)
            continue
        if match is None:
            continue

        link = linker.build_link(match)
        try:
            inserted = await run_db(store.insert_link, link)
        except OrreryError as exc:
            logger.warning("Link sweep: could not store link for key %s: %s", key.key_id, exc)
            continue
        if inserted:
            linked += 1
            logger.info(
                "Link sweep: key %s (%s) → %s", key.key_id, key.character, link.url
            )

    logger.info("Link sweep complete: %d of %d key(s) linked", linked, len(keys))
    return linked
