"""
orrery.services.character_service — One-Shot Character Sync & Purge
====================================================================

The on-demand counterparts of the poller:

- :func:`sync_character` fetches a character's weekly keys right now,
  stores all of them (no known-set short-circuit), refreshes the score
  and links whatever is still unlinked.
- :func:`purge_character` removes the character with every key and link.

Nothing in the bot calls these yet: they are the entry points for the
`!char sync` and `!char purge` chat commands, which are not part of this
package.  Tests drive them directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from orrery.clients.ports import ProfileSource
from orrery.database.engine import run_db
from orrery.database.store import KeyStore
from orrery.engine.records import Character
from orrery.errors import CharacterNotFoundError, OrreryError
from orrery.services.linker import Linker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncResult:
    character: Character
    fetched: int
    inserted: int
    failed: int
    linked: int
    score_updated: bool

    def summary(self) -> str:
        c = self.character
        return (
            f"Synced **{c.name}** ({c.realm}-{c.region}): {self.fetched} keys fetched, "
            f"{self.inserted} inserted, {self.linked} log links created."
        )


async def sync_character(
    store: KeyStore,
    profile: ProfileSource,
    linker: Linker | None,
    character: Character,
) -> SyncResult:
    """Fetch, store and link one character's weekly keys.

    Raises ``SourceError`` if the profile fetch fails; per-key store and
    link failures are logged and counted instead.
    """
    character = character.normalized()
    logger.info("Syncing %s", character)

    result = await profile.fetch_weekly_completions(character)
    await run_db(store.upsert_character, character.region, character.realm, character.name)

    inserted = failed = 0
    stored = []
    for key in result.keys:
        try:
            await run_db(store.upsert_completed_key, key)
        except OrreryError as exc:
            logger.warning("Sync %s: skipping key %s: %s", character, key.key_id, exc)
            failed += 1
            continue
        inserted += 1
        stored.append(key)

    score_updated = False
    if result.rating_score is not None:
        score_updated = await run_db(
            store.update_character_score,
            character.region, character.realm, character.name, result.rating_score,
        )

    linked = 0
    if linker is not None:
        for key in stored:
            existing = await run_db(store.list_links_for_key, key.effective_id, character)
            if existing:
                continue
            try:
                if await linker.link_key(store, key) is not None:
                    linked += 1
            except OrreryError as exc:
                logger.debug("Sync %s: no link for key %s: %s", character, key.key_id, exc)

    sync = SyncResult(
        character=character,
        fetched=len(result.keys),
        inserted=inserted,
        failed=failed,
        linked=linked,
        score_updated=score_updated,
    )
    logger.info(
        "Sync complete for %s: fetched=%d inserted=%d failed=%d linked=%d",
        character, sync.fetched, sync.inserted, sync.failed, sync.linked,
    )
    return sync


async def purge_character(store: KeyStore, character: Character) -> bool:
    """Delete *character* and its data.  Returns ``False`` if it was unknown."""
    try:
        await run_db(store.delete_character, character.region, character.realm, character.name)
    except CharacterNotFoundError:
        logger.info("Purge: %s not found", character)
        return False
    return True
