"""
orrery.services.key_poller — Per-Character Key Polling
=======================================================

One :class:`CharacterWorker` task per tracked character.  Each worker owns
its character's *known set* (effective IDs already stored since the
weekly reset), so no lock is shared between characters.  The only shared
state is an :class:`asyncio.Semaphore` that caps simultaneous fetches.

Worker lifecycle::

    prepare()          upsert character, load score + known set
    sleep(i × interval / n)              staggered first launch
    loop:
        async with semaphore:
            fetch → refresh score → for each key:
                skip (malformed | ≤ cutoff | known)
                upsert → known.add → link → announce
        sleep(interval + U(0, interval / 10))

A fetch error abandons that cycle only.  An upsert, link or announce
error skips only that key.  Replaying an identical payload makes no store
writes and no match attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from orrery.clients.ports import Clock, NotificationSink, ProfileSource
from orrery.database.engine import run_db
from orrery.database.store import KeyStore
from orrery.engine.epoch import utc_now, weekly_reset, within_last_hour
from orrery.engine.records import Character, CompletedKey, CorrelatedLink
from orrery.errors import MalformedRecordError, SourceError
from orrery.services.linker import Linker

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 300.0
DEFAULT_MAX_CONCURRENT = 4


@dataclass(slots=True)
class PollStats:
    """Counters for one poll cycle of one character."""

    fetched: int = 0
    new_keys: int = 0
    skipped_cutoff: int = 0
    skipped_known: int = 0
    skipped_malformed: int = 0
    upsert_errors: int = 0
    match_attempts: int = 0
    links: int = 0
    score_updated: bool = False
    fetch_failed: bool = False


def format_announcement(
    key: CompletedKey, link: CorrelatedLink | None = None, now: datetime | None = None
) -> str:
    """``"arthas +10 Mists of Tirna Scithe (-2 min vs par)"`` plus the log URL.

    Keys finished less than an hour before *now* are tagged ``(just now)``.
    """
    text = f"{key.character} +{key.key_level} {key.dungeon}"
    if key.par_time_ms > 0 and key.run_time_ms > 0:
        diff = key.run_time_ms - key.par_time_ms
        sign = "-" if diff < 0 else "+"
        text += f" ({sign}{abs(diff) // 60000} min vs par)"
    if within_last_hour(key.completed_time(), now):
        text += " (just now)"
    if link is not None and link.url:
        text += f"\n{link.url}"
    return text


class CharacterWorker:
    """Polls one character; owns that character's known-key set."""

    def __init__(
        self,
        character: Character,
        store: KeyStore,
        profile: ProfileSource,
        semaphore: asyncio.Semaphore,
        interval: float = DEFAULT_POLL_INTERVAL,
        linker: Linker | None = None,
        notifier: NotificationSink | None = None,
        channel_ref: int | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.character = character.normalized()
        self.known: set[int] = set()
        self._store = store
        self._profile = profile
        self._semaphore = semaphore
        self._interval = interval
        self._linker = linker
        self._notifier = notifier
        self._channel_ref = channel_ref
        self._clock = clock
        self._rng = rng or random.Random()
        self._score: float | None = None

    async def prepare(self) -> int:
        """Register the character and load what is already stored this week.

        Returns the size of the known set.
        """
        c = self.character
        await run_db(self._store.upsert_character, c.region, c.realm, c.name)
        stored = await run_db(self._store.get_character, c.region, c.realm, c.name)
        self._score = stored.rating_score if stored else None

        cutoff = weekly_reset(self._clock())
        keys = await run_db(self._store.list_keys_by_character_since, c, cutoff)
        self.known = {key.effective_id for key in keys}
        logger.debug("Loaded %d known key(s) for %s since %s", len(self.known), c, cutoff)
        return len(self.known)

    def next_delay(self) -> float:
        if self._interval <= 0:
            return 0.0
        return self._interval + self._rng.uniform(0, self._interval / 10)

    async def run(self, initial_delay: float = 0.0) -> None:
        """Poll forever; exits only by cancellation."""
        if initial_delay > 0:
            await asyncio.sleep(initial_delay)
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception(
                    "Poll cycle failed for %s", self.character, extra={"task": "key_poller"}
                )
            await asyncio.sleep(self.next_delay())

    async def poll_once(self) -> PollStats:
        stats = PollStats()
        async with self._semaphore:
            try:
                result = await self._profile.fetch_weekly_completions(self.character)
            except SourceError as exc:
                logger.warning("Fetch failed for %s: %s", self.character, exc)
                stats.fetch_failed = True
                return stats

            stats.fetched = len(result.keys)
            await self._refresh_score(result.rating_score, stats)

            cutoff = weekly_reset(self._clock())
            for key in result.keys:
                await self._process_key(key, cutoff, stats)

        logger.debug(
            "Poll %s: fetched=%d new=%d known=%d before_cutoff=%d errors=%d links=%d",
            self.character, stats.fetched, stats.new_keys, stats.skipped_known,
            stats.skipped_cutoff, stats.upsert_errors, stats.links,
        )
        return stats

    async def _refresh_score(self, score: float | None, stats: PollStats) -> None:
        if score is None or score == self._score:
            return
        c = self.character
        try:
            stats.score_updated = await run_db(
                self._store.update_character_score, c.region, c.realm, c.name, score
            )
        except Exception:
            logger.exception("Score update failed for %s", c)
            return
        self._score = score

    async def _process_key(self, key: CompletedKey, cutoff, stats: PollStats) -> None:
        try:
            completed = key.completed_time()
        except MalformedRecordError as exc:
            logger.warning("Skipping key %s for %s: %s", key.key_id, self.character, exc)
            stats.skipped_malformed += 1
            return

        if completed <= cutoff:
            stats.skipped_cutoff += 1
            return

        key_id = key.effective_id
        if key_id in self.known:
            stats.skipped_known += 1
            return

        try:
            await run_db(self._store.upsert_completed_key, key)
        except Exception:
            logger.exception("Store upsert failed for key %s (%s)", key_id, self.character)
            stats.upsert_errors += 1
            return

        self.known.add(key_id)
        stats.new_keys += 1
        logger.info(
            "New key: %s +%d %s (%s)", key.character, key.key_level, key.dungeon, key_id
        )

        link = await self._link(key, stats)
        await self._announce(key, link)

    async def _link(self, key: CompletedKey, stats: PollStats) -> CorrelatedLink | None:
        if self._linker is None:
            return None
        stats.match_attempts += 1
        try:
            link = await self._linker.link_key(self._store, key)
        except Exception as exc:
            logger.warning("Log link failed for key %s: %s", key.effective_id, exc)
            return None
        if link is not None:
            stats.links += 1
        return link

    async def _announce(self, key: CompletedKey, link: CorrelatedLink | None) -> None:
        if self._notifier is None or self._channel_ref is None:
            return
        try:
            text = format_announcement(key, link, self._clock())
            await self._notifier.send(self._channel_ref, text)
        except Exception:
            logger.exception("Announcement failed for key %s", key.effective_id)


class KeyPoller:
    """Starts and stops one :class:`CharacterWorker` per character."""

    def __init__(
        self,
        store: KeyStore,
        profile: ProfileSource,
        characters: Iterable[Character],
        interval: float = DEFAULT_POLL_INTERVAL,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        linker: Linker | None = None,
        notifier: NotificationSink | None = None,
        channel_ref: int | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.profile = profile
        self.characters = list(characters)
        self.interval = interval
        self.max_concurrent = max_concurrent
        self.linker = linker
        self.notifier = notifier
        self.channel_ref = channel_ref
        self.clock = clock
        self.rng = rng or random.Random()
        self.workers: list[CharacterWorker] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Prepare every worker, then launch them staggered across one interval."""
        if self._tasks:
            return
        if not self.characters:
            logger.info("Key poller: no characters configured")
            return

        semaphore = asyncio.Semaphore(self.max_concurrent)
        self.workers = [
            CharacterWorker(
                character,
                self.store,
                self.profile,
                semaphore,
                interval=self.interval,
                linker=self.linker,
                notifier=self.notifier,
                channel_ref=self.channel_ref,
                clock=self.clock,
                rng=self.rng,
            )
            for character in self.characters
        ]
        for worker in self.workers:
            await worker.prepare()

        step = self.interval / len(self.workers)
        for i, worker in enumerate(self.workers):
            task = asyncio.create_task(
                worker.run(initial_delay=i * step), name=f"poll:{worker.character.key}"
            )
            self._tasks.append(task)

        logger.info(
            "Key poller started: %d character(s), interval %.0fs, max %d concurrent",
            len(self.workers), self.interval, self.max_concurrent,
        )

    async def stop(self, timeout: float | None = None) -> bool:
        """Cancel every worker and wait for all of them to exit.

        Returns ``False`` if some task was still running after *timeout*.
        """
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return True
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Key poller: %d worker(s) did not stop in time", len(pending))
            return False
        logger.info("Key poller stopped")
        return True
