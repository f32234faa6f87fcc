"""
orrery.services.linker — Key ↔ Warcraft Logs Orchestration
===========================================================

Wraps the pure matcher in :mod:`orrery.engine.matching` with the I/O it
needs: fetching a character's recent fights from a ``LogSource`` and
persisting the winning link through the store.

Used by the key poller (one key at a time, right after detection), the
background link sweep, and the one-shot character sync.

:meth:`Linker.match_keys` is the read-only batch form for report commands;
no command layer ships here, so only tests call it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta

from orrery.clients.ports import LogSource
from orrery.database.engine import run_db
from orrery.database.store import KeyStore
from orrery.engine import matching
from orrery.engine.records import (
    CompletedKey,
    CorrelatedLink,
    MatchResult,
    ReportFilter,
)
from orrery.errors import MalformedRecordError, OrreryError

logger = logging.getLogger(__name__)

DEFAULT_MATCH_WINDOW = timedelta(hours=24)
DEFAULT_RUN_LIMIT = 10


class Linker:
    """Finds and records the log run behind each completed key."""

    def __init__(
        self,
        log_source: LogSource,
        window: timedelta = DEFAULT_MATCH_WINDOW,
        run_limit: int = DEFAULT_RUN_LIMIT,
        report_filter: ReportFilter | None = None,
        pre_buffer: timedelta = matching.DEFAULT_PRE_BUFFER,
        post_buffer: timedelta = matching.DEFAULT_POST_BUFFER,
        dungeon_match: matching.DungeonMatcher = matching.dungeons_match,
    ) -> None:
        self.log_source = log_source
        self.window = window
        self.run_limit = run_limit
        self.report_filter = report_filter or ReportFilter()
        self.pre_buffer = pre_buffer
        self.post_buffer = post_buffer
        self.dungeon_match = dungeon_match

    # ------------------------------------------------------------------
    # Per-fight matching
    # ------------------------------------------------------------------
    async def match_key(self, key: CompletedKey) -> MatchResult | None:
        """Fetch the owner's recent runs and return the best match.

        Raises ``SourceError`` when the fetch fails and
        ``MalformedRecordError`` when the key's timestamp is unusable.
        """
        key_time = key.completed_time()
        runs = await self.log_source.fetch_character_runs(key.owner, self.run_limit)
        result = matching.match_key_to_runs(key, key_time, runs, self.window, self.dungeon_match)

        if result is None:
            logger.debug(
                "No log match for key %s (%s +%d, %d run(s) checked)",
                key.effective_id, key.dungeon, key.key_level, len(runs),
            )
        else:
            logger.info(
                "Matched key %s (%s +%d) to %s fight %d (confidence %.2f)",
                key.effective_id, key.dungeon, key.key_level,
                result.run.report_code, result.run.fight_id, result.confidence,
            )
        return result

    async def match_keys(self, keys: Iterable[CompletedKey]) -> list[MatchResult]:
        """Match many keys, fetching each character's runs once.

        A character whose fetch fails is logged and skipped; so is any key
        with a bad timestamp.
        """
        by_character: dict[str, list[CompletedKey]] = {}
        for key in keys:
            by_character.setdefault(key.owner.key, []).append(key)

        results: list[MatchResult] = []
        for owned in by_character.values():
            owner = owned[0].owner
            try:
                runs = await self.log_source.fetch_character_runs(owner, self.run_limit)
            except OrreryError as exc:
                logger.warning("Skipping %s: log fetch failed: %s", owner, exc)
                continue

            for key in owned:
                try:
                    key_time = key.completed_time()
                except MalformedRecordError:
                    logger.warning("Skipping key %s: bad completed_at %r", key.key_id, key.completed_at)
                    continue
                match = matching.match_key_to_runs(
                    key, key_time, runs, self.window, self.dungeon_match
                )
                if match is not None:
                    results.append(match)
        return results

    @staticmethod
    def build_link(match: MatchResult) -> CorrelatedLink:
        """The persisted form of a per-fight match."""
        key = match.key
        return CorrelatedLink(
            key_id=key.effective_id,
            character=key.character,
            realm=key.realm,
            region=key.region,
            report_code=match.run.report_code,
            fight_id=match.run.fight_id,
            url=matching.build_run_url(match.run),
        )

    async def link_key(self, store: KeyStore, key: CompletedKey) -> CorrelatedLink | None:
        """Match *key* and store the link.  Returns the link when one was found."""
        match = await self.match_key(key)
        if match is None:
            return None
        link = self.build_link(match)
        await run_db(store.insert_link, link)
        return link

    # ------------------------------------------------------------------
    # Report-window fallback
    # ------------------------------------------------------------------
    async def link_reports_since(self, store: KeyStore, since: datetime) -> int:
        """Link still-unlinked keys to whole reports by time window.

        One report search covers every key: the window spans the earliest
        to the latest completion, widened by the match window on both
        sides.  Returns the number of links inserted.
        """
        keys = await run_db(store.list_unlinked_keys_since, since)
        if not keys:
            return 0

        span = matching.completed_time_span(keys)
        if span is None:
            return 0
        earliest, latest = span

        report_filter = replace(
            self.report_filter,
            start_time=earliest - self.window,
            end_time=latest + self.window,
        )
        reports = await self.log_source.fetch_reports(report_filter)
        if not reports:
            return 0

        linked = 0
        for key in keys:
            try:
                key_time = key.completed_time()
            except MalformedRecordError:
                continue
            report = matching.best_report_match(
                key, key_time, reports, self.window,
                self.pre_buffer, self.post_buffer, self.dungeon_match,
            )
            if report is None:
                continue

            link = CorrelatedLink(
                key_id=key.effective_id,
                character=key.character,
                realm=key.realm,
                region=key.region,
                report_code=report.code,
                url=matching.build_report_url(report.code),
            )
            try:
                if await run_db(store.insert_link, link):
                    linked += 1
            except OrreryError:
                logger.exception("Failed to store report link for key %s", key.key_id)

        logger.info("Report-window fallback linked %d of %d key(s)", linked, len(keys))
        return linked
