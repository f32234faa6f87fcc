"""
tests/conftest.py — Shared Test Fixtures
=========================================

Fakes for the three external ports plus store fixtures.  Async code is
driven through :func:`run` on a fresh event loop (no pytest-asyncio).
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from orrery.database.store import KeyStore
from orrery.engine.records import (
    CandidateLogRun,
    Character,
    CompletedKey,
    ProfileResult,
    ReportFilter,
    ReportSummary,
)
from orrery.errors import SourceError

# Thursday; the current weekly reset is Tue 2026-02-03 07:00 PST = 15:00 UTC.
NOW = datetime(2026, 2, 5, 12, 0, tzinfo=UTC)
CUTOFF = datetime(2026, 2, 3, 15, 0, tzinfo=UTC)

ARTHAS = Character(name="arthas", realm="illidan", region="us")
JAINA = Character(name="jaina", realm="area 52", region="us")


def run(coro):
    """Run *coro* to completion on a brand-new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def fixed_clock(now: datetime = NOW):
    return lambda: now


def make_key(
    key_id: int = 1001,
    character: Character = ARTHAS,
    dungeon: str = "Mists of Tirna Scithe",
    key_level: int = 10,
    run_time_ms: int = 1_700_000,
    par_time_ms: int = 1_800_000,
    completed_at: str = "2026-02-04T03:12:45.000Z",
) -> CompletedKey:
    return CompletedKey(
        key_id=key_id,
        character=character.name,
        realm=character.realm,
        region=character.region,
        dungeon=dungeon,
        key_level=key_level,
        run_time_ms=run_time_ms,
        par_time_ms=par_time_ms,
        completed_at=completed_at,
    )


def make_run(
    key: CompletedKey,
    report_code: str = "AbCd1234",
    fight_id: int = 7,
    level: int | None = None,
    dungeon: str | None = None,
    offset: timedelta = timedelta(0),
    keystone_time_ms: int | None = None,
    kill: bool = True,
) -> CandidateLogRun:
    """A log run that lines up with *key* unless told otherwise."""
    return CandidateLogRun(
        report_code=report_code,
        fight_id=fight_id,
        dungeon=key.dungeon if dungeon is None else dungeon,
        keystone_level=key.key_level if level is None else level,
        completed_at=key.completed_time() + offset,
        keystone_time_ms=key.run_time_ms if keystone_time_ms is None else keystone_time_ms,
        kill=kill,
    )


# ---------------------------------------------------------------------------
# Port fakes
# ---------------------------------------------------------------------------
class FakeProfileSource:
    """Returns canned payloads and tracks peak concurrency."""

    def __init__(
        self,
        payloads: dict[str, ProfileResult] | None = None,
        delay: float = 0.0,
        fail_for: Iterable[str] = (),
    ) -> None:
        self.payloads = payloads or {}
        self.delay = delay
        self.fail_for = set(fail_for)
        self.calls: list[str] = []
        self.in_flight = 0
        self.peak = 0

    async def fetch_weekly_completions(self, character: Character) -> ProfileResult:
        self.calls.append(character.key)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if character.key in self.fail_for:
                raise SourceError(f"boom for {character}")
            result = self.payloads.get(character.key, ProfileResult())
            return ProfileResult(keys=list(result.keys), rating_score=result.rating_score)
        finally:
            self.in_flight -= 1


class FakeLogSource:
    """Serves runs per character and a fixed report list."""

    def __init__(
        self,
        runs: dict[str, list[CandidateLogRun]] | None = None,
        reports: list[ReportSummary] | None = None,
        fail: bool = False,
    ) -> None:
        self.runs = runs or {}
        self.reports = reports or []
        self.fail = fail
        self.run_calls: list[str] = []
        self.report_filters: list[ReportFilter] = []

    async def query(self, query, variables=None):
        return {}

    async def fetch_character_runs(self, character: Character, limit: int):
        self.run_calls.append(character.key)
        if self.fail:
            raise SourceError("logs unavailable")
        return list(self.runs.get(character.key, []))

    async def fetch_reports(self, report_filter: ReportFilter):
        self.report_filters.append(report_filter)
        if self.fail:
            raise SourceError("logs unavailable")
        return list(self.reports)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []

    async def send(self, channel_ref: int, text: str) -> None:
        self.sent.append((channel_ref, text))


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def store():
    """An open in-memory store with no snapshot file."""
    s = KeyStore()
    s.open()
    yield s
    s.close()


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "data" / "orrery.db"


@pytest.fixture
def durable_store(snapshot_path):
    """An open store that flushes to ``tmp_path`` after a short debounce."""
    s = KeyStore(snapshot_path, flush_delay=0.05)
    s.open()
    yield s
    s.close()
