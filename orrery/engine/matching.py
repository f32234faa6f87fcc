"""
orrery.engine.matching — Key ↔ Log Correlation
===============================================

Pure functions that decide which Warcraft Logs fight (or report) describes
a Raider.IO key completion.  No network, no database.

Primary mode — per-fight matching (:func:`match_key_to_runs`)::

    candidates → filter chain → confidence score → strictly-best wins

Filter chain (every step must pass):

1. the run has a keystone level,
2. the run is complete (kill flag or a keystone time),
3. the levels are identical,
4. the dungeon names match after normalization,
5. the timestamps are within the match window.

Confidence::

    0.4 × (1 − Δt / window)
  + 0.4 × (1 − Δrun / 5000 ms)   only when both run times are known and Δrun < 5 s
  + 0.2                          for the exact level

Ties keep the first candidate encountered.  The order comes from the
Warcraft Logs response, which is not guaranteed stable.

Dungeon names are compared by equality *or* substring in either direction
so "Tirna Scithe" matches "Mists of Tirna Scithe".  That also means a
dungeon whose name is contained in another's can false-positive; the level
and time filters are what keep that in check.

Secondary mode — report-window matching (:func:`best_report_match`) is the
coarse fallback used when per-character fight data is unavailable.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from orrery.engine.records import CandidateLogRun, CompletedKey, MatchResult, ReportSummary
from orrery.errors import MalformedRecordError

DungeonMatcher = Callable[[str, str], bool]

REPORT_BASE_URL = "https://www.warcraftlogs.com/reports"

TIME_WEIGHT = 0.4
RUNTIME_WEIGHT = 0.4
LEVEL_WEIGHT = 0.2
RUNTIME_TOLERANCE_MS = 5000

DEFAULT_PRE_BUFFER = timedelta(minutes=15)
DEFAULT_POST_BUFFER = timedelta(minutes=30)


# ---------------------------------------------------------------------------
# Dungeon names
# ---------------------------------------------------------------------------
def normalize_name(value: str) -> str:
    """Lower-case and keep only letters and digits."""
    return "".join(ch for ch in value.lower() if ch.isalnum())


def dungeons_match(dungeon: str, other: str) -> bool:
    """Equality or substring containment after :func:`normalize_name`."""
    a = normalize_name(dungeon or "")
    b = normalize_name(other or "")
    if not a or not b:
        return False
    return a == b or a in b or b in a


# ---------------------------------------------------------------------------
# Per-fight matching
# ---------------------------------------------------------------------------
def is_candidate(
    key: CompletedKey,
    key_time: datetime,
    run: CandidateLogRun,
    window: timedelta,
    dungeon_match: DungeonMatcher = dungeons_match,
) -> bool:
    """Apply the filter chain to one run."""
    if not run.keystone_level:
        return False
    if not run.kill and not run.keystone_time_ms:
        return False
    if run.keystone_level != key.key_level:
        return False
    if not dungeon_match(key.dungeon, run.dungeon):
        return False
    return abs(key_time - run.completed_at) <= window


def calculate_confidence(
    key: CompletedKey,
    run: CandidateLogRun,
    time_diff: timedelta,
    window: timedelta,
) -> float:
    """Score a run that already passed :func:`is_candidate`."""
    window_seconds = window.total_seconds()
    if window_seconds > 0:
        time_score = 1.0 - abs(time_diff.total_seconds()) / window_seconds
    else:
        time_score = 1.0
    confidence = max(0.0, time_score) * TIME_WEIGHT

    if run.keystone_time_ms > 0 and key.run_time_ms > 0:
        runtime_diff = abs(run.keystone_time_ms - key.run_time_ms)
        if runtime_diff < RUNTIME_TOLERANCE_MS:
            confidence += (1.0 - runtime_diff / RUNTIME_TOLERANCE_MS) * RUNTIME_WEIGHT

    confidence += LEVEL_WEIGHT
    return min(1.0, max(0.0, confidence))


def match_key_to_runs(
    key: CompletedKey,
    key_time: datetime,
    runs: Iterable[CandidateLogRun],
    window: timedelta,
    dungeon_match: DungeonMatcher = dungeons_match,
) -> MatchResult | None:
    """Return the best-scoring run for *key*, or ``None``."""
    best: CandidateLogRun | None = None
    best_confidence = 0.0

    for run in runs:
        if not is_candidate(key, key_time, run, window, dungeon_match):
            continue
        confidence = calculate_confidence(key, run, key_time - run.completed_at, window)
        if confidence > best_confidence:
            best = run
            best_confidence = confidence

    if best is None:
        return None
    return MatchResult(key=key, run=best, confidence=best_confidence)


# ---------------------------------------------------------------------------
# Report-window matching (fallback)
# ---------------------------------------------------------------------------
def best_report_match(
    key: CompletedKey,
    key_time: datetime,
    reports: Iterable[ReportSummary],
    window: timedelta,
    pre_buffer: timedelta = DEFAULT_PRE_BUFFER,
    post_buffer: timedelta = DEFAULT_POST_BUFFER,
    dungeon_match: DungeonMatcher = dungeons_match,
) -> ReportSummary | None:
    """Pick the report whose buffered time span contains the key.

    Closest report start wins.  A report without an end time is treated as
    spanning *window* from its start.
    """
    best: ReportSummary | None = None
    best_distance: float | None = None

    for report in reports:
        if not report.code or report.start is None:
            continue
        if not dungeon_match(key.dungeon, report.zone_name):
            continue

        start = report.start - pre_buffer
        end = report.end + post_buffer if report.end is not None else report.start + window
        if key_time < start or key_time > end:
            continue

        distance = abs((key_time - report.start).total_seconds())
        if best_distance is None or distance < best_distance:
            best = report
            best_distance = distance

    return best


def completed_time_span(keys: Iterable[CompletedKey]) -> tuple[datetime, datetime] | None:
    """Earliest and latest parseable completion time, skipping bad rows."""
    times: list[datetime] = []
    for key in keys:
        try:
            times.append(key.completed_time())
        except MalformedRecordError:
            continue
    if not times:
        return None
    return min(times), max(times)


# ---------------------------------------------------------------------------
# Deep links
# ---------------------------------------------------------------------------
def build_report_url(code: str, fight_id: int | None = None, pull_id: int | None = None) -> str:
    """Deep link into a report, preferring the fight over the pull."""
    code = (code or "").strip()
    if not code:
        return ""
    base = f"{REPORT_BASE_URL}/{code}"
    if fight_id is not None:
        return f"{base}#fight={fight_id}"
    if pull_id is not None:
        return f"{base}#pull={pull_id}"
    return base


def build_run_url(run: CandidateLogRun) -> str:
    return build_report_url(run.report_code, fight_id=run.fight_id)
