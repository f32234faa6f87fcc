"""
tests/test_matching.py — Key ↔ Log Matching (pure)
===================================================

Filter chain, confidence bounds, tie-breaking, the report-window
fallback and deep-link formatting.  No I/O.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_key, make_run
from orrery.engine.matching import (
    best_report_match,
    build_report_url,
    calculate_confidence,
    completed_time_span,
    dungeons_match,
    match_key_to_runs,
    normalize_name,
)
from orrery.engine.records import ReportSummary

WINDOW = timedelta(hours=24)


@pytest.fixture
def key():
    return make_key()


class TestDungeonNames:
    def test_normalize(self):
        assert normalize_name("Mists of Tirna Scithe!") == "mistsoftirnascithe"
        assert normalize_name("Ara-Kara, City of Echoes") == "arakaracityofechoes"

    @pytest.mark.parametrize(
        "a, b",
        [
            ("Mists of Tirna Scithe", "mists of tirna scithe"),
            ("Mists of Tirna Scithe", "Tirna Scithe"),
            ("Tirna Scithe", "Mists of Tirna Scithe"),
            ("The Necrotic Wake", "Necrotic Wake"),
        ],
    )
    def test_match(self, a, b):
        assert dungeons_match(a, b)

    @pytest.mark.parametrize("a, b", [("Halls of Atonement", "Necrotic Wake"), ("", "Wake"), ("!!", "")])
    def test_no_match(self, a, b):
        assert not dungeons_match(a, b)


class TestFilterChain:
    def test_perfect_candidate_scores_at_least_095(self, key):
        result = match_key_to_runs(key, key.completed_time(), [make_run(key)], WINDOW)
        assert result is not None
        assert result.confidence >= 0.95

    def test_level_mismatch_never_matches(self, key):
        # Perfect time and runtime, wrong level.
        runs = [make_run(key, level=9)]
        assert match_key_to_runs(key, key.completed_time(), runs, WINDOW) is None

    def test_zero_level_skipped(self, key):
        assert match_key_to_runs(key, key.completed_time(), [make_run(key, level=0)], WINDOW) is None

    def test_incomplete_run_skipped(self, key):
        run = make_run(key, kill=False, keystone_time_ms=0)
        assert match_key_to_runs(key, key.completed_time(), [run], WINDOW) is None

    def test_keystone_time_counts_as_complete(self, key):
        run = make_run(key, kill=False)
        assert match_key_to_runs(key, key.completed_time(), [run], WINDOW) is not None

    def test_dungeon_mismatch_skipped(self, key):
        run = make_run(key, dungeon="Halls of Atonement")
        assert match_key_to_runs(key, key.completed_time(), [run], WINDOW) is None

    def test_outside_window_skipped(self, key):
        run = make_run(key, offset=WINDOW + timedelta(seconds=1))
        assert match_key_to_runs(key, key.completed_time(), [run], WINDOW) is None

    def test_window_edge_is_inclusive(self, key):
        run = make_run(key, offset=-WINDOW)
        result = match_key_to_runs(key, key.completed_time(), [run], WINDOW)
        assert result is not None

    def test_no_candidates(self, key):
        assert match_key_to_runs(key, key.completed_time(), [], WINDOW) is None


class TestConfidence:
    def test_scenario_runtime_within_five_seconds(self, key):
        run = make_run(key, offset=timedelta(minutes=3), keystone_time_ms=key.run_time_ms + 2_000)
        result = match_key_to_runs(key, key.completed_time(), [run], WINDOW)
        assert result is not None
        assert result.confidence >= 0.8

    def test_runtime_outside_tolerance_adds_nothing(self, key):
        run = make_run(key, keystone_time_ms=key.run_time_ms + 5_000)
        score = calculate_confidence(key, run, timedelta(0), WINDOW)
        assert score == pytest.approx(0.6)

    def test_unknown_runtime_adds_nothing(self, key):
        run = make_run(key, keystone_time_ms=0)
        score = calculate_confidence(key, run, timedelta(0), WINDOW)
        assert score == pytest.approx(0.6)

    def test_formula(self, key):
        run = make_run(key, keystone_time_ms=key.run_time_ms + 1_000)
        score = calculate_confidence(key, run, timedelta(hours=6), WINDOW)
        assert score == pytest.approx(0.4 * 0.75 + 0.4 * 0.8 + 0.2)

    def test_always_in_unit_interval(self, key):
        rng = random.Random(42)
        for _ in range(200):
            run = make_run(
                key,
                offset=timedelta(seconds=rng.uniform(-WINDOW.total_seconds(), WINDOW.total_seconds())),
                keystone_time_ms=max(0, key.run_time_ms + rng.randint(-10_000, 10_000)),
            )
            diff = key.completed_time() - run.completed_at
            assert 0.0 <= calculate_confidence(key, run, diff, WINDOW) <= 1.0

    def test_zero_window_does_not_divide(self, key):
        run = make_run(key)
        assert calculate_confidence(key, run, timedelta(0), timedelta(0)) == pytest.approx(1.0)


class TestSelection:
    def test_closest_wins(self, key):
        far = make_run(key, fight_id=1, offset=timedelta(hours=5))
        near = make_run(key, fight_id=2, offset=timedelta(minutes=1))
        result = match_key_to_runs(key, key.completed_time(), [far, near], WINDOW)
        assert result.run.fight_id == 2

    def test_tie_keeps_first_encountered(self, key):
        first = make_run(key, report_code="first", fight_id=1)
        second = make_run(key, report_code="second", fight_id=2)
        result = match_key_to_runs(key, key.completed_time(), [first, second], WINDOW)
        assert result.run.report_code == "first"

        result = match_key_to_runs(key, key.completed_time(), [second, first], WINDOW)
        assert result.run.report_code == "second"


class TestReportWindow:
    def _report(self, code, start, end=None, zone="Mists of Tirna Scithe"):
        return ReportSummary(code=code, zone_name=zone, start=start, end=end)

    def test_closest_start_wins(self, key):
        t = key.completed_time()
        reports = [
            self._report("early", t - timedelta(hours=2), t + timedelta(minutes=5)),
            self._report("late", t - timedelta(minutes=40), t + timedelta(minutes=5)),
        ]
        assert best_report_match(key, t, reports, WINDOW).code == "late"

    def test_buffers(self, key):
        t = key.completed_time()
        # Starts 10 min after the key: inside the 15 min pre-buffer.
        inside = self._report("inside", t + timedelta(minutes=10), t + timedelta(hours=1))
        assert best_report_match(key, t, [inside], WINDOW).code == "inside"
        # Ended 31 min before the key: outside the 30 min post-buffer.
        ended = self._report("ended", t - timedelta(hours=2), t - timedelta(minutes=31))
        assert best_report_match(key, t, [ended], WINDOW) is None

    def test_missing_end_uses_window(self, key):
        t = key.completed_time()
        open_ended = self._report("open", t - timedelta(hours=3))
        assert best_report_match(key, t, [open_ended], WINDOW).code == "open"
        assert best_report_match(key, t, [open_ended], timedelta(hours=1)) is None

    def test_skips_bad_reports(self, key):
        t = key.completed_time()
        reports = [
            self._report("", t),
            ReportSummary(code="nostart", zone_name="Mists of Tirna Scithe"),
            self._report("otherzone", t, zone="Halls of Atonement"),
        ]
        assert best_report_match(key, t, reports, WINDOW) is None

    def test_time_span_skips_malformed(self):
        keys = [
            make_key(key_id=1, completed_at="2026-02-04T03:00:00.000Z"),
            make_key(key_id=2, completed_at="not a time"),
            make_key(key_id=3, completed_at="2026-02-05T01:00:00.000Z"),
        ]
        assert completed_time_span(keys) == (
            datetime(2026, 2, 4, 3, 0, tzinfo=UTC),
            datetime(2026, 2, 5, 1, 0, tzinfo=UTC),
        )
        assert completed_time_span([make_key(completed_at="")]) is None


class TestUrls:
    def test_fight(self):
        assert build_report_url("AbCd", fight_id=7) == "https://www.warcraftlogs.com/reports/AbCd#fight=7"

    def test_pull(self):
        assert build_report_url("AbCd", pull_id=3) == "https://www.warcraftlogs.com/reports/AbCd#pull=3"

    def test_fight_preferred_over_pull(self):
        assert build_report_url("AbCd", fight_id=7, pull_id=3).endswith("#fight=7")

    def test_bare_and_empty(self):
        assert build_report_url(" AbCd ") == "https://www.warcraftlogs.com/reports/AbCd"
        assert build_report_url("") == ""
