"""
tests/test_poller.py — Per-Character Key Poller
================================================

Detection, dedup via the known set, the cutoff, error isolation, the
concurrency cap and start/stop.  Profile, log and notification ports are
the fakes from ``conftest``; the store is real.
"""

from __future__ import annotations

import asyncio
import random

import httpx
import pytest

from conftest import (
    ARTHAS,
    CUTOFF,
    JAINA,
    NOW,
    FakeLogSource,
    FakeProfileSource,
    RecordingNotifier,
    fixed_clock,
    make_key,
    make_run,
    run,
)
from orrery.clients.raiderio import RaiderIOClient
from orrery.engine.records import Character, CorrelatedLink, ProfileResult
from orrery.services.key_poller import CharacterWorker, KeyPoller, format_announcement
from orrery.services.linker import Linker


def make_worker(store, profile, character=ARTHAS, linker=None, notifier=None, limit=4):
    return CharacterWorker(
        character,
        store,
        profile,
        asyncio.Semaphore(limit),
        interval=60.0,
        linker=linker,
        notifier=notifier,
        channel_ref=42 if notifier else None,
        clock=fixed_clock(),
        rng=random.Random(1),
    )


class TestDetection:
    def test_new_key_is_stored_linked_and_announced(self, store):
        key = make_key()
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=[key], rating_score=2400.0)})
        near = make_run(key, keystone_time_ms=key.run_time_ms + 3_000)
        logs = FakeLogSource(runs={ARTHAS.key: [near]})
        notifier = RecordingNotifier()
        worker = make_worker(store, profile, linker=Linker(logs), notifier=notifier)

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())

        assert stats.new_keys == 1
        assert stats.match_attempts == 1
        assert stats.links == 1
        assert stats.score_updated is True
        assert [k.key_id for k in store.list_keys_since(CUTOFF)] == [1001]
        (link,) = store.list_links_for_key(1001, ARTHAS)
        assert link.report_code == "AbCd1234"
        assert link.fight_id == 7
        assert notifier.sent[0][0] == 42
        assert notifier.sent[0][1].startswith("arthas +10 Mists of Tirna Scithe")
        assert notifier.sent[0][1].endswith("#fight=7")

    def test_replay_makes_no_writes_and_no_match_attempts(self, store, monkeypatch):
        key = make_key()
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=[key], rating_score=2400.0)})
        logs = FakeLogSource()
        worker = make_worker(store, profile, linker=Linker(logs))
        writes = []

        def counting(name):
            wrapped = getattr(store, name)

            def wrapper(*args, **kwargs):
                writes.append(name)
                return wrapped(*args, **kwargs)

            return wrapper

        async def scenario():
            await worker.prepare()
            await worker.poll_once()
            for name in ("upsert_completed_key", "update_character_score", "insert_link"):
                monkeypatch.setattr(store, name, counting(name))
            return await worker.poll_once()

        stats = run(scenario())

        assert stats.fetched == 1
        assert stats.new_keys == 0
        assert stats.skipped_known == 1
        assert stats.match_attempts == 0
        assert writes == []
        assert logs.run_calls == [ARTHAS.key]

    def test_known_set_survives_restart(self, store):
        store.upsert_completed_key(make_key())
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=[make_key()])})
        logs = FakeLogSource()
        worker = make_worker(store, profile, linker=Linker(logs))

        async def scenario():
            assert await worker.prepare() == 1
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.skipped_known == 1
        assert logs.run_calls == []

    def test_synthetic_ids_dedupe_across_cycles(self, store):
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=[make_key(key_id=0)])})
        worker = make_worker(store, profile)

        async def scenario():
            await worker.prepare()
            first = await worker.poll_once()
            second = await worker.poll_once()
            return first, second

        first, second = run(scenario())
        assert first.new_keys == 1
        assert second.skipped_known == 1
        assert len(store.list_keys_since(CUTOFF)) == 1

    def test_cutoff_and_malformed_are_skipped(self, store):
        keys = [
            make_key(key_id=1, completed_at="2026-02-03T15:00:00.000Z"),
            make_key(key_id=2, completed_at="2026-01-30T10:00:00.000Z"),
            make_key(key_id=3, completed_at="sometime"),
            make_key(key_id=4),
        ]
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=keys)})
        worker = make_worker(store, profile)

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.skipped_cutoff == 2
        assert stats.skipped_malformed == 1
        assert stats.new_keys == 1
        assert [k.key_id for k in store.list_keys_since(CUTOFF)] == [4]


class TestErrorIsolation:
    def test_fetch_error_abandons_cycle(self, store):
        profile = FakeProfileSource(fail_for=[ARTHAS.key])
        worker = make_worker(store, profile)

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.fetch_failed is True
        assert store.list_keys_since(CUTOFF) == []

    def test_bad_key_skips_only_that_key(self, store):
        keys = [make_key(key_id=1, key_level=0), make_key(key_id=2)]
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=keys)})
        worker = make_worker(store, profile)

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.upsert_errors == 1
        assert stats.new_keys == 1
        # The failed key is retried next cycle.
        assert 1 not in worker.known

    def test_unparseable_run_does_not_block_siblings(self, store):
        good = {
            "dungeon": "Mists of Tirna Scithe",
            "mythic_level": 10,
            "completed_at": "2026-02-04T03:12:45.000Z",
            "clear_time_ms": 1_700_000,
            "par_time_ms": 1_800_000,
            "keystone_run_id": 1,
        }
        payload = {
            "mythic_plus_weekly_highest_level_runs": [
                good,
                dict(good, keystone_run_id=2, mythic_level="ten"),
            ]
        }
        client = httpx.AsyncClient(
            base_url="https://raider.io",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)),
        )
        worker = make_worker(store, RaiderIOClient(client=client))

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.fetch_failed is False
        assert stats.new_keys == 1
        assert [k.key_id for k in store.list_keys_since(CUTOFF)] == [1]

    def test_log_failure_keeps_the_key(self, store):
        profile = FakeProfileSource({ARTHAS.key: ProfileResult(keys=[make_key()])})
        notifier = RecordingNotifier()
        worker = make_worker(store, profile, linker=Linker(FakeLogSource(fail=True)), notifier=notifier)

        async def scenario():
            await worker.prepare()
            return await worker.poll_once()

        stats = run(scenario())
        assert stats.new_keys == 1
        assert stats.match_attempts == 1
        assert stats.links == 0
        assert "\n" not in notifier.sent[0][1]

    def test_one_character_failing_does_not_affect_another(self, store):
        profile = FakeProfileSource(
            {JAINA.key: ProfileResult(keys=[make_key(key_id=9, character=JAINA)])},
            fail_for=[ARTHAS.key],
        )
        sem = asyncio.Semaphore(2)
        workers = [
            CharacterWorker(c, store, profile, sem, clock=fixed_clock()) for c in (ARTHAS, JAINA)
        ]

        async def scenario():
            for w in workers:
                await w.prepare()
            return await asyncio.gather(*(w.poll_once() for w in workers))

        arthas_stats, jaina_stats = run(scenario())
        assert arthas_stats.fetch_failed
        assert jaina_stats.new_keys == 1


class TestConcurrency:
    @pytest.mark.parametrize("limit", [1, 2, 3])
    def test_fetches_never_exceed_limit(self, store, limit):
        characters = [Character(f"alt{i}", "illidan", "us") for i in range(7)]
        profile = FakeProfileSource(delay=0.02)
        sem = asyncio.Semaphore(limit)
        workers = [CharacterWorker(c, store, profile, sem, clock=fixed_clock()) for c in characters]

        async def scenario():
            await asyncio.gather(*(w.poll_once() for w in workers))

        run(scenario())
        assert len(profile.calls) == 7
        assert profile.peak == limit

    def test_next_delay_is_jittered_within_a_tenth(self, store):
        worker = make_worker(store, FakeProfileSource())
        delays = [worker.next_delay() for _ in range(100)]
        assert all(60.0 <= d <= 66.0 for d in delays)
        assert len(set(delays)) > 1


class TestKeyPoller:
    def test_rejects_zero_concurrency(self, store):
        with pytest.raises(ValueError):
            KeyPoller(store, FakeProfileSource(), [ARTHAS], max_concurrent=0)

    def test_start_and_stop(self, store):
        profile = FakeProfileSource(
            {ARTHAS.key: ProfileResult(keys=[make_key()]), JAINA.key: ProfileResult()}
        )
        poller = KeyPoller(
            store, profile, [ARTHAS, JAINA], interval=0.02, max_concurrent=1, clock=fixed_clock()
        )

        async def scenario():
            await poller.start()
            assert poller.running
            assert store.get_character("us", "area 52", "jaina") is not None
            await asyncio.sleep(0.15)
            stopped = await poller.stop(timeout=2.0)
            return stopped

        assert run(scenario()) is True
        assert not poller.running
        assert ARTHAS.key in profile.calls and JAINA.key in profile.calls
        assert profile.peak == 1
        assert [k.key_id for k in store.list_keys_since(CUTOFF)] == [1001]

    def test_no_characters(self, store):
        poller = KeyPoller(store, FakeProfileSource(), [])

        async def scenario():
            await poller.start()
            return await poller.stop()

        assert run(scenario()) is True
        assert poller.workers == []

    def test_staggered_first_launch(self, store):
        characters = [Character(f"alt{i}", "illidan", "us") for i in range(4)]
        profile = FakeProfileSource()
        poller = KeyPoller(store, profile, characters, interval=0.4, clock=fixed_clock())

        async def scenario():
            await poller.start()
            await asyncio.sleep(0.05)
            early = len(profile.calls)
            await poller.stop(timeout=2.0)
            return early

        # Only the first worker starts immediately; the next is 0.1s later.
        assert run(scenario()) == 1


class TestFormatAnnouncement:
    def test_under_par(self):
        key = make_key(run_time_ms=1_680_000, par_time_ms=1_800_000)
        assert format_announcement(key) == "arthas +10 Mists of Tirna Scithe (-2 min vs par)"

    def test_over_par(self):
        key = make_key(run_time_ms=1_930_000, par_time_ms=1_800_000)
        assert format_announcement(key).endswith("(+2 min vs par)")

    def test_no_par(self):
        assert format_announcement(make_key(par_time_ms=0)) == "arthas +10 Mists of Tirna Scithe"

    def test_recent_key_is_tagged(self):
        key = make_key(par_time_ms=0, completed_at="2026-02-05T11:30:00.000Z")
        assert format_announcement(key, now=NOW) == "arthas +10 Mists of Tirna Scithe (just now)"

    def test_key_an_hour_old_is_not_tagged(self):
        key = make_key(par_time_ms=0, completed_at="2026-02-05T11:00:00.000Z")
        assert "just now" not in format_announcement(key, now=NOW)

    def test_with_link(self):
        link = CorrelatedLink(
            key_id=1001, character="arthas", realm="illidan", region="us",
            report_code="AbCd", url="https://www.warcraftlogs.com/reports/AbCd",
        )
        text = format_announcement(make_key(), link)
        assert text.splitlines()[1] == "https://www.warcraftlogs.com/reports/AbCd"
