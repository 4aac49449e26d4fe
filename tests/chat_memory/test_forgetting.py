"""Tests for the strategy-driven forgetting pass."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chat_memory.config import ForgettingConfig
from chat_memory.forgetting import (
    DECAY_JOB,
    GLOBAL_JOB,
    DecayEngine,
    ForgettingStrategy,
    decayed_score,
    fade,
)
from chat_memory.models import MaintenanceReport, MemoryRelation

from .conftest import FakeIntelligence


@pytest.fixture
def engine(store, clock):
    return DecayEngine(store, clock=clock)


async def _insert(store, *records):
    for record in records:
        await store.insert_record(record)


class TestHelpers:
    def test_fade_lowers_importance(self, make_record, clock):
        record = make_record(importance=5.0)
        assert fade(record, clock.now()) is False
        assert record.importance == 4.0
        assert record.decay_rate == pytest.approx(0.15)
        assert record.active is True

    def test_fade_deletes_at_floor(self, make_record, clock):
        record = make_record(importance=2.0)
        assert fade(record, clock.now()) is True
        assert record.active is False
        assert record.importance == 2.0

    def test_decayed_score(self, make_record, clock):
        record = make_record(
            importance=8.0, last_accessed=clock.now() - timedelta(days=10)
        )
        assert decayed_score(record, clock.now()) == pytest.approx(8 * math.exp(-1))

    def test_decayed_score_reinforcement_bonus(self, make_record, clock):
        record = make_record(importance=4.0, reinforcements=3)
        assert decayed_score(record, clock.now()) == pytest.approx(
            4.0 + math.log(4) * 0.5
        )


class TestStrategies:
    @pytest.mark.asyncio
    async def test_redundant_memory_removed(self, engine, store, make_record):
        weaker = make_record("tea is nice", importance=5.0, embedding=[1.0, 0.0, 0.0])
        stronger = make_record("I like tea", importance=7.0, embedding=[1.0, 0.01, 0.0])
        await _insert(store, weaker, stronger)

        report = await engine.run("user-1")

        assert report.deleted == 1
        assert report.processed == 1
        assert (await store.get_record(weaker.id)).active is False
        assert (await store.get_record(stronger.id)).active is True

    @pytest.mark.asyncio
    async def test_equal_duplicates_keep_one(self, engine, store, make_record):
        a = make_record("first copy", embedding=[0.0, 1.0, 0.0])
        b = make_record("second copy", embedding=[0.0, 1.0, 0.0])
        await _insert(store, a, b)

        await engine.run("user-1")

        states = [(await store.get_record(r.id)).active for r in (a, b)]
        assert sorted(states) == [False, True]

    @pytest.mark.asyncio
    async def test_redundancy_ignores_other_models(self, engine, store, make_record):
        a = make_record("a", embedding=[1.0, 0.0], embedding_model="model-a")
        b = make_record("b", embedding=[1.0, 0.0], embedding_model="model-b")
        await _insert(store, a, b)

        report = await engine.run("user-1")

        assert report.deleted == 0

    @pytest.mark.asyncio
    async def test_low_importance_decay(self, engine, store, make_record, clock):
        record = make_record(
            "passing remark", importance=1.5, created_at=clock.now() - timedelta(days=40)
        )
        await _insert(store, record)

        report = await engine.run("user-1")

        saved = await store.get_record(record.id)
        assert report.decayed == 1
        assert saved.importance == pytest.approx(0.75)
        assert saved.decay_rate == pytest.approx(0.2)
        assert saved.last_maintained_at == clock.now()

    @pytest.mark.asyncio
    async def test_low_importance_wins_over_unused(self, engine, store, make_record, clock):
        record = make_record(
            "old remark",
            importance=1.5,
            created_at=clock.now() - timedelta(days=90),
            last_accessed=clock.now() - timedelta(days=70),
        )
        await _insert(store, record)

        report = await engine.run("user-1")

        assert (report.decayed, report.faded) == (1, 0)

    @pytest.mark.asyncio
    async def test_unused_memory_fades(self, engine, store, make_record, clock):
        record = make_record(
            "rarely used", importance=5.0, last_accessed=clock.now() - timedelta(days=61)
        )
        await _insert(store, record)

        report = await engine.run("user-1")

        saved = await store.get_record(record.id)
        assert report.faded == 1
        assert saved.importance == 4.0
        assert saved.decay_rate == pytest.approx(0.15)

    @pytest.mark.asyncio
    async def test_unused_memory_at_floor_deleted(self, engine, store, make_record, clock):
        record = make_record(
            "rarely used", importance=2.0, last_accessed=clock.now() - timedelta(days=61)
        )
        await _insert(store, record)

        report = await engine.run("user-1")

        assert (report.faded, report.deleted) == (1, 1)
        assert (await store.get_record(record.id)).active is False

    @pytest.mark.asyncio
    async def test_frequently_used_memory_not_faded(self, engine, store, make_record, clock):
        record = make_record(
            "well used",
            access_count=3,
            last_accessed=clock.now() - timedelta(days=61),
        )
        await _insert(store, record)

        report = await engine.run("user-1")

        assert report.processed == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content", ["I was so happy at graduation", "收到礼物我很开心"]
    )
    async def test_emotional_memory_preserved(self, engine, store, make_record, content):
        record = make_record(content, importance=5.0)
        await _insert(store, record)

        report = await engine.run("user-1")

        saved = await store.get_record(record.id)
        assert report.preserved == 1
        assert saved.importance == 6.0
        assert saved.decay_rate == pytest.approx(0.05)
        assert saved.reinforcements == 1

    @pytest.mark.asyncio
    async def test_emotional_intensity_from_intelligence(self, store, make_record, clock):
        engine = DecayEngine(store, FakeIntelligence(intensity=0.8), clock=clock)
        await _insert(store, make_record("We finally met in person"))

        report = await engine.run("user-1")

        assert report.preserved == 1

    @pytest.mark.asyncio
    async def test_intensity_failure_means_not_preserved(self, store, make_record, clock):
        intelligence = FakeIntelligence()
        intelligence.emotional_intensity = AsyncMock(side_effect=RuntimeError("llm down"))
        engine = DecayEngine(store, intelligence, clock=clock)
        await _insert(store, make_record("We finally met in person"))

        report = await engine.run("user-1")

        assert (report.preserved, report.failed) == (0, 0)

    @pytest.mark.asyncio
    async def test_seasonal_memory_reactivated(self, engine, store, make_record, clock):
        record = make_record(
            "Our summer holiday by the sea",
            created_at=datetime(2024, 6, 20, tzinfo=timezone.utc),
        )
        await _insert(store, record)
        clock.advance(hours=1)

        report = await engine.run("user-1")

        saved = await store.get_record(record.id)
        assert report.reactivated == 1
        assert saved.importance == 7.0
        assert saved.access_count == 1
        assert saved.last_accessed == clock.now()

    @pytest.mark.asyncio
    async def test_seasonal_window_wraps_year_end(self, engine, store, make_record, clock):
        clock.set(datetime(2026, 1, 10, tzinfo=timezone.utc))
        december = make_record(
            "Her birthday dinner", created_at=datetime(2025, 12, 20, tzinfo=timezone.utc)
        )
        march = make_record(
            "First spring walk", created_at=datetime(2025, 3, 20, tzinfo=timezone.utc)
        )
        await _insert(store, december, march)

        report = await engine.run("user-1")

        assert report.reactivated == 1
        assert (await store.get_record(december.id)).importance == 7.0
        assert (await store.get_record(march.id)).importance == 5.0


class TestPass:
    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, engine, store, make_record, clock):
        record = make_record(
            "passing remark", importance=1.5, created_at=clock.now() - timedelta(days=40)
        )
        await _insert(store, record)

        await engine.run("user-1")
        after_first = await store.get_record(record.id)
        second = await engine.run("user-1")

        assert second == MaintenanceReport()
        assert await store.get_record(record.id) == after_first

    @pytest.mark.asyncio
    async def test_records_reprocessed_after_interval(self, engine, store, make_record, clock):
        record = make_record(
            "passing remark", importance=1.5, created_at=clock.now() - timedelta(days=40)
        )
        await _insert(store, record)

        await engine.run("user-1")
        clock.advance(hours=25)
        report = await engine.run("user-1")

        assert report.decayed == 1
        assert (await store.get_record(record.id)).importance == pytest.approx(0.375)

    @pytest.mark.asyncio
    async def test_run_logs_jobs(self, engine, store, clock):
        await engine.run("user-1")
        assert await store.last_maintenance("user-1", DECAY_JOB) == clock.now()
        assert await store.last_maintenance("user-1", GLOBAL_JOB) == clock.now()

    @pytest.mark.asyncio
    async def test_failure_on_one_record_does_not_stop_pass(self, store, make_record, clock):
        async def always(record, state):
            return True

        def explode_on_bad(record, now):
            if record.content == "bad":
                raise RuntimeError("corrupt record")
            record.importance = record.importance - 1
            return False

        strategy = ForgettingStrategy("test_decay", 1, always, explode_on_bad, "decayed")
        engine = DecayEngine(store, clock=clock, strategies=[strategy])
        good, bad = make_record("good"), make_record("bad")
        await _insert(store, bad, good)

        report = await engine.run("user-1")

        assert (report.failed, report.processed, report.decayed) == (1, 1, 1)
        assert (await store.get_record(good.id)).importance == 4.0

    @pytest.mark.asyncio
    async def test_strategies_sorted_by_priority(self, store, clock):
        async def never(record, state):
            return False

        def noop(record, now):
            return False

        engine = DecayEngine(
            store,
            clock=clock,
            strategies=[
                ForgettingStrategy("late", 9, never, noop, "decayed"),
                ForgettingStrategy("early", 1, never, noop, "decayed"),
            ],
        )
        assert [s.name for s in engine.strategies] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_other_users_untouched(self, engine, store, make_record, clock):
        record = make_record(
            "someone else's", owner_id="user-2", importance=1.5,
            created_at=clock.now() - timedelta(days=40),
        )
        await _insert(store, record)

        await engine.run("user-1")

        assert (await store.get_record(record.id)).importance == 1.5


class TestGlobalOptimization:
    @pytest.mark.asyncio
    async def test_old_unimportant_memories_purged(self, engine, store, make_record, clock):
        ancient = make_record(
            "ancient", importance=0.5, created_at=clock.now() - timedelta(days=400)
        )
        await _insert(store, ancient)

        report = await engine.run("user-1")

        assert report.purged == 1
        assert report.deleted == 1
        assert (await store.get_record(ancient.id)).active is False

    @pytest.mark.asyncio
    async def test_rebalance_fades_lowest_over_cap(self, store, make_record, clock):
        engine = DecayEngine(store, config=ForgettingConfig(max_count_per_kind=3), clock=clock)
        now = clock.now()
        lowest = make_record("a", importance=2.0)
        older_three = make_record("b", importance=3.0, last_accessed=now - timedelta(hours=2))
        newer_three = make_record("c", importance=3.0, last_accessed=now - timedelta(hours=1))
        others = [make_record("d", importance=4.0), make_record("e", importance=5.0)]
        await _insert(store, lowest, older_three, newer_three, *others)

        report = await engine.run("user-1")

        assert report.rebalanced == 2
        assert report.deleted == 1
        assert (await store.get_record(lowest.id)).active is False
        assert (await store.get_record(older_three.id)).importance == 2.0
        assert (await store.get_record(newer_three.id)).importance == 3.0

    @pytest.mark.asyncio
    async def test_hubs_reinforced(self, engine, store, make_record, clock):
        hub = make_record("hub", importance=5.0)
        leaves = [make_record(f"leaf {i}") for i in range(6)]
        await _insert(store, hub, *leaves)
        for leaf in leaves:
            await store.insert_relation(
                MemoryRelation(source_id=hub.id, target_id=leaf.id, created_at=clock.now())
            )

        report = await engine.run("user-1")

        saved = await store.get_record(hub.id)
        assert report.reinforced == 1
        assert saved.importance == 6.0
        assert saved.access_count == 1

    @pytest.mark.asyncio
    async def test_global_step_failure_is_contained(self, engine, store, make_record, clock):
        store.relation_degrees = AsyncMock(side_effect=RuntimeError("graph query failed"))
        ancient = make_record(
            "ancient", importance=0.5, created_at=clock.now() - timedelta(days=400)
        )
        await _insert(store, ancient)

        report = await engine.run("user-1")

        assert report.purged == 1
        assert await store.last_maintenance("user-1", GLOBAL_JOB) == clock.now()


class TestRefreshScores:
    @pytest.mark.asyncio
    async def test_refresh_applies_decay(self, engine, store, make_record, clock):
        stale = make_record(
            "stale", importance=8.0, last_accessed=clock.now() - timedelta(days=10)
        )
        fresh = make_record("fresh", importance=8.0)
        await _insert(store, stale, fresh)

        changed = await engine.refresh_scores("user-1")

        assert changed == 1
        assert (await store.get_record(stale.id)).importance == pytest.approx(
            8 * math.exp(-1)
        )
        assert (await store.get_record(fresh.id)).importance == 8.0
