"""Tests for insight and forgetting reports."""

from __future__ import annotations

from datetime import timedelta

import pytest

from chat_memory.insights import (
    InsightGenerator,
    health_recommendations,
    identify_patterns,
    recommend,
)
from chat_memory.models import MemoryRelation, UserPreferences


def test_identify_patterns(make_record, clock):
    # START is 12:00, in the 12-16 slot
    records = [
        make_record("a", tags=["tea", "kyoto"]),
        make_record("b", tags=["tea"]),
        make_record("c", tags=["music"], created_at=clock.now() - timedelta(hours=9)),
    ]

    patterns = identify_patterns(records)

    assert patterns == [
        "Frequently discussed topics: tea, kyoto, music",
        "Most active time: 12-16 hours",
    ]


def test_identify_patterns_empty():
    assert identify_patterns([]) == []


def test_recommend():
    prefs = UserPreferences(preferred_topics=["tea"], avg_session_length=3)
    recommendations = recommend(prefs, ["Most active time: 8-12 hours"])
    assert len(recommendations) == 3
    assert recommend(None, []) == []


def test_health_recommendations():
    assert health_recommendations(80, 10, 2) == ["Memory system is well-balanced and healthy."]
    low = health_recommendations(10, 2000, 1500)
    assert len(low) == 3


class TestInsightGenerator:
    @pytest.mark.asyncio
    async def test_generate(self, store, make_record, clock):
        await store.save_profile("user-1", UserPreferences(preferred_topics=["tea"]))
        a = make_record("a", tags=["tea"])
        b = make_record("b", tags=["tea"])
        old = make_record("old", tags=["chess"], created_at=clock.now() - timedelta(days=40))
        for r in (a, b, old):
            await store.insert_record(r)
        await store.insert_relation(
            MemoryRelation(source_id=a.id, target_id=b.id, created_at=clock.now())
        )

        insight = await InsightGenerator(store, store, clock).generate("user-1")

        assert insight.patterns[0] == "Frequently discussed topics: tea"
        assert insight.preferences.preferred_topics == ["tea"]
        assert insight.relationship_map == {a.id: [b.id]}
        assert "Continue exploring your favorite topics" in insight.recommendations

    @pytest.mark.asyncio
    async def test_forgetting_report_empty_store(self, store, clock):
        report = await InsightGenerator(store, clock=clock).forgetting_report("user-1")
        assert report.memory_health == 0
        assert report.active_memories == 0
        assert report.recommendations[0].startswith("Memory health is low")

    @pytest.mark.asyncio
    async def test_forgetting_report_counts(self, store, make_record, clock):
        for importance in (9.0, 3.0, 4.0):
            await store.insert_record(make_record(importance=importance))
        await store.insert_record(make_record(importance=9.0, active=False))

        report = await InsightGenerator(store, clock=clock).forgetting_report("user-1")

        assert report.total_memories == 4
        assert report.active_memories == 3
        assert report.decaying_memories == 2
        assert report.preserved_memories == 1
        assert report.memory_health == 33
        assert "Many memories are decaying. Try to revisit important topics." in (
            report.recommendations
        )
