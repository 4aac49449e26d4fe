"""Tests for cross-session retrieval, reinforcement and session summaries."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from chat_memory.cross_session import SESSION_SUMMARY_CATEGORY, CrossSessionRetriever
from chat_memory.exceptions import ValidationError
from chat_memory.models import CrossSessionRequest, UserPreferences
from chat_memory.semantic_store import SemanticStore

from .conftest import FakeEmbedder, FakeIntelligence

QUERY = "tea ceremony"


@pytest.fixture
def intelligence():
    return FakeIntelligence()


@pytest.fixture
def semantic(store, clock, intelligence):
    embedder = FakeEmbedder({QUERY: [1.0, 0.0, 0.0]})
    return SemanticStore(store, embedder, intelligence, clock=clock)


@pytest.fixture
def retriever(store, semantic, intelligence, clock):
    return CrossSessionRetriever(store, semantic, intelligence, profiles=store, clock=clock)


@pytest.fixture
async def memories(store, make_record):
    """One memory per source plus one from the current conversation."""
    records = {
        "semantic": make_record(
            "Tea ceremony lessons on Sunday",
            conversation_id="conv-2",
            embedding=[1.0, 0.0, 0.0],
            importance=6.0,
        ),
        "structured": make_record(
            "I practiced the tea ceremony in Kyoto",
            conversation_id="conv-2",
            importance=8.0,
        ),
        "profile": make_record(
            "Trip planning", conversation_id="conv-3", tags=["kyoto"], importance=2.0
        ),
        "current": make_record("tea ceremony notes", conversation_id="conv-1"),
    }
    for record in records.values():
        await store.insert_record(record)
    await store.save_profile("user-1", UserPreferences(preferred_topics=["kyoto"]))
    return records


def _request(window: int = 10, query: str = QUERY) -> CrossSessionRequest:
    return CrossSessionRequest(
        user_id="user-1", current_conversation_id="conv-1", query=query, context_window=window
    )


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_merges_sources_by_score(self, retriever, memories):
        results = await retriever.retrieve(_request())

        assert [m.id for m in results] == [
            memories["semantic"].id,
            memories["structured"].id,
            memories["profile"].id,
        ]
        assert [m.source for m in results] == ["semantic", "structured", "profile"]
        assert results[0].relevance == pytest.approx(1.0)
        assert results[1].relevance == 0.8
        assert results[2].relevance == 0.6
        assert results[0].score == pytest.approx(0.6 * 1.0 + 0.4 * 0.6)
        assert results[1].related_conversations == ["conv-2"]

    @pytest.mark.asyncio
    async def test_current_conversation_excluded_from_structured(self, retriever, memories):
        results = await retriever.retrieve(_request())
        assert memories["current"].id not in {m.id for m in results}

    @pytest.mark.asyncio
    async def test_first_source_wins_on_duplicates(self, retriever, memories):
        results = await retriever.retrieve(_request())
        ids = [m.id for m in results]
        assert len(ids) == len(set(ids))
        semantic_hit = next(m for m in results if m.id == memories["semantic"].id)
        assert semantic_hit.source == "semantic"

    @pytest.mark.asyncio
    async def test_truncates_to_context_window(self, retriever, memories):
        results = await retriever.retrieve(_request(window=2))
        assert [m.id for m in results] == [
            memories["semantic"].id,
            memories["structured"].id,
        ]

    @pytest.mark.asyncio
    async def test_keywords_widen_structured_match(
        self, retriever, intelligence, store, make_record, memories
    ):
        intelligence.keywords = ["matcha"]
        matcha = make_record("Matcha latte recipe", conversation_id="conv-4")
        await store.insert_record(matcha)

        results = await retriever.retrieve(_request())
        assert matcha.id in {m.id for m in results}

    @pytest.mark.asyncio
    async def test_structured_match_ignores_non_ascii_case(self, retriever, store, make_record):
        trip = make_record("Ausflug nach Über-Lingen am See", conversation_id="conv-2")
        await store.insert_record(trip)

        results = await retriever.retrieve(_request(query="über-lingen"))

        assert [(m.id, m.source) for m in results] == [(trip.id, "structured")]

    @pytest.mark.asyncio
    async def test_failing_sources_are_skipped(self, retriever, semantic, store, memories):
        semantic.search = AsyncMock(side_effect=RuntimeError("vector index down"))
        store.get_preferences = AsyncMock(side_effect=RuntimeError("profile db down"))

        results = await retriever.retrieve(_request())

        assert [m.source for m in results] == ["structured", "structured"]
        assert {m.id for m in results} == {
            memories["semantic"].id,
            memories["structured"].id,
        }

    @pytest.mark.asyncio
    async def test_without_profile_source(self, store, semantic, intelligence, clock, memories):
        retriever = CrossSessionRetriever(store, semantic, intelligence, clock=clock)
        results = await retriever.retrieve(_request())
        assert memories["profile"].id not in {m.id for m in results}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query, window", [("", 5), ("   ", 5), (QUERY, 0)])
    async def test_invalid_requests(self, retriever, query, window):
        with pytest.raises(ValidationError):
            await retriever.retrieve(_request(window=window, query=query))


class TestReinforce:
    @pytest.mark.asyncio
    async def test_reinforce_updates_counters(self, retriever, store, make_record, clock):
        record = make_record(importance=5.0)
        await store.insert_record(record)
        clock.advance(hours=1)

        updated = await retriever.reinforce(record.id, strength=2)

        saved = await store.get_record(record.id)
        assert saved == updated
        assert saved.reinforcements == 2
        assert saved.importance == 6.0
        assert saved.access_count == 1
        assert saved.last_accessed == clock.now()

    @pytest.mark.asyncio
    async def test_reinforce_caps_importance(self, retriever, store, make_record):
        record = make_record(importance=9.8)
        await store.insert_record(record)
        assert (await retriever.reinforce(record.id)).importance == 10.0

    @pytest.mark.asyncio
    async def test_reinforce_unknown_record(self, retriever):
        assert await retriever.reinforce("missing") is None

    @pytest.mark.asyncio
    async def test_reinforce_rejects_non_positive_strength(self, retriever):
        with pytest.raises(ValidationError):
            await retriever.reinforce("anything", strength=0)


class TestSessionSummary:
    @pytest.mark.asyncio
    async def test_profile_topics_raise_importance(self, retriever, store):
        await store.save_profile(
            "user-1",
            UserPreferences(preferred_topics=["Astronomy"], knowledge_areas=["physics"]),
        )
        summary = "We talked about astronomy and physics. " * 15

        record = await retriever.create_session_summary("user-1", "conv-1", summary)

        assert record.importance == 10.0
        assert record.category == SESSION_SUMMARY_CATEGORY
        assert record.tags[:2] == ["Astronomy", "physics"]
        assert record.conversation_id == "conv-1"
        assert await store.get_record(record.id) is not None

    @pytest.mark.asyncio
    async def test_length_bonus_without_profile(self, retriever):
        record = await retriever.create_session_summary("user-9", "conv-1", "x" * 1200)
        assert record.importance == 7.0

    @pytest.mark.asyncio
    async def test_short_summary_base_importance(self, retriever):
        record = await retriever.create_session_summary("user-9", "conv-1", "Brief chat.")
        assert record.importance == 5.0

    @pytest.mark.asyncio
    async def test_empty_summary_rejected(self, retriever):
        with pytest.raises(ValidationError):
            await retriever.create_session_summary("user-1", "conv-1", "  ")
