"""Cross-session retrieval.

Surfaces long-term memories from earlier conversations using three sources
run concurrently:

- semantic: embedding similarity (relevance = similarity)
- structured: content/tag match on the query and its keywords outside the
  current conversation (relevance 0.8)
- profile: memories tagged with the user's preferred topics and knowledge
  areas, accessed recently (relevance 0.6)

Hits are deduplicated (first source wins) and ranked by
``relevance_weight * relevance + importance_weight * importance / 10``.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from loguru import logger

from .config import CrossSessionConfig
from .exceptions import ValidationError
from .interfaces import Clock, MemoryStore, ProfileSource, SystemClock, TextIntelligence
from .models import (
    MAX_IMPORTANCE,
    CrossSessionRequest,
    LongTermMemory,
    MemoryContext,
    MemoryKind,
    MemoryRecord,
    SearchResult,
)
from .semantic_store import SemanticStore

SESSION_SUMMARY_CATEGORY = "session_summary"
_TITLE_CHARS = 50


def _title(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= _TITLE_CHARS else text[:_TITLE_CHARS] + "..."


class CrossSessionRetriever:
    """Retrieves and reinforces memories across conversations."""

    def __init__(
        self,
        store: MemoryStore,
        semantic: SemanticStore,
        intelligence: TextIntelligence,
        profiles: ProfileSource | None = None,
        config: CrossSessionConfig | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._semantic = semantic
        self._intelligence = intelligence
        self._profiles = profiles
        self._config = config or CrossSessionConfig()
        self._clock = clock or SystemClock()

    async def retrieve(self, request: CrossSessionRequest) -> list[LongTermMemory]:
        """Rank memories from all sources for ``request``.

        Raises:
            ValidationError: If the query is empty or the window not positive.
        """
        if not request.query or not request.query.strip():
            raise ValidationError("query", "must not be empty")
        if request.context_window <= 0:
            raise ValidationError("context_window", "must be positive")

        semantic, structured, profile = await asyncio.gather(
            self._semantic_source(request),
            self._structured_source(request),
            self._profile_source(request),
        )

        merged: dict[str, LongTermMemory] = {}
        for memory in [*semantic, *structured, *profile]:
            if memory.id not in merged:
                merged[memory.id] = memory

        ranked = sorted(merged.values(), key=lambda m: m.score, reverse=True)
        limit = min(request.context_window, self._config.max_context)
        results = ranked[:limit]

        logger.info(
            f"Cross-session retrieval for {request.user_id}: "
            f"semantic={len(semantic)}, structured={len(structured)}, "
            f"profile={len(profile)}, returned={len(results)}"
        )
        return results

    def _score(self, relevance: float, importance: float) -> float:
        return (
            self._config.relevance_weight * relevance
            + self._config.importance_weight * (importance / MAX_IMPORTANCE)
        )

    def _from_search(self, hit: SearchResult) -> LongTermMemory:
        return LongTermMemory(
            id=hit.id,
            kind=hit.kind,
            title=_title(hit.summary or hit.content),
            content=hit.content,
            summary=hit.summary,
            importance=hit.importance,
            relevance=hit.similarity,
            last_accessed=hit.last_accessed,
            related_conversations=[hit.conversation_id] if hit.conversation_id else [],
            source="semantic",
            score=self._score(hit.similarity, hit.importance),
        )

    def _from_record(
        self, record: MemoryRecord, relevance: float, source: str
    ) -> LongTermMemory:
        return LongTermMemory(
            id=record.id,
            kind=record.kind,
            title=_title(record.summary or record.content),
            content=record.content,
            summary=record.summary,
            importance=record.importance,
            relevance=relevance,
            last_accessed=record.last_accessed,
            related_conversations=(
                [record.conversation_id] if record.conversation_id else []
            ),
            source=source,
            score=self._score(relevance, record.importance),
        )

    async def _semantic_source(self, request: CrossSessionRequest) -> list[LongTermMemory]:
        try:
            hits = await self._semantic.search(
                request.query,
                request.user_id,
                limit=max(1, request.context_window // 2),
            )
        except Exception as e:
            logger.warning(f"Semantic source failed: {e}")
            return []
        return [self._from_search(h) for h in hits]

    async def _structured_source(
        self, request: CrossSessionRequest
    ) -> list[LongTermMemory]:
        try:
            keywords = await self._intelligence.extract_keywords(request.query)
        except Exception as e:
            logger.warning(f"Keyword extraction failed: {e}")
            keywords = []

        terms = [request.query.strip(), *[k for k in keywords if k.strip()]]
        try:
            records = await self._store.query_records(
                request.user_id,
                active=True,
                exclude_conversation_id=request.current_conversation_id,
                terms=terms,
                order_by=[("importance", "desc"), ("last_accessed", "desc")],
                limit=self._config.structured_limit,
            )
        except Exception as e:
            logger.warning(f"Structured source failed: {e}")
            return []
        relevance = self._config.structured_relevance
        return [self._from_record(r, relevance, "structured") for r in records]

    async def _profile_source(self, request: CrossSessionRequest) -> list[LongTermMemory]:
        if self._profiles is None:
            return []
        try:
            preferences = await self._profiles.get_preferences(request.user_id)
            if preferences is None or not preferences.all_topics:
                return []
            since = self._clock.now() - timedelta(days=self._config.profile_window_days)
            records = await self._store.query_records(
                request.user_id,
                active=True,
                tags_any=preferences.all_topics,
                accessed_after=since,
                order_by=[("importance", "desc")],
                limit=self._config.profile_limit,
            )
        except Exception as e:
            logger.warning(f"Profile source failed: {e}")
            return []
        relevance = self._config.profile_relevance
        return [self._from_record(r, relevance, "profile") for r in records]

    async def reinforce(self, record_id: str, strength: int = 1) -> MemoryRecord | None:
        """Strengthen a memory that proved useful.

        Adds ``strength`` reinforcements and ``0.5 * strength`` importance,
        and counts one access.
        """
        if strength <= 0:
            raise ValidationError("strength", "must be positive")
        record = await self._store.get_record(record_id)
        if record is None:
            logger.warning(f"Cannot reinforce unknown memory {record_id}")
            return None

        now = self._clock.now()
        record.reinforcements += strength
        record.importance = record.importance + 0.5 * strength
        record.access_count += 1
        record.last_accessed = now
        record.updated_at = now
        await self._store.update_record(record)
        logger.debug(
            f"Reinforced memory {record_id}: importance={record.importance:.1f}, "
            f"reinforcements={record.reinforcements}"
        )
        return record

    async def create_session_summary(
        self, user_id: str, conversation_id: str, summary: str
    ) -> MemoryRecord:
        """Persist a conversation summary as a cross-session memory.

        Importance starts at 5 and grows with profile topic matches and
        summary length, capped at 10.
        """
        if not summary.strip():
            raise ValidationError("summary", "must not be empty")

        importance = 5.0
        topics: list[str] = []
        if self._profiles is not None:
            try:
                preferences = await self._profiles.get_preferences(user_id)
            except Exception as e:
                logger.warning(f"Profile lookup failed: {e}")
                preferences = None
            if preferences is not None:
                lowered = summary.lower()
                topics = [t for t in preferences.all_topics if t.lower() in lowered]
                importance += 2 * len(topics)

        if len(summary) > 500:
            importance += 1
        if len(summary) > 1000:
            importance += 1
        importance = min(importance, MAX_IMPORTANCE)

        record = await self._semantic.store(
            summary,
            MemoryContext(user_id=user_id, conversation_id=conversation_id),
            importance,
            kind=MemoryKind.SEMANTIC,
            category=SESSION_SUMMARY_CATEGORY,
            extra_tags=topics,
        )
        logger.info(
            f"Session summary stored for {conversation_id} "
            f"(importance={record.importance:.1f})"
        )
        return record
