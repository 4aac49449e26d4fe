"""Semantic memory: enrichment, persistence and similarity search.

Content is enriched concurrently (embedding, summary, keywords, entities,
category) before it is persisted. Search compares stored embeddings produced
by the same model only and ranks hits by a blend of similarity and importance:

  score = similarity_weight * similarity + importance_weight * importance / 10
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Sequence

from loguru import logger

from .config import SemanticConfig
from .embedding import cosine_similarity
from .exceptions import ValidationError
from .interfaces import (
    Clock,
    EmbeddingGenerator,
    MemoryStore,
    SystemClock,
    TextIntelligence,
)
from .models import (
    MAX_IMPORTANCE,
    MemoryContext,
    MemoryKind,
    MemoryRecord,
    MemoryRelation,
    SearchResult,
)


class SemanticStore:
    """Adapter between conversation content and the persistent store.

    Args:
        store: Persistent memory store.
        embedder: Embedding generator; its ``model_tag`` is stamped on records.
        intelligence: Summaries, keywords, entities and categories.
        config: Search thresholds and weights.
        clock: Time source.
        ephemeral_ttl_seconds: Lifetime of records stored as EPHEMERAL.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingGenerator,
        intelligence: TextIntelligence,
        config: SemanticConfig | None = None,
        clock: Clock | None = None,
        ephemeral_ttl_seconds: int = 24 * 60 * 60,
    ):
        self._store = store
        self._embedder = embedder
        self._intelligence = intelligence
        self._config = config or SemanticConfig()
        self._clock = clock or SystemClock()
        self._ephemeral_ttl = timedelta(seconds=ephemeral_ttl_seconds)

    @property
    def model_tag(self) -> str:
        return self._embedder.model_tag

    async def _guard(self, label: str, call: Awaitable[Any], fallback: Any) -> Any:
        try:
            return await call
        except Exception as e:
            logger.warning(f"{label} failed, using fallback: {e}")
            return fallback

    def _truncate(self, text: str) -> str:
        limit = self._config.summary_fallback_chars
        return text if len(text) <= limit else text[:limit] + "..."

    async def embed(self, text: str) -> list[float] | None:
        """Embedding for ``text``, or None if the generator failed."""
        vector = await self._guard("Embedding", self._embedder.embed(text), None)
        return vector or None

    async def store(
        self,
        content: str,
        context: MemoryContext,
        importance: float,
        kind: MemoryKind = MemoryKind.SEMANTIC,
        category: str | None = None,
        extra_tags: Sequence[str] = (),
    ) -> MemoryRecord:
        """Enrich and persist ``content`` as a memory record.

        A given ``category`` skips classification; ``extra_tags`` are placed
        ahead of the extracted ones.
        """
        if not content.strip():
            raise ValidationError("content", "must not be empty")

        embedding, summary, keywords, entities, category = await asyncio.gather(
            self.embed(content),
            self._guard(
                "Summary", self._intelligence.summarize(content), ""
            ),
            self._guard(
                "Keyword extraction", self._intelligence.extract_keywords(content), []
            ),
            self._guard(
                "Entity extraction", self._intelligence.extract_entities(content), []
            ),
            self._categorize(content, category),
        )

        tags: list[str] = []
        for tag in [*extra_tags, *keywords, *entities]:
            tag = tag.strip()
            if tag and tag not in tags:
                tags.append(tag)

        now = self._clock.now()
        record = MemoryRecord(
            owner_id=context.user_id,
            conversation_id=context.conversation_id,
            kind=kind,
            content=content,
            summary=summary or self._truncate(content),
            tags=tags[: self._config.max_tags],
            category=category or "general",
            embedding=embedding,
            embedding_model=self.model_tag if embedding else None,
            importance=importance,
            created_at=now,
            updated_at=now,
            last_accessed=now,
            expires_at=now + self._ephemeral_ttl if kind == MemoryKind.EPHEMERAL else None,
        )
        await self._store.insert_record(record)
        logger.info(
            f"Stored {kind.value} memory {record.id} for {context.user_id} "
            f"(importance={record.importance:.1f}, tags={len(record.tags)}, "
            f"embedded={embedding is not None})"
        )
        return record

    async def _categorize(self, content: str, category: str | None) -> str:
        if category:
            return category
        return await self._guard(
            "Categorization", self._intelligence.categorize(content), "general"
        )

    def _rank(
        self,
        query_embedding: list[float],
        records: list[MemoryRecord],
        threshold: float,
    ) -> list[SearchResult]:
        results: list[SearchResult] = []
        for record in records:
            if not record.embedding:
                continue
            similarity = cosine_similarity(query_embedding, record.embedding)
            if similarity < threshold:
                continue
            results.append(
                SearchResult(
                    id=record.id,
                    content=record.content,
                    summary=record.summary,
                    similarity=similarity,
                    importance=record.importance,
                    last_accessed=record.last_accessed,
                    tags=record.tags,
                    conversation_id=record.conversation_id,
                    kind=record.kind,
                )
            )
        results.sort(key=self.score, reverse=True)
        return results

    def score(self, result: SearchResult) -> float:
        return (
            self._config.similarity_weight * result.similarity
            + self._config.importance_weight * (result.importance / MAX_IMPORTANCE)
        )

    async def search(
        self, query: str, owner_id: str, limit: int | None = None
    ) -> list[SearchResult]:
        """Similar active memories of ``owner_id``, best first.

        Every returned record has its access counter incremented. A failure
        to record the access is logged and does not affect the results.
        """
        if not query or not query.strip():
            raise ValidationError("query", "must not be empty")
        limit = self._config.max_results if limit is None else limit
        if limit <= 0:
            raise ValidationError("limit", "must be positive")

        query_embedding = await self.embed(query)
        if query_embedding is None:
            return []

        try:
            records = await self._store.query_records(
                owner_id, active=True, embedding_model=self.model_tag
            )
        except Exception as e:
            logger.warning(f"Failed to load memories for search: {e}")
            return []

        results = self._rank(
            query_embedding, records, self._config.similarity_threshold
        )[:limit]

        if results:
            try:
                await self._store.touch_records(
                    [r.id for r in results], self._clock.now()
                )
            except Exception as e:
                logger.warning(f"Failed to update access stats: {e}")

        logger.debug(
            f"Semantic search for {owner_id}: {len(records)} candidates, "
            f"{len(results)} results"
        )
        return results

    async def find_related(
        self,
        record_id: str,
        limit: int = 5,
        threshold: float | None = None,
    ) -> list[SearchResult]:
        """Active memories similar to an existing record, excluding itself.

        Uses the stored embedding and does not count as an access.
        """
        record = await self._store.get_record(record_id)
        if record is None or not record.embedding or not record.embedding_model:
            return []

        peers = await self._store.query_records(
            record.owner_id, active=True, embedding_model=record.embedding_model
        )
        peers = [p for p in peers if p.id != record.id]
        threshold = self._config.similarity_threshold if threshold is None else threshold
        return self._rank(record.embedding, peers, threshold)[:limit]

    async def create_relation(
        self,
        source_id: str,
        target_id: str,
        relation_type: str = "related",
        strength: float = 1.0,
    ) -> MemoryRelation:
        relation = MemoryRelation(
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            strength=strength,
            created_at=self._clock.now(),
        )
        await self._store.insert_relation(relation)
        return relation

    async def recent_context(
        self,
        owner_id: str,
        conversation_id: str | None = None,
        hours: float = 24,
        limit: int = 5,
    ) -> list[SearchResult]:
        """Memories accessed in the last ``hours``, most important first."""
        since = self._clock.now() - timedelta(hours=hours)
        try:
            records = await self._store.query_records(
                owner_id,
                active=True,
                conversation_id=conversation_id,
                accessed_after=since,
                order_by=[("importance", "desc")],
                limit=limit,
            )
        except Exception as e:
            logger.warning(f"Failed to load recent context: {e}")
            return []

        return [
            SearchResult(
                id=r.id,
                content=r.content,
                summary=r.summary,
                similarity=1.0,
                importance=r.importance,
                last_accessed=r.last_accessed,
                tags=r.tags,
                conversation_id=r.conversation_id,
                kind=r.kind,
            )
            for r in records
        ]
