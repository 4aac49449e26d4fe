"""Memory consolidation.

Frequently used, settled memories are rewritten as a single summarized
CONSOLIDATED record that decays more slowly. The source is deactivated but
kept, and edges link the new record to its source and related peers.
"""

from __future__ import annotations

from datetime import timedelta

from loguru import logger

from .config import ConsolidationConfig
from .interfaces import Clock, MemoryStore, SystemClock, TextIntelligence
from .models import ConsolidationReport, MemoryKind, MemoryRecord
from .semantic_store import SemanticStore

CONSOLIDATION_JOB = "consolidation"


class MemoryConsolidator:
    """Promotes frequently accessed memories to consolidated knowledge."""

    def __init__(
        self,
        store: MemoryStore,
        semantic: SemanticStore,
        intelligence: TextIntelligence,
        config: ConsolidationConfig | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._semantic = semantic
        self._intelligence = intelligence
        self._config = config or ConsolidationConfig()
        self._clock = clock or SystemClock()

    async def find_candidates(self, user_id: str) -> list[MemoryRecord]:
        now = self._clock.now()
        return await self._store.query_records(
            user_id,
            active=True,
            kinds=[MemoryKind.SEMANTIC],
            categories=self._config.categories,
            min_access_count=self._config.min_access_count,
            created_before=now - timedelta(days=self._config.min_age_days),
            order_by=[("importance", "desc")],
        )

    async def consolidate(self, user_id: str) -> ConsolidationReport:
        """Consolidate all candidates of ``user_id``, then clean up old memories."""
        report = ConsolidationReport()
        if not self._config.enabled:
            return report

        candidates = await self.find_candidates(user_id)
        report.candidates = len(candidates)

        for record in candidates:
            try:
                report.relations_created += await self._consolidate_one(record)
                report.consolidated += 1
            except Exception as e:
                logger.error(f"Consolidation of {record.id} failed: {e}")

        report.cleaned_up = await self.cleanup_old(user_id)

        await self._store.log_maintenance(
            user_id, CONSOLIDATION_JOB, self._clock.now(), report.model_dump_json()
        )
        logger.info(f"Consolidation for {user_id}: {report.model_dump()}")
        return report

    async def _consolidate_one(self, record: MemoryRecord) -> int:
        """Replace ``record`` with a consolidated copy; returns edges created."""
        try:
            summary = await self._intelligence.summarize(record.content)
        except Exception as e:
            logger.warning(f"Consolidated summary failed for {record.id}: {e}")
            summary = ""
        summary = summary or record.summary or record.content

        related = await self._semantic.find_related(
            record.id,
            limit=self._config.related_limit,
            threshold=self._config.related_similarity,
        )

        embedding = await self._semantic.embed(summary)
        embedding_model = self._semantic.model_tag if embedding else None
        if embedding is None:
            embedding, embedding_model = record.embedding, record.embedding_model

        now = self._clock.now()
        consolidated = MemoryRecord(
            owner_id=record.owner_id,
            conversation_id=record.conversation_id,
            kind=MemoryKind.CONSOLIDATED,
            content=summary,
            summary=summary,
            tags=record.tags,
            category=record.category,
            embedding=embedding,
            embedding_model=embedding_model,
            importance=min(record.importance + self._config.importance_boost, 10.0),
            decay_rate=self._config.consolidated_decay_rate,
            reinforcements=record.reinforcements + 1,
            access_count=record.access_count,
            created_at=now,
            updated_at=now,
            last_accessed=now,
        )
        await self._store.insert_record(consolidated)

        await self._semantic.create_relation(
            consolidated.id, record.id, relation_type="consolidated_from"
        )
        for peer in related:
            await self._semantic.create_relation(
                consolidated.id, peer.id, relation_type="related",
                strength=peer.similarity,
            )

        await self._store.deactivate_records([record.id], now)
        logger.debug(
            f"Consolidated {record.id} -> {consolidated.id} "
            f"({len(related)} related memories)"
        )
        return 1 + len(related)

    async def cleanup_old(self, user_id: str) -> int:
        """Deactivate old memories that stayed unimportant and unused."""
        now = self._clock.now()
        old = await self._store.query_records(
            user_id,
            active=True,
            created_before=now - timedelta(days=self._config.cleanup_age_days),
        )
        ids = [
            r.id
            for r in old
            if r.importance < self._config.cleanup_importance_threshold
            and r.access_count < self._config.cleanup_max_access_count
        ]
        return await self._store.deactivate_records(ids, now)
