"""Memory Service - facade for the tiered memory system.

This is the object a chat application holds. It scores and buffers incoming
messages, indexes the important ones, builds token-budgeted prompts enriched
with cross-session memories, and runs maintenance in the background.

Memory is an enhancement: request-path failures and timeouts are logged and
degrade to plain behaviour instead of failing the chat turn.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger

from .config import MemoryConfig
from .consolidation import MemoryConsolidator
from .context_assembler import ContextAssembler
from .cross_session import CrossSessionRetriever
from .embedding import EmbeddingService
from .ephemeral import ConversationBuffer, WorkingItem
from .forgetting import DecayEngine
from .importance import ImportanceScorer
from .insights import InsightGenerator
from .profile_learner import ProfileLearner
from .interfaces import (
    ChatLLM,
    Clock,
    EmbeddingGenerator,
    MemoryStore,
    ProfileSource,
    ProfileStore,
    SystemClock,
    TextIntelligence,
)
from .models import (
    ChatMessage,
    ConsolidationReport,
    CrossSessionRequest,
    ForgettingReport,
    LongTermMemory,
    MaintenanceReport,
    MemoryContext,
    MemoryInsight,
    MemoryKind,
    MemoryRecord,
    ScoringInput,
    SearchResult,
    UserPreferences,
)
from .scheduler import MaintenanceScheduler
from .semantic_store import SemanticStore
from .storage.sqlite_store import SQLiteStore
from .text_intelligence import PREFERENCE_PATTERN, LLMTextIntelligence
from .token_counter import TokenCounter

WORKING_SEARCH_LIMIT = 3


class MemoryService:
    """Main memory service facade.

    Collaborators default to the bundled implementations: a SQLite store
    (also used as profile source), sentence-transformers embeddings and LLM
    text intelligence with heuristic fallbacks.

    Call :meth:`start` before use and :meth:`close` on shutdown.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        store: MemoryStore | None = None,
        embedder: EmbeddingGenerator | None = None,
        intelligence: TextIntelligence | None = None,
        llm: ChatLLM | None = None,
        profiles: ProfileSource | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or MemoryConfig()
        cfg = self.config
        self._clock = clock or SystemClock()

        self._owns_store = store is None
        self._store: MemoryStore = store or SQLiteStore(cfg.storage.sqlite_db_path)
        self._store_initialized = not self._owns_store

        if profiles is None and isinstance(self._store, ProfileSource):
            profiles = self._store
        self._profiles = profiles

        self._embedder = embedder or EmbeddingService(cfg.embedding)
        self._intelligence = intelligence or LLMTextIntelligence(
            llm, summary_fallback_chars=cfg.semantic.summary_fallback_chars
        )

        self.token_counter = TokenCounter(config=cfg.tokens)
        self.scorer = ImportanceScorer(
            self._clock, recency_weight=cfg.scoring.recency_hours_weight
        )
        self.buffer = ConversationBuffer(cfg.ephemeral, self._clock)
        self.assembler = ContextAssembler(self.token_counter, self.scorer, cfg.context)
        self.semantic = SemanticStore(
            self._store,
            self._embedder,
            self._intelligence,
            cfg.semantic,
            self._clock,
            ephemeral_ttl_seconds=cfg.ephemeral.ttl_seconds,
        )
        self.cross_session = CrossSessionRetriever(
            self._store,
            self.semantic,
            self._intelligence,
            self._profiles,
            cfg.cross_session,
            self._clock,
        )
        self.engine = DecayEngine(
            self._store, self._intelligence, cfg.forgetting, self._clock
        )
        self.consolidator = MemoryConsolidator(
            self._store, self.semantic, self._intelligence, cfg.consolidation, self._clock
        )
        self.insights = InsightGenerator(self._store, self._profiles, self._clock)
        self.profile_learner: ProfileLearner | None = None
        if cfg.profile.enabled and isinstance(self._profiles, ProfileStore):
            self.profile_learner = ProfileLearner(
                self._profiles, self._intelligence, cfg.profile, self._clock
            )
        self.scheduler = MaintenanceScheduler(
            self.engine,
            self.consolidator,
            self._store,
            self.buffer,
            cfg.scheduler,
            self._clock,
        )
        self._background: set[asyncio.Task] = set()

        logger.debug(f"MemoryService full config: {cfg.model_dump()}")
        logger.info(
            f"MemoryService initialized: enabled={cfg.enabled}, "
            f"sqlite_db_path={cfg.storage.sqlite_db_path!r}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _ensure_store(self) -> MemoryStore:
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
        return self._store

    async def start(self) -> None:
        """Open storage and start background maintenance."""
        await self._ensure_store()
        if self.config.enabled:
            self.scheduler.start()

    async def close(self) -> None:
        """Stop maintenance, drain pending writes and release storage."""
        await self.scheduler.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_store and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
        logger.info("MemoryService closed")

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task:
        """Fire-and-forget ``coro``; failures are only logged."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning(f"Background {label} failed: {exc}")

        task.add_done_callback(_done)
        return task

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def score(self, message: ChatMessage | ScoringInput) -> float:
        if isinstance(message, ChatMessage):
            return self.scorer.score_message(message)
        return self.scorer.score(message)

    def assemble_context(
        self,
        system_prompt: str | None,
        history: list[ChatMessage],
        current_message: str,
        model_token_limit: int | None = None,
        attachment_text: str | None = None,
        model: str | None = None,
    ) -> list[dict]:
        return self.assembler.assemble(
            system_prompt,
            history,
            current_message,
            model_token_limit,
            attachment_text=attachment_text,
            model=model,
        )

    async def build_context(
        self,
        user_id: str,
        conversation_id: str,
        current_message: str,
        system_prompt: str | None = None,
        history: list[ChatMessage] | None = None,
        model_token_limit: int | None = None,
        attachment_text: str | None = None,
        model: str | None = None,
    ) -> list[dict]:
        """Assemble a prompt enriched with memories from earlier sessions.

        Cross-session retrieval gets ``request_timeout_seconds``; if it times
        out or fails the prompt is assembled without it.
        """
        limit = model_token_limit or self.config.context.default_model_token_limit
        if history is None:
            history = self.buffer.get_messages(conversation_id)

        memories: list[LongTermMemory] = []
        if self.config.enabled and current_message.strip():
            request = CrossSessionRequest(
                user_id=user_id,
                current_conversation_id=conversation_id,
                query=current_message,
                context_window=self.config.cross_session.max_context,
            )
            try:
                memories = await asyncio.wait_for(
                    self.cross_session_context(request),
                    timeout=self.config.context.request_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Memory retrieval timed out after "
                    f"{self.config.context.request_timeout_seconds}s, "
                    "using plain prompt"
                )
            except Exception as e:
                logger.warning(f"Memory retrieval failed, using plain prompt: {e}")

        system_content = system_prompt
        if memories:
            budget = int(limit * self.config.context.memory_budget_ratio)
            memories_text = self.assembler.format_memories(memories, budget)
            if memories_text:
                base = system_prompt or ""
                system_content = f"{base}\n\n[Relevant memories]\n{memories_text}".lstrip()
            for memory in memories:
                self.buffer.add_working(
                    conversation_id, memory.id, memory.content, memory.relevance
                )
            untouched = [m.id for m in memories if m.source != "semantic"]
            if untouched:
                self._spawn(
                    self._store.touch_records(untouched, self._clock.now()),
                    "access update",
                )

        return self.assemble_context(
            system_content,
            history,
            current_message,
            limit,
            attachment_text=attachment_text,
            model=model,
        )

    async def index_if_important(
        self,
        content: str,
        context: MemoryContext,
        importance: float | None = None,
    ) -> MemoryRecord | None:
        """Persist ``content`` as long-term memory if it scores above threshold."""
        if importance is None:
            importance = self.scorer.score(ScoringInput(content=content))
        if importance <= self.config.scoring.semantic_index_threshold:
            return None

        await self._ensure_store()
        kind = MemoryKind.PREFERENCE if PREFERENCE_PATTERN.search(content) else MemoryKind.SEMANTIC
        try:
            record = await self.semantic.store(content, context, importance, kind=kind)
            if record.kind == MemoryKind.SEMANTIC and record.category == "preference":
                record.kind = MemoryKind.PREFERENCE
                await self._store.update_record(record)
        except Exception as e:
            logger.error(f"Failed to index memory for {context.user_id}: {e}")
            return None

        self.scheduler.mark_dirty(context.user_id)
        return record

    async def search(
        self, query: str, user_id: str, limit: int = 10
    ) -> list[SearchResult]:
        await self._ensure_store()
        return await self.semantic.search(query, user_id, limit)

    async def cross_session_context(
        self, request: CrossSessionRequest
    ) -> list[LongTermMemory]:
        await self._ensure_store()
        return await self.cross_session.retrieve(request)

    async def reinforce(self, record_id: str, strength: int = 1) -> MemoryRecord | None:
        await self._ensure_store()
        return await self.cross_session.reinforce(record_id, strength)

    def reinforce_later(self, record_id: str, strength: int = 1) -> asyncio.Task:
        """Schedule :meth:`reinforce` without waiting for it."""
        return self._spawn(self.reinforce(record_id, strength), "reinforcement")

    async def process_message(
        self,
        user_id: str,
        conversation_id: str,
        message: ChatMessage,
    ) -> float:
        """Record an inbound message in every tier it qualifies for.

        Returns the message's importance score.
        """
        importance = self.scorer.score_message(message)
        self.buffer.add_message(
            conversation_id, message.model_copy(update={"importance": importance})
        )

        if not self.config.enabled or not message.content.strip():
            return importance

        if message.is_from_user:
            await self._learn_profile(user_id, message)

        context = MemoryContext(user_id=user_id, conversation_id=conversation_id)
        await self.index_if_important(message.content, context, importance)

        if message.is_from_user:
            try:
                related = await self.search(
                    message.content, user_id, limit=WORKING_SEARCH_LIMIT
                )
            except Exception as e:
                logger.warning(f"Working memory update failed: {e}")
                related = []
            for hit in related:
                self.buffer.add_working(
                    conversation_id, hit.id, hit.content, hit.similarity
                )

        self.scheduler.mark_dirty(user_id)
        return importance

    async def _learn_profile(self, user_id: str, message: ChatMessage) -> None:
        if self.profile_learner is None:
            return
        await self._ensure_store()
        try:
            await self.profile_learner.learn(user_id, message.content, message.timestamp)
        except Exception as e:
            logger.warning(f"Profile update failed for {user_id}: {e}")

    async def update_session_stats(
        self, user_id: str, session_length: int
    ) -> UserPreferences | None:
        """Record a finished session of ``session_length`` messages."""
        if self.profile_learner is None:
            return None
        await self._ensure_store()
        try:
            return await self.profile_learner.update_session_stats(user_id, session_length)
        except Exception as e:
            logger.error(f"Failed to update session stats for {user_id}: {e}")
            return None

    def working_memory(self, conversation_id: str) -> list[WorkingItem]:
        return self.buffer.get_working(conversation_id)

    async def create_session_summary(
        self, user_id: str, conversation_id: str, summary: str
    ) -> MemoryRecord:
        await self._ensure_store()
        record = await self.cross_session.create_session_summary(
            user_id, conversation_id, summary
        )
        self.scheduler.mark_dirty(user_id)
        return record

    # ------------------------------------------------------------------
    # Maintenance and reports
    # ------------------------------------------------------------------

    async def run_maintenance(self, user_id: str) -> MaintenanceReport | None:
        """Run a forgetting pass now; None if one is already running."""
        await self._ensure_store()
        return await self.scheduler.run_now(user_id)

    async def consolidate(self, user_id: str) -> ConsolidationReport | None:
        await self._ensure_store()
        return await self.scheduler.consolidate_now(user_id)

    async def refresh_scores(self, user_id: str) -> int:
        await self._ensure_store()
        return await self.engine.refresh_scores(user_id)

    async def generate_insights(self, user_id: str) -> MemoryInsight:
        await self._ensure_store()
        try:
            return await self.insights.generate(user_id)
        except Exception as e:
            logger.error(f"Failed to generate insights for {user_id}: {e}")
            return MemoryInsight()

    async def forgetting_report(self, user_id: str) -> ForgettingReport:
        await self._ensure_store()
        try:
            return await self.insights.forgetting_report(user_id)
        except Exception as e:
            logger.error(f"Failed to build forgetting report for {user_id}: {e}")
            return ForgettingReport()
