"""Strategy-driven forgetting.

A maintenance pass walks a user's active memories and applies, per record,
the first strategy whose condition holds:

1. redundancy removal   -> soft delete
2. low-importance decay -> decay rate x2, importance /2
3. unused cleanup       -> gradual fade
4. context preservation -> importance +1, decay rate /2, reinforcement +1
5. seasonal reactivation-> importance +2, counts as an access

Global optimization follows: purge of very old unimportant memories,
per-kind rebalancing and reinforcement of highly connected memories.

Records the pass changes are stamped with ``last_maintained_at`` and skipped
for ``reprocess_interval_hours``; global optimization is tracked in the
maintenance log with the same window. Running the pass twice in a row
therefore changes nothing the second time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger

from .config import ForgettingConfig
from .embedding import cosine_similarity
from .exceptions import MaintenanceRecordError
from .interfaces import Clock, MemoryStore, SystemClock, TextIntelligence
from .models import MaintenanceReport, MemoryRecord, clamp_importance

GLOBAL_JOB = "global"
DECAY_JOB = "decay"

EMOTIONAL_KEYWORDS = (
    "happy", "sad", "angry", "excited", "worried", "grateful", "proud",
    "disappointed", "surprised", "confused", "frustrated", "relieved",
    "开心", "难过", "生气", "兴奋", "担心", "感谢", "骄傲", "失望", "惊讶",
    "困惑", "沮丧", "安心",
)

SEASONAL_KEYWORDS = (
    "spring", "summer", "autumn", "winter", "holiday", "birthday", "anniversary",
    "春天", "夏天", "秋天", "冬天", "假期", "生日", "纪念日", "节日",
)


def _mentions(record: MemoryRecord, keywords: tuple[str, ...]) -> bool:
    content = record.content.lower()
    tags = [t.lower() for t in record.tags]
    return any(k in content or any(k in t for t in tags) for k in keywords)


@dataclass
class PassState:
    """Shared view of the records in one maintenance pass."""

    now: datetime
    records: list[MemoryRecord]
    deactivated: set[str] = field(default_factory=set)


Condition = Callable[[MemoryRecord, PassState], Awaitable[bool]]
Action = Callable[[MemoryRecord, datetime], bool]


@dataclass(frozen=True)
class ForgettingStrategy:
    """One rule of the forgetting pass.

    ``action`` mutates the record in place and returns True when it
    soft-deleted it. ``outcome`` names the report counter it increments.
    """

    name: str
    priority: int
    condition: Condition
    action: Action
    outcome: str


def fade(record: MemoryRecord, now: datetime) -> bool:
    """Lower importance by one, or soft delete when it would reach 1 or less."""
    record.updated_at = now
    if record.importance - 1 <= 1:
        record.active = False
        return True
    record.importance = record.importance - 1
    record.decay_rate = record.decay_rate + 0.05
    return False


def decayed_score(record: MemoryRecord, now: datetime) -> float:
    """Importance after exponential decay since the last access."""
    days = max(0.0, record.days_since_access(now))
    value = record.importance * math.exp(-record.decay_rate * days)
    value += math.log(record.reinforcements + 1) * 0.5
    return clamp_importance(value)


class DecayEngine:
    """Runs forgetting passes for one user at a time.

    The engine is not safe to run concurrently for the same user; the
    scheduler serializes runs per user.
    """

    def __init__(
        self,
        store: MemoryStore,
        intelligence: TextIntelligence | None = None,
        config: ForgettingConfig | None = None,
        clock: Clock | None = None,
        strategies: list[ForgettingStrategy] | None = None,
    ):
        self._store = store
        self._intelligence = intelligence
        self._config = config or ForgettingConfig()
        self._clock = clock or SystemClock()
        strategies = strategies if strategies is not None else self.default_strategies()
        self.strategies = sorted(strategies, key=lambda s: s.priority)

    def default_strategies(self) -> list[ForgettingStrategy]:
        return [
            ForgettingStrategy(
                "redundancy_removal", 1, self._is_redundant, self._soft_delete, "deleted"
            ),
            ForgettingStrategy(
                "low_importance_decay", 2, self._is_low_importance,
                self._accelerate_decay, "decayed",
            ),
            ForgettingStrategy("unused_cleanup", 3, self._is_unused, fade, "faded"),
            ForgettingStrategy(
                "context_preservation", 4, self._has_emotional_context,
                self._preserve, "preserved",
            ),
            ForgettingStrategy(
                "seasonal_reactivation", 5, self._is_seasonal,
                self._reactivate, "reactivated",
            ),
        ]

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    async def _is_redundant(self, record: MemoryRecord, state: PassState) -> bool:
        if not record.embedding or not record.embedding_model:
            return False
        for other in state.records:
            if (
                other.id == record.id
                or other.id in state.deactivated
                or other.embedding_model != record.embedding_model
                or other.importance < record.importance
            ):
                continue
            similarity = cosine_similarity(record.embedding, other.embedding)
            if similarity > self._config.redundancy_similarity:
                return True
        return False

    async def _is_low_importance(self, record: MemoryRecord, state: PassState) -> bool:
        return (
            record.importance < self._config.low_importance_threshold
            and record.age_days(state.now) > self._config.low_importance_age_days
        )

    async def _is_unused(self, record: MemoryRecord, state: PassState) -> bool:
        return (
            record.days_since_access(state.now) > self._config.unused_days
            and record.access_count < self._config.unused_max_access_count
        )

    async def _has_emotional_context(
        self, record: MemoryRecord, state: PassState
    ) -> bool:
        if _mentions(record, EMOTIONAL_KEYWORDS):
            return True
        if self._intelligence is None:
            return False
        try:
            intensity = await self._intelligence.emotional_intensity(record.content)
        except Exception as e:
            logger.warning(f"Emotional intensity check failed for {record.id}: {e}")
            return False
        return intensity > self._config.emotional_intensity_threshold

    async def _is_seasonal(self, record: MemoryRecord, state: PassState) -> bool:
        month_diff = abs(record.created_at.month - state.now.month)
        if not (month_diff <= 1 or month_diff >= 11):
            return False
        return _mentions(record, SEASONAL_KEYWORDS)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @staticmethod
    def _soft_delete(record: MemoryRecord, now: datetime) -> bool:
        record.active = False
        record.updated_at = now
        return True

    @staticmethod
    def _accelerate_decay(record: MemoryRecord, now: datetime) -> bool:
        record.decay_rate = record.decay_rate * 2
        record.importance = record.importance / 2
        record.updated_at = now
        return False

    @staticmethod
    def _preserve(record: MemoryRecord, now: datetime) -> bool:
        record.importance = record.importance + 1
        record.decay_rate = record.decay_rate / 2
        record.reinforcements += 1
        record.updated_at = now
        return False

    @staticmethod
    def _reactivate(record: MemoryRecord, now: datetime) -> bool:
        record.importance = record.importance + 2
        record.last_accessed = now
        record.access_count += 1
        record.updated_at = now
        return False

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def _recently_maintained(self, record: MemoryRecord, now: datetime) -> bool:
        if record.last_maintained_at is None:
            return False
        window = timedelta(hours=self._config.reprocess_interval_hours)
        return now - record.last_maintained_at < window

    async def _select(
        self, record: MemoryRecord, state: PassState
    ) -> ForgettingStrategy | None:
        for strategy in self.strategies:
            if await strategy.condition(record, state):
                return strategy
        return None

    async def _apply(
        self, record: MemoryRecord, state: PassState, report: MaintenanceReport
    ) -> None:
        strategy = await self._select(record, state)
        if strategy is None:
            return
        try:
            deleted = strategy.action(record, state.now)
            record.last_maintained_at = state.now
            await self._store.update_record(record)
        except Exception as e:
            raise MaintenanceRecordError(record.id, strategy.name, str(e)) from e

        report.processed += 1
        setattr(report, strategy.outcome, getattr(report, strategy.outcome) + 1)
        if deleted:
            state.deactivated.add(record.id)
            if strategy.outcome != "deleted":
                report.deleted += 1
        logger.debug(f"Memory {record.id}: applied {strategy.name}")

    async def run(self, user_id: str) -> MaintenanceReport:
        """Run one forgetting pass plus global optimization for ``user_id``."""
        now = self._clock.now()
        report = MaintenanceReport()

        records = await self._store.query_records(user_id, active=True)
        state = PassState(now=now, records=records)

        for record in records:
            if record.id in state.deactivated or self._recently_maintained(record, now):
                continue
            try:
                await self._apply(record, state, report)
            except MaintenanceRecordError as e:
                report.failed += 1
                logger.error(str(e))
            except Exception as e:
                report.failed += 1
                logger.error(f"Maintenance of {record.id} failed: {e}")

        await self._global_optimization(user_id, now, report)

        await self._store.log_maintenance(
            user_id, DECAY_JOB, now, report.model_dump_json()
        )
        logger.info(f"Forgetting pass for {user_id}: {report.model_dump()}")
        return report

    async def _global_optimization(
        self, user_id: str, now: datetime, report: MaintenanceReport
    ) -> None:
        window = timedelta(hours=self._config.reprocess_interval_hours)
        last = await self._store.last_maintenance(user_id, GLOBAL_JOB)
        if last is not None and now - last < window:
            logger.debug(f"Global optimization for {user_id} ran at {last}, skipping")
            return

        for step in (self._purge_expired, self._rebalance, self._reinforce_hubs):
            try:
                await step(user_id, now, report)
            except Exception as e:
                logger.error(f"Global optimization step {step.__name__} failed: {e}")

        await self._store.log_maintenance(
            user_id,
            GLOBAL_JOB,
            now,
            f"purged={report.purged} rebalanced={report.rebalanced} "
            f"reinforced={report.reinforced}",
        )

    async def _purge_expired(
        self, user_id: str, now: datetime, report: MaintenanceReport
    ) -> None:
        cutoff = now - timedelta(days=self._config.max_retention_days)
        old = await self._store.query_records(
            user_id, active=True, created_before=cutoff
        )
        ids = [
            r.id for r in old
            if r.importance < self._config.purge_importance_threshold
        ]
        purged = await self._store.deactivate_records(ids, now)
        report.purged += purged
        report.deleted += purged

    async def _rebalance(
        self, user_id: str, now: datetime, report: MaintenanceReport
    ) -> None:
        cap = self._config.max_count_per_kind
        counts = await self._store.count_by_kind(user_id)
        for kind, count in counts.items():
            excess = count - cap
            if excess <= 0:
                continue
            victims = await self._store.query_records(
                user_id,
                active=True,
                kinds=[kind],
                order_by=[("importance", "asc"), ("last_accessed", "asc")],
                limit=excess,
            )
            for record in victims:
                if fade(record, now):
                    report.deleted += 1
                record.last_maintained_at = now
                await self._store.update_record(record)
                report.rebalanced += 1
            logger.info(
                f"Rebalanced {len(victims)} {kind.value} memories for {user_id} "
                f"({count} > {cap})"
            )

    async def _reinforce_hubs(
        self, user_id: str, now: datetime, report: MaintenanceReport
    ) -> None:
        degrees = await self._store.relation_degrees(user_id)
        for record_id, degree in degrees.items():
            if degree <= self._config.hub_degree_threshold:
                continue
            record = await self._store.get_record(record_id)
            if record is None or not record.active:
                continue
            record.importance = record.importance + 1
            record.access_count += 1
            record.updated_at = now
            await self._store.update_record(record)
            report.reinforced += 1

    async def refresh_scores(self, user_id: str) -> int:
        """Apply time decay to every active memory; returns how many changed."""
        now = self._clock.now()
        records = await self._store.query_records(user_id, active=True)
        changed = 0
        for record in records:
            score = decayed_score(record, now)
            if math.isclose(score, record.importance, abs_tol=1e-9):
                continue
            record.importance = score
            record.updated_at = now
            try:
                await self._store.update_record(record)
            except Exception as e:
                logger.error(f"Score refresh of {record.id} failed: {e}")
                continue
            changed += 1
        logger.info(f"Refreshed {changed}/{len(records)} memory scores for {user_id}")
        return changed
