"""Memory insights and forgetting health reports."""

from __future__ import annotations

from collections import Counter
from datetime import timedelta

from loguru import logger

from .interfaces import Clock, MemoryStore, ProfileSource, SystemClock
from .models import ForgettingReport, MemoryInsight, MemoryRecord, UserPreferences

RECENT_DAYS = 30
RECENT_LIMIT = 50
TOP_TOPICS = 5
TIME_SLOT_HOURS = 4
RELATIONSHIP_LIMIT = 100

DECAYING_BELOW = 5.0
PRESERVED_FROM = 8.0


def identify_patterns(records: list[MemoryRecord]) -> list[str]:
    """Frequent topics and the busiest 4-hour slot of the given memories."""
    topics: Counter[str] = Counter()
    slots: Counter[str] = Counter()
    for record in records:
        topics.update(record.tags)
        start = (record.created_at.hour // TIME_SLOT_HOURS) * TIME_SLOT_HOURS
        slots[f"{start}-{start + TIME_SLOT_HOURS}"] += 1

    patterns: list[str] = []
    top = [topic for topic, _ in topics.most_common(TOP_TOPICS)]
    if top:
        patterns.append(f"Frequently discussed topics: {', '.join(top)}")
    if slots:
        slot, _ = slots.most_common(1)[0]
        patterns.append(f"Most active time: {slot} hours")
    return patterns


def recommend(preferences: UserPreferences | None, patterns: list[str]) -> list[str]:
    recommendations: list[str] = []
    if preferences is not None and preferences.preferred_topics:
        recommendations.append("Continue exploring your favorite topics")
    if any("active time" in p for p in patterns):
        recommendations.append(
            "Consider scheduling important conversations during your active hours"
        )
    if preferences is not None and preferences.avg_session_length < 5:
        recommendations.append("Try longer conversations for deeper engagement")
    return recommendations


def health_recommendations(health: float, active: int, decaying: int) -> list[str]:
    recommendations: list[str] = []
    if health < 30:
        recommendations.append(
            "Memory health is low. Consider engaging in more meaningful conversations."
        )
    if active > 1000:
        recommendations.append(
            "High memory load detected. Consider periodic memory cleanup."
        )
    if decaying > active * 0.5:
        recommendations.append(
            "Many memories are decaying. Try to revisit important topics."
        )
    if not recommendations:
        recommendations.append("Memory system is well-balanced and healthy.")
    return recommendations


class InsightGenerator:
    """Read-only analysis over a user's memories and profile."""

    def __init__(
        self,
        store: MemoryStore,
        profiles: ProfileSource | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._profiles = profiles
        self._clock = clock or SystemClock()

    async def generate(self, user_id: str) -> MemoryInsight:
        now = self._clock.now()
        recent = await self._store.query_records(
            user_id,
            active=True,
            created_after=now - timedelta(days=RECENT_DAYS),
            order_by=[("created_at", "desc")],
            limit=RECENT_LIMIT,
        )

        preferences = None
        if self._profiles is not None:
            try:
                preferences = await self._profiles.get_preferences(user_id)
            except Exception as e:
                logger.warning(f"Profile lookup failed for insights: {e}")

        patterns = identify_patterns(recent)
        return MemoryInsight(
            patterns=patterns,
            preferences=preferences,
            recommendations=recommend(preferences, patterns),
            relationship_map=await self._relationship_map(user_id),
        )

    async def _relationship_map(self, user_id: str) -> dict[str, list[str]]:
        relations = await self._store.get_relations(user_id)
        mapping: dict[str, list[str]] = {}
        for relation in relations:
            if relation.source_id not in mapping and len(mapping) >= RELATIONSHIP_LIMIT:
                continue
            mapping.setdefault(relation.source_id, []).append(relation.target_id)
        return mapping

    async def forgetting_report(self, user_id: str) -> ForgettingReport:
        """Totals and health score: the share of active memories rated 8+."""
        total = await self._store.count_records(user_id)
        active = await self._store.count_records(user_id, active=True)
        decaying = await self._store.count_records(
            user_id, active=True, importance_below=DECAYING_BELOW
        )
        preserved = await self._store.count_records(
            user_id, active=True, importance_at_least=PRESERVED_FROM
        )

        health = (preserved / active) * 100 if active > 0 else 0.0
        return ForgettingReport(
            total_memories=total,
            active_memories=active,
            decaying_memories=decaying,
            preserved_memories=preserved,
            memory_health=round(health),
            recommendations=health_recommendations(health, active, decaying),
        )
