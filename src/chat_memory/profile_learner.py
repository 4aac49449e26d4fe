"""Profile learning from user messages.

Every user message nudges the stored profile: extracted topics are merged
into ``preferred_topics``, the hour it was sent into ``most_active_hours``,
and sentiment and length into the learning patterns. Updates for one user
are serialized so concurrent messages do not overwrite each other.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from loguru import logger

from .config import ProfileConfig
from .interfaces import Clock, ProfileStore, SystemClock, TextIntelligence
from .models import UserPreferences, as_utc


def _rank(counts: dict[str, int], limit: int) -> list[str]:
    # sorted() is stable, so ties keep first-seen order
    return [key for key, _ in sorted(counts.items(), key=lambda kv: -kv[1])][:limit]


class ProfileLearner:
    """Incrementally updates user profiles."""

    def __init__(
        self,
        profiles: ProfileStore,
        intelligence: TextIntelligence,
        config: ProfileConfig | None = None,
        clock: Clock | None = None,
    ):
        self._profiles = profiles
        self._intelligence = intelligence
        self._config = config or ProfileConfig()
        self._clock = clock or SystemClock()
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: Counter[str] = Counter()

    @asynccontextmanager
    async def _locked(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                del self._locks[user_id]

    async def _topics(self, content: str) -> list[str]:
        try:
            keywords = await self._intelligence.extract_keywords(content)
        except Exception as e:
            logger.warning(f"Topic extraction failed: {e}")
            return []
        topics: list[str] = []
        for keyword in keywords:
            keyword = keyword.strip()
            if keyword and keyword not in topics:
                topics.append(keyword)
        return topics[: self._config.max_new_topics]

    async def _sentiment(self, content: str) -> str:
        try:
            return await self._intelligence.sentiment(content)
        except Exception as e:
            logger.warning(f"Sentiment analysis failed: {e}")
            return "neutral"

    def apply(
        self,
        profile: UserPreferences,
        topics: list[str],
        sentiment: str,
        message_length: int,
        sent_at: datetime,
    ) -> UserPreferences:
        """Return ``profile`` updated with one message's signals."""
        topic_counts: dict[str, int] = {}
        for topic in profile.preferred_topics:
            topic_counts[topic] = topic_counts.get(topic, 0) + 1
        for topic in topics:
            topic_counts[topic] = topic_counts.get(topic, 0) + self._config.new_topic_weight

        hour = str(as_utc(sent_at).astimezone(timezone.utc).hour)
        hour_counts: dict[str, int] = {}
        for existing in profile.most_active_hours:
            hour_counts[existing] = hour_counts.get(existing, 0) + 1
        hour_counts[hour] = hour_counts.get(hour, 0) + 1

        patterns = profile.learning_patterns
        count = patterns.message_count
        average = patterns.avg_message_length or 0.0
        patterns = patterns.model_copy(
            update={
                "recent_topics": topics,
                "recent_sentiment": sentiment,
                "avg_message_length": (average * count + message_length) / (count + 1),
                "message_count": count + 1,
            }
        )

        return profile.model_copy(
            update={
                "preferred_topics": _rank(topic_counts, self._config.max_topics),
                "most_active_hours": _rank(hour_counts, self._config.max_active_hours),
                "learning_patterns": patterns,
            }
        )

    async def learn(
        self, user_id: str, content: str, sent_at: datetime | None = None
    ) -> UserPreferences | None:
        """Fold one user message into the user's profile.

        Returns the saved profile, or None for blank messages.
        """
        if not content.strip():
            return None
        sent_at = sent_at or self._clock.now()
        topics, sentiment = await asyncio.gather(
            self._topics(content), self._sentiment(content)
        )

        async with self._locked(user_id):
            current = await self._profiles.get_preferences(user_id) or UserPreferences()
            updated = self.apply(current, topics, sentiment, len(content), sent_at)
            await self._profiles.save_profile(user_id, updated)

        logger.debug(
            f"Profile updated for {user_id}: topics={topics}, sentiment={sentiment}"
        )
        return updated

    async def update_session_stats(
        self, user_id: str, session_length: int
    ) -> UserPreferences:
        """Count a finished session of ``session_length`` messages."""
        async with self._locked(user_id):
            current = await self._profiles.get_preferences(user_id) or UserPreferences()
            total = current.total_sessions + 1
            average = (
                current.avg_session_length * current.total_sessions + session_length
            ) / total
            updated = current.model_copy(
                update={"total_sessions": total, "avg_session_length": round(average)}
            )
            await self._profiles.save_profile(user_id, updated)
        return updated
