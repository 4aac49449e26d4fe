"""Per-conversation short-term and working memory.

A bounded in-process cache keyed by conversation id. Each conversation keeps
its most recent messages (short-term) and the memories recently surfaced for
it (working). Entries expire after a TTL; conversations beyond the maximum
count are evicted least-recently-used first.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from .config import EphemeralConfig
from .interfaces import Clock, SystemClock
from .models import ChatMessage


@dataclass
class WorkingItem:
    """A memory pulled into the active conversation."""

    record_id: str
    content: str
    relevance: float
    last_accessed: datetime


@dataclass
class _Slot:
    expires_at: datetime
    short_term: deque = field(default_factory=deque)
    working: deque = field(default_factory=deque)


class ConversationBuffer:
    """TTL-bounded short-term and working memory per conversation.

    Features:
    - TTL: a conversation untouched for ``ttl_seconds`` is dropped
    - Bounded: per-conversation limits on messages and working items,
      LRU eviction over conversations
    - Thread safe: all access under one lock
    """

    def __init__(
        self,
        config: EphemeralConfig | None = None,
        clock: Clock | None = None,
    ):
        self._config = config or EphemeralConfig()
        self._clock = clock or SystemClock()
        self._slots: OrderedDict[str, _Slot] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"evictions": 0, "expirations": 0}

    def _ttl(self) -> timedelta:
        return timedelta(seconds=self._config.ttl_seconds)

    def _evict_expired(self, now: datetime) -> None:
        """Drop expired conversations (lock held)."""
        expired = [cid for cid, slot in self._slots.items() if slot.expires_at <= now]
        for cid in expired:
            del self._slots[cid]
            self._stats["expirations"] += 1

    def _evict_lru(self) -> None:
        """Make room for one more conversation (lock held)."""
        while len(self._slots) >= self._config.max_conversations:
            self._slots.popitem(last=False)
            self._stats["evictions"] += 1

    def _slot(self, conversation_id: str, now: datetime) -> _Slot:
        """Get or create a live slot and refresh its TTL (lock held)."""
        self._evict_expired(now)
        slot = self._slots.get(conversation_id)
        if slot is None:
            self._evict_lru()
            slot = _Slot(
                expires_at=now + self._ttl(),
                short_term=deque(maxlen=self._config.short_term_limit),
                working=deque(maxlen=self._config.working_limit),
            )
            self._slots[conversation_id] = slot
        slot.expires_at = now + self._ttl()
        self._slots.move_to_end(conversation_id)
        return slot

    def add_message(self, conversation_id: str, message: ChatMessage) -> None:
        now = self._clock.now()
        with self._lock:
            self._slot(conversation_id, now).short_term.append(message)
        logger.debug(
            f"Short-term memory {conversation_id}: added {message.role} message"
        )

    def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        """Messages of a live conversation, oldest first."""
        now = self._clock.now()
        with self._lock:
            self._evict_expired(now)
            slot = self._slots.get(conversation_id)
            return list(slot.short_term) if slot else []

    def add_working(
        self,
        conversation_id: str,
        record_id: str,
        content: str,
        relevance: float,
    ) -> None:
        """Add or refresh a working-memory item."""
        now = self._clock.now()
        with self._lock:
            slot = self._slot(conversation_id, now)
            existing = next(
                (i for i in slot.working if i.record_id == record_id), None
            )
            if existing is not None:
                # Refreshed items move to the back so they are evicted last
                slot.working.remove(existing)
                existing.relevance = max(existing.relevance, relevance)
                existing.last_accessed = now
                slot.working.append(existing)
                return
            slot.working.append(
                WorkingItem(
                    record_id=record_id,
                    content=content,
                    relevance=relevance,
                    last_accessed=now,
                )
            )

    def get_working(self, conversation_id: str) -> list[WorkingItem]:
        """Working items, most recently accessed first."""
        now = self._clock.now()
        with self._lock:
            self._evict_expired(now)
            slot = self._slots.get(conversation_id)
            if slot is None:
                return []
            return sorted(slot.working, key=lambda i: i.last_accessed, reverse=True)

    def sweep(self) -> int:
        """Drop expired conversations; returns how many were removed."""
        now = self._clock.now()
        with self._lock:
            before = len(self._slots)
            self._evict_expired(now)
            removed = before - len(self._slots)
        if removed:
            logger.info(f"Expired {removed} short-term conversations")
        return removed

    def clear(self, conversation_id: str | None = None) -> int:
        with self._lock:
            if conversation_id is None:
                count = len(self._slots)
                self._slots.clear()
                return count
            return 1 if self._slots.pop(conversation_id, None) else 0

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "conversations": len(self._slots),
                "max_conversations": self._config.max_conversations,
                "ttl_seconds": self._config.ttl_seconds,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
