"""Shared fixtures for the memory system tests."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from chat_memory.models import MemoryKind, MemoryRecord
from chat_memory.storage.sqlite_store import SQLiteStore

START = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.current = now


class FakeEmbedder:
    """Returns preset vectors; unknown text has no embedding."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, tag: str = "fake-model"):
        self.vectors = dict(vectors or {})
        self._tag = tag
        self.calls: list[str] = []

    @property
    def model_tag(self) -> str:
        return self._tag

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, []))


class FakeIntelligence:
    """Deterministic text intelligence."""

    def __init__(
        self,
        keywords: list[str] | None = None,
        entities: list[str] | None = None,
        category: str = "general",
        intensity: float = 0.0,
    ):
        self.keywords = list(keywords or [])
        self.entities = list(entities or [])
        self.category = category
        self.intensity = intensity

    async def summarize(self, text: str) -> str:
        return f"Summary: {text[:40]}"

    async def extract_keywords(self, text: str) -> list[str]:
        return list(self.keywords)

    async def extract_entities(self, text: str) -> list[str]:
        return list(self.entities)

    async def categorize(self, text: str) -> str:
        return self.category

    async def sentiment(self, text: str) -> str:
        return "neutral"

    async def emotional_intensity(self, text: str) -> float:
        return self.intensity


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def intelligence():
    return FakeIntelligence()


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        s = SQLiteStore(db_path=db_path)
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def make_record(clock):
    """Factory for records owned by ``user-1`` stamped at the clock's time."""

    def _make(content: str = "some memory", **overrides) -> MemoryRecord:
        now = clock.now()
        fields = {
            "owner_id": "user-1",
            "conversation_id": "conv-1",
            "kind": MemoryKind.SEMANTIC,
            "content": content,
            "importance": 5.0,
            "created_at": now,
            "updated_at": now,
            "last_accessed": now,
        }
        fields.update(overrides)
        if fields.get("embedding") and "embedding_model" not in overrides:
            fields["embedding_model"] = "fake-model"
        return MemoryRecord(**fields)

    return _make
